import re
from typing import Optional, Tuple
from urllib.parse import quote, unquote, unquote_plus, urlsplit

from webproxy.codec.base import ProxyCodec, split_query
from webproxy.errors import DecodeError

PATH_PARAM = "p"
# Catch-all route parameter some hosting front-ends echo into the query.
ROUTE_ECHO_PARAM = "path"

_ORIGIN = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*://[^/?#]*)(.*)$", re.DOTALL)


def split_origin(target_url: str) -> Tuple[str, str]:
    """``(origin, rest)`` of an absolute URL, both exactly as written."""
    match = _ORIGIN.match(target_url)
    if not match:
        return target_url, ""
    return match.group(1), match.group(2)


class PathCodec(ProxyCodec):
    """
    Target spelled out as readable path segments:
    ``/api/browse/<scheme>/<host>/<path>?<target query>``.

    The query string belongs to the target and is re-appended verbatim, so a
    GET form submitted to a rewritten action keeps working without hidden
    fields. ``/api/browse?p=<scheme>/<host>/<path>&<target query>`` is also
    accepted; ``p`` is the only control parameter and is stripped.
    """

    name = "path"
    mount_path = "/api/browse"
    usage = "/api/browse/https/www.example.com/search?q=hello"

    def _encode(self, target_url: str, proxy_origin: str) -> str:
        scheme, _, rest = target_url.partition("://")
        return f"{proxy_origin}{self.mount_path}/{scheme}/{rest}"

    def cookie_scope(self, target_url: str, proxy_origin: str) -> Optional[str]:
        origin, _ = split_origin(target_url)
        return urlsplit(self._encode(origin, proxy_origin)).path

    def _decode(self, tail: str, query: Optional[str], raw: str) -> str:
        spec = tail.lstrip("/")
        if not spec:
            controls, query = split_query(query, {PATH_PARAM})
            spec = controls.get(PATH_PARAM, "").lstrip("/")
        if not spec:
            raise self.missing("scheme and host segments", raw)

        segments = spec.split("/", 2)
        if len(segments) < 2 or not segments[0] or not segments[1]:
            raise self.missing("scheme and host segments", raw)

        target = f"{segments[0]}://{segments[1]}"
        if len(segments) == 3:
            target = f"{target}/{segments[2]}"
        if query is not None:
            target = f"{target}?{query}"
        return target


class OriginPathCodec(ProxyCodec):
    """
    Percent-encoded origin as the first segment, the target path after it:
    ``/api/proxy-path/<encoded origin>/<path>?<target query>``.

    Relative references resolve naturally below the origin segment, so the
    plain proxy URL works as a base. ``path`` pairs in the query that merely
    repeat the route segments are dropped; any other pair belongs to the target.
    """

    name = "origin-path"
    mount_path = "/api/proxy-path"
    usage = "/api/proxy-path/https%3A%2F%2Fwww.example.com/search?q=hello"

    def _encode(self, target_url: str, proxy_origin: str) -> str:
        origin, rest = split_origin(target_url)
        return f"{proxy_origin}{self.mount_path}/{quote(origin, safe='')}{rest}"

    def cookie_scope(self, target_url: str, proxy_origin: str) -> Optional[str]:
        origin, _ = split_origin(target_url)
        return urlsplit(self._encode(origin, proxy_origin)).path

    def _decode(self, tail: str, query: Optional[str], raw: str) -> str:
        segment, has_rest, rest = tail.lstrip("/").partition("/")
        if not segment:
            raise self.missing("encoded origin segment", raw)
        origin = unquote(segment)
        try:
            parts = urlsplit(origin)
        except ValueError as e:
            raise DecodeError(f"Encoded origin could not be parsed: {e}", raw)
        if not parts.scheme or not parts.netloc or parts.path or parts.query or parts.fragment:
            raise DecodeError(
                f"First segment must be a percent-encoded origin. Expected format: {self.usage}",
                raw,
            )

        target = f"{origin}/{rest}" if has_rest else origin
        query = _strip_route_echo(query, [segment] + rest.split("/"))
        if query is not None:
            target = f"{target}?{query}"
        return target


def _strip_route_echo(query: Optional[str], segments) -> Optional[str]:
    if not query:
        return query
    echoed = {unquote(segment) for segment in segments if segment}
    kept = []
    for pair in query.split("&"):
        key, _, value = pair.partition("=")
        if unquote_plus(key) == ROUTE_ECHO_PARAM and unquote_plus(value) in echoed:
            continue
        kept.append(pair)
    return "&".join(kept) if kept else None
