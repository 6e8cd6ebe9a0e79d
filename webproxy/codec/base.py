import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote_plus, urlsplit

from fastapi import Request

from webproxy.errors import DecodeError

logger = logging.getLogger("uvicorn.error")

FETCHABLE_SCHEMES = ("http", "https")


def inbound_url(request: Request) -> str:
    """
    Rebuild the inbound request target (path and query) without losing
    percent-encodings. Starlette decodes ``request.url.path``; the raw path
    bytes are kept in the ASGI scope.
    """
    raw_path = request.scope.get("raw_path")
    path = raw_path.decode("latin-1") if raw_path else request.url.path
    query = str(request.url.query)
    return f"{path}?{query}" if query else path


def validate_target(target: str, raw: str) -> str:
    """Reject anything that is not an absolute http(s) URL with a host."""
    try:
        parts = urlsplit(target)
        hostname = parts.hostname
    except ValueError as e:
        raise DecodeError(f"Target URL could not be parsed: {e}", raw)
    if parts.scheme.lower() not in FETCHABLE_SCHEMES:
        raise DecodeError(
            "Target URL must be absolute and use http or https", target or raw
        )
    if not hostname:
        raise DecodeError("Target URL has no host", target)
    return target


def split_query(
    query: Optional[str], control_keys: set
) -> Tuple[Dict[str, str], Optional[str]]:
    """
    Separate the proxy's own control parameters from the rest of a query string.
    The remaining pairs are returned verbatim (still percent-encoded) so they
    can be re-appended to the target untouched. Only the first occurrence of a
    control key is treated as control; repeats belong to the target.
    """
    controls: Dict[str, str] = {}
    rest: List[str] = []
    for pair in (query or "").split("&"):
        if not pair:
            continue
        key, _, value = pair.partition("=")
        name = unquote_plus(key)
        if name in control_keys and name not in controls:
            controls[name] = unquote_plus(value)
        else:
            rest.append(pair)
    return controls, "&".join(rest) if rest else None


def merge_query(target: str, extra: Optional[str]) -> str:
    """Append raw query pairs to a target URL, keeping its fragment last."""
    if not extra:
        return target
    head, sep, fragment = target.partition("#")
    if "?" not in head:
        joiner = "?"
    elif head.endswith(("?", "&")):
        joiner = ""
    else:
        joiner = "&"
    return f"{head}{joiner}{extra}{sep}{fragment}"


def strip_query(url: str) -> str:
    return url.partition("#")[0].partition("?")[0]


class ProxyCodec(ABC):
    """
    Strategy interface for one proxy-addressable encoding of a target URL.

    Subclasses declare ``mount_path`` (the route they serve) and implement
    ``_encode``/``_decode``. Idempotence, fragment handling and validation of
    the decoded target live here so every variant behaves the same.
    """

    name: str = ""
    mount_path: str = ""
    usage: str = ""

    _mount_paths: List[str] = []

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        mount = cls.__dict__.get("mount_path")
        if mount and mount not in ProxyCodec._mount_paths:
            ProxyCodec._mount_paths.append(mount)

    @classmethod
    def mount_paths(cls) -> List[str]:
        return list(ProxyCodec._mount_paths)

    def owns_url(self, url: str, proxy_origin: str) -> bool:
        return _has_prefix(url, f"{proxy_origin}{self.mount_path}")

    def encode(self, target_url: str, proxy_origin: str) -> str:
        if is_proxy_url(target_url, proxy_origin):
            return target_url
        return self._encode(target_url, proxy_origin)

    def encode_base(self, base_url: str, proxy_origin: str) -> str:
        """Proxy form of the Base Reference, used for the injected <base href>."""
        return self.encode(base_url, proxy_origin)

    def form_target(
        self, action_url: str, proxy_origin: str
    ) -> Tuple[str, Dict[str, str]]:
        """
        Action and hidden fields for a GET form. Browsers replace the query of a
        GET form's action with the form fields, so the action carries no query.
        """
        return self.encode(strip_query(action_url), proxy_origin), {}

    def cookie_scope(self, target_url: str, proxy_origin: str) -> Optional[str]:
        """
        Path prefix that confines the cookies of ``target_url``'s site to the
        proxy URLs of that site, or None when this encoding has no per-site
        path and cookies cannot be relayed safely.
        """
        return None

    def decode(self, request: Request) -> str:
        return self.decode_url(inbound_url(request))

    def decode_url(self, proxy_url: str) -> str:
        head, has_fragment, fragment = proxy_url.partition("#")
        path_part, has_query, query = head.partition("?")
        try:
            path = urlsplit(path_part).path
        except ValueError as e:
            raise DecodeError(f"Proxy URL could not be parsed: {e}", proxy_url)

        index = path.find(self.mount_path)
        tail = path[index + len(self.mount_path):] if index >= 0 else None
        if tail is None or (tail and not tail.startswith("/")):
            raise DecodeError(
                f"Not a {self.name} proxy URL. Expected format: {self.usage}",
                proxy_url,
            )

        target = self._decode(tail, query if has_query else None, proxy_url)
        target = validate_target(target, proxy_url)
        if has_fragment and "#" not in target:
            target = f"{target}#{fragment}"
        logger.debug(f"[Codec] {self.name} decoded {proxy_url} -> {target}")
        return target

    def missing(self, what: str, raw: str) -> DecodeError:
        return DecodeError(f"Missing {what}. Expected format: {self.usage}", raw)

    @abstractmethod
    def _encode(self, target_url: str, proxy_origin: str) -> str:
        """Build the proxy URL for an absolute target."""

    @abstractmethod
    def _decode(self, tail: str, query: Optional[str], raw: str) -> str:
        """Recover the target from the path after the mount point and the query."""


def _has_prefix(url: str, prefix: str) -> bool:
    if not url.startswith(prefix):
        return False
    return url[len(prefix):len(prefix) + 1] in ("", "/", "?", "#")


def is_proxy_url(url: str, proxy_origin: str) -> bool:
    """True when ``url`` already points at one of this proxy's codec routes."""
    if not url or not proxy_origin:
        return False
    return any(
        _has_prefix(url, f"{proxy_origin}{mount}")
        for mount in ProxyCodec.mount_paths()
    )
