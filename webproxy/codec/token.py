import base64
import binascii
from typing import Dict, Optional, Tuple
from urllib.parse import unquote, urlsplit

from webproxy.codec.base import ProxyCodec, merge_query, split_query, strip_query
from webproxy.errors import DecodeError

TOKEN_PARAM = "__cpo"
# Accepted for links produced by older front-ends; carries no meaning.
LEGACY_PARAMS = {"ko"}


def encode_token(url: str) -> str:
    """URL-safe base64 of the UTF-8 URL, padding removed."""
    return base64.urlsafe_b64encode(url.encode("utf-8")).decode("ascii").rstrip("=")


def decode_token(token: str, raw: str) -> str:
    """
    Reverse of ``encode_token``. Standard-alphabet tokens (with ``+``/``=``,
    possibly percent-encoded) are accepted as well.
    """
    token = unquote(token).strip()
    if not token:
        raise DecodeError("Empty encoded URL", raw)
    # A raw "+" in a query value arrives as a space.
    token = token.replace(" ", "+").rstrip("=")
    padded = token + "=" * (-len(token) % 4)
    try:
        return base64.b64decode(padded, altchars=b"-_", validate=True).decode("utf-8")
    except (binascii.Error, ValueError) as e:
        raise DecodeError(f"Encoded URL is not valid base64: {e}", raw)


class TokenCodec(ProxyCodec):
    """
    Target carried as an opaque token in a path segment: ``/api/encode/<token>``.

    ``/api/encode/<origin-token>/<path>`` addresses ``<origin>/<path>``; this is
    the form used for the injected base reference so that relative URLs the
    rewriter never saw still resolve through the proxy.
    """

    name = "token"
    mount_path = "/api/encode"
    usage = "/api/encode/aHR0cHM6Ly93d3cuZXhhbXBsZS5jb20v"

    def _encode(self, target_url: str, proxy_origin: str) -> str:
        return f"{proxy_origin}{self.mount_path}/{encode_token(target_url)}"

    def encode_base(self, base_url: str, proxy_origin: str) -> str:
        try:
            parts = urlsplit(base_url)
        except ValueError:
            return self.encode(base_url, proxy_origin)
        origin_token = encode_token(f"{parts.scheme}://{parts.netloc}")
        return f"{proxy_origin}{self.mount_path}/{origin_token}{parts.path or '/'}"

    def cookie_scope(self, target_url: str, proxy_origin: str) -> Optional[str]:
        try:
            parts = urlsplit(target_url)
        except ValueError:
            return None
        origin_token = encode_token(f"{parts.scheme}://{parts.netloc}")
        return urlsplit(f"{proxy_origin}{self.mount_path}/{origin_token}").path

    def _decode(self, tail: str, query: Optional[str], raw: str) -> str:
        segment, has_rest, rest = tail.lstrip("/").partition("/")
        if not segment:
            raise self.missing("encoded URL", raw)
        target = decode_token(segment, raw)

        if has_rest:
            try:
                parts = urlsplit(target)
            except ValueError as e:
                raise DecodeError(f"Encoded URL could not be parsed: {e}", raw)
            if parts.path not in ("", "/") or parts.query or parts.fragment:
                raise DecodeError(
                    "A path after the encoded URL is only allowed when it encodes an origin",
                    raw,
                )
            target = f"{parts.scheme}://{parts.netloc}/{rest}"

        return merge_query(target, query)


class TokenQueryCodec(ProxyCodec):
    """Target carried as an opaque token in a query value: ``/api/pp?__cpo=<token>``."""

    name = "token-query"
    mount_path = "/api/pp"
    usage = "/api/pp?__cpo=aHR0cHM6Ly93d3cuZXhhbXBsZS5jb20v"

    def _encode(self, target_url: str, proxy_origin: str) -> str:
        return f"{proxy_origin}{self.mount_path}?{TOKEN_PARAM}={encode_token(target_url)}"

    def _decode(self, tail: str, query: Optional[str], raw: str) -> str:
        if tail not in ("", "/"):
            raise self.missing(f"{TOKEN_PARAM} parameter", raw)
        controls, rest = split_query(query, {TOKEN_PARAM} | LEGACY_PARAMS)
        token = controls.get(TOKEN_PARAM)
        if not token:
            raise self.missing(f"{TOKEN_PARAM} parameter", raw)
        return merge_query(decode_token(token, raw), rest)

    def form_target(
        self, action_url: str, proxy_origin: str
    ) -> Tuple[str, Dict[str, str]]:
        return (
            f"{proxy_origin}{self.mount_path}",
            {TOKEN_PARAM: encode_token(strip_query(action_url))},
        )
