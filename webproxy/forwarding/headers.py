import logging
from http.cookies import CookieError, SimpleCookie
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import httpx
from fastapi import Request

from webproxy.codec import try_decode_proxy_url
from webproxy.rewrite import RewriteContext, rewrite_meta_refresh, rewrite_url
from webproxy.vars import DEFAULT_USER_AGENT

logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

FRAMING_HEADERS = {"content-length", "transfer-encoding"}

# Headers that would reveal the proxy hop to the target
FORWARDED_HEADERS = {
    "forwarded",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-port",
    "x-forwarded-prefix",
    "x-real-ip",
    "x-proxy-origin",
}

DROPPED_REQUEST_HEADERS = (
    HOP_BY_HOP_HEADERS
    | FRAMING_HEADERS
    | FORWARDED_HEADERS
    | {"host", "accept-encoding"}
)

# Policies that would stop the proxied document from rendering or reaching
# its own subresources through the proxy origin.
BLOCKING_RESPONSE_HEADERS = {
    "x-frame-options",
    "content-security-policy",
    "content-security-policy-report-only",
    "strict-transport-security",
}

DROPPED_RESPONSE_HEADERS = (
    HOP_BY_HOP_HEADERS
    | FRAMING_HEADERS
    | BLOCKING_RESPONSE_HEADERS
    | {"content-encoding"}
)

URL_RESPONSE_HEADERS = {"location", "content-location"}

CORS_HEADERS = {
    "access-control-allow-origin": "*",
    "access-control-allow-methods": "GET, POST, PUT, PATCH, DELETE, HEAD, OPTIONS",
    "access-control-allow-headers": "*",
    "access-control-expose-headers": "*",
}

UPSTREAM_ACCEPT_ENCODING = "gzip, deflate"


def _origin(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def prepare_request_headers(
    request: Request, target_url: str, ctx: RewriteContext
) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the target.
    Removes hop-by-hop and forwarding headers and makes origin/referer point
    at the target site instead of the proxy.
    """
    headers = {}
    for name, value in request.headers.items():
        if name.lower() not in DROPPED_REQUEST_HEADERS:
            headers[name.lower()] = value

    # Without a per-site scope no cookie the browser sends belongs to the target.
    if ctx.codec.cookie_scope(target_url, ctx.proxy_origin) is None:
        headers.pop("cookie", None)

    if "origin" in headers:
        headers["origin"] = _origin(target_url)

    referer = headers.get("referer")
    headers["referer"] = try_decode_proxy_url(referer, ctx.proxy_origin) or target_url

    headers["accept-encoding"] = UPSTREAM_ACCEPT_ENCODING
    if not headers.get("user-agent"):
        headers["user-agent"] = DEFAULT_USER_AGENT
    return headers


def rewrite_location_header(location: str, target_url: str, ctx: RewriteContext) -> str:
    """
    Rewrite a redirect target into proxy form. Relative locations resolve
    against the URL that produced the response.
    """
    if not location:
        return location
    return rewrite_url(location, ctx.with_base(target_url))


def rewrite_set_cookie(set_cookie: str, scope: Optional[str]) -> Optional[str]:
    """
    Confine an upstream cookie to the proxy URLs of its own site: the Domain
    attribute is removed and the Path is moved below ``scope``. Returns None
    when the cookie must not be relayed (no scope, or unparseable).
    """
    if scope is None:
        return None
    cookie = SimpleCookie()
    try:
        cookie.load(set_cookie)
    except CookieError as e:
        logger.warning(f"[Proxy] Failed to parse cookie: {set_cookie}, error: {e}")
        return None
    if not cookie:
        return None

    result = []
    for morsel in cookie.values():
        path = morsel.get("path") or "/"
        if not path.startswith("/"):
            path = "/"
        morsel["domain"] = ""
        morsel["path"] = f"{scope}{path}"
        result.append(morsel.OutputString())
    return "; ".join(result)


def sanitize_response_headers(
    headers: httpx.Headers, target_url: str, ctx: RewriteContext
) -> List[Tuple[str, str]]:
    """
    Response headers to relay to the caller, as a list so repeated headers
    such as set-cookie survive.
    """
    cookie_scope = ctx.codec.cookie_scope(target_url, ctx.proxy_origin)
    sanitized: List[Tuple[str, str]] = []
    for name, value in headers.multi_items():
        name_lower = name.lower()
        if name_lower in DROPPED_RESPONSE_HEADERS or name_lower in CORS_HEADERS:
            continue
        if name_lower in URL_RESPONSE_HEADERS:
            value = rewrite_location_header(value, target_url, ctx)
        elif name_lower == "refresh":
            value = rewrite_meta_refresh(value, ctx.with_base(target_url))
        elif name_lower == "set-cookie":
            value = rewrite_set_cookie(value, cookie_scope)
            if value is None:
                logger.debug(f"[Proxy] Not relaying cookie from {target_url} via {ctx.codec.name}")
                continue
        sanitized.append((name_lower, value))

    sanitized.extend(CORS_HEADERS.items())
    return sanitized
