import asyncio
import logging
from http.cookiejar import CookieJar, DefaultCookiePolicy
from typing import Optional

import httpx

from webproxy.vars import PROXY_TIMEOUT

logger = logging.getLogger("uvicorn.error")

_http_client: Optional[httpx.AsyncClient] = None
_client_lock: Optional[asyncio.Lock] = None


def _stateless_cookie_jar() -> CookieJar:
    # An empty allow-list refuses every cookie, so nothing leaks between requests.
    return CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(PROXY_TIMEOUT),
        cookies=_stateless_cookie_jar(),
    )


async def get_http_client() -> httpx.AsyncClient:
    """FastAPI dependency returning the process-wide upstream client."""
    global _http_client, _client_lock
    if _http_client is not None:
        return _http_client
    if _client_lock is None:
        _client_lock = asyncio.Lock()
    async with _client_lock:
        if _http_client is None:
            _http_client = create_http_client()
            logger.info(f"[Proxy] Upstream client created (timeout {PROXY_TIMEOUT}s)")
    return _http_client


async def close_http_client() -> None:
    global _http_client
    if _http_client is not None:
        await _http_client.aclose()
        _http_client = None
