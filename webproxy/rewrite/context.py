from dataclasses import dataclass, replace

from fastapi import Request

from webproxy.codec import ProxyCodec
from webproxy.vars import PROXY_BASE_PATH, PUBLIC_URL


@dataclass(frozen=True)
class RewriteContext:
    """Per-request bundle used by the codec and the content rewriter."""

    target_url: str
    base_url: str
    proxy_origin: str
    codec: ProxyCodec

    def encode(self, url: str) -> str:
        return self.codec.encode(url, self.proxy_origin)

    def with_base(self, base_url: str) -> "RewriteContext":
        return replace(self, base_url=base_url)


def proxy_origin_for(request: Request) -> str:
    """
    Externally visible origin of this service (including PROXY_BASE_PATH).
    PUBLIC_URL wins; otherwise forwarded headers set by a front proxy, then the
    request's own scheme and Host header.
    """
    if PUBLIC_URL:
        return PUBLIC_URL
    headers = request.headers
    scheme = headers.get("x-forwarded-proto", "").split(",")[0].strip() or request.url.scheme
    host = headers.get("x-forwarded-host", "").split(",")[0].strip() or headers.get("host")
    if not host:
        host = request.url.netloc or (request.client.host if request.client else "localhost")
    return f"{scheme}://{host}{PROXY_BASE_PATH}"


def build_rewrite_context(
    request: Request, target_url: str, codec: ProxyCodec
) -> RewriteContext:
    return RewriteContext(
        target_url=target_url,
        base_url=target_url,
        proxy_origin=proxy_origin_for(request),
        codec=codec,
    )
