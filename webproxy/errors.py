from typing import Optional

from fastapi import HTTPException

from webproxy.models import ErrorDetail


class ProxyError(Exception):
    """A failure the proxy reports itself, as opposed to a relayed upstream status."""

    status_code = 500
    error = "Proxy error"

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.url = url

    def to_detail(self) -> dict:
        return ErrorDetail(error=self.error, message=self.message, url=self.url).model_dump()

    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=self.status_code, detail=self.to_detail())


class DecodeError(ProxyError):
    status_code = 400
    error = "Invalid proxy encoding"


class ForbiddenTarget(ProxyError):
    status_code = 403
    error = "Forbidden URL"


class UpstreamNameResolutionError(ProxyError):
    status_code = 404
    error = "Domain not found"


class UpstreamConnectError(ProxyError):
    status_code = 502
    error = "Connection failed"


class UpstreamConnectionRefused(UpstreamConnectError):
    error = "Connection refused"


class UpstreamTLSError(UpstreamConnectError):
    error = "TLS handshake failed"


class UpstreamProtocolError(ProxyError):
    status_code = 502
    error = "Bad gateway"


class UpstreamTimeout(ProxyError):
    status_code = 504
    error = "Gateway timeout"


class ClientDisconnected(ProxyError):
    """The caller went away before the answer was ready."""

    status_code = 499
    error = "Client closed request"
