from .client import close_http_client, create_http_client, get_http_client
from .headers import prepare_request_headers, sanitize_response_headers
from .pipeline import ContentEnvelope, forward, map_transport_error

__all__ = [
    "ContentEnvelope",
    "close_http_client",
    "create_http_client",
    "forward",
    "get_http_client",
    "map_transport_error",
    "prepare_request_headers",
    "sanitize_response_headers",
]
