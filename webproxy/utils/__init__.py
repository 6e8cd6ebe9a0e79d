from .exception_logging import (
    find_exception_in_exception_groups,
    format_exception_message,
    log_exception_with_details,
)
from .traced_requests import traced_request

__all__ = [
    "find_exception_in_exception_groups",
    "format_exception_message",
    "log_exception_with_details",
    "traced_request",
]
