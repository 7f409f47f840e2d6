"""PulseGuard API middleware components.

This module provides middleware for:
- Request ID tracking and log correlation
- Consistent error response formatting
"""

from pulseguard.api.middleware.errors import (
    APIError,
    ErrorHandlerMiddleware,
    StorageUnavailableError,
    build_error_response,
    http_exception_handler,
)
from pulseguard.api.middleware.request_id import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    get_request_id,
)

__all__ = [
    "APIError",
    "ErrorHandlerMiddleware",
    "RequestIDLogFilter",
    "RequestIDMiddleware",
    "StorageUnavailableError",
    "build_error_response",
    "get_request_id",
    "http_exception_handler",
]
