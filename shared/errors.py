"""
Shared error handling for the cached requestor.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pydantic import BaseModel

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class RequestorException(Exception):
    """Base exception for the requestor."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ConfigurationError(RequestorException):
    """Setup-time errors: missing or duplicate collaborators."""

    def __init__(self, message: str = "Invalid configuration", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFIGURATION_ERROR", message, details)


class InvocationError(RequestorException):
    """Malformed call arguments, raised before any I/O."""

    def __init__(self, message: str = "Invalid invocation", details: Optional[Dict[str, Any]] = None):
        super().__init__("INVOCATION_ERROR", message, details)


class BackendUnavailableError(RequestorException):
    """Shared store disconnected or failing."""

    def __init__(self, backend: str = "redis", message: str = "Backend unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("BACKEND_UNAVAILABLE", f"{backend}: {message}", details)


class RateLimitError(RequestorException):
    """Rate limiting errors."""

    def __init__(self, limit: int, host: str, reset_at: int, details: Optional[Dict[str, Any]] = None):
        self.limit = limit
        self.host = host
        self.reset_at = reset_at
        retry_after = datetime.fromtimestamp(reset_at / 1000, tz=timezone.utc).isoformat()
        message = f"request limit {{{limit}}} for {{{host}}} reached, please retry after {{{retry_after}}}"
        payload = {"limit": limit, "host": host, "reset_at": reset_at}
        payload.update(details or {})
        super().__init__("RATE_LIMIT_ERROR", message, payload)
