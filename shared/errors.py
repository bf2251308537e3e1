"""
Shared error handling for the PetCare API.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel

from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = {}


class ServiceException(Exception):
    """Base exception for PetCare services."""

    status_code = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        trace_id = None
        current_span = trace.get_current_span()
        if current_span and current_span.is_recording():
            span_context = current_span.get_span_context()
            if span_context.trace_id != 0:
                trace_id = f"{span_context.trace_id:032x}"

        return ErrorResponse(
            trace_id=trace_id,
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthenticationError(ServiceException):
    """Authentication-related errors."""

    status_code = 401

    def __init__(self, message: str = "Authentication failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHENTICATION_ERROR", message, details)


class ValidationError(ServiceException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class CacheError(ServiceException):
    """Cache subsystem errors.

    These never reach a client: the caching layer contains them and degrades
    to a no-op.
    """

    status_code = 500


class CacheStoreError(CacheError):
    """The cache backend is unreachable or timed out."""

    def __init__(self, operation: str, message: str = "Cache store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_STORE_ERROR", f"{operation}: {message}", details)
        self.operation = operation


class CacheKeyError(CacheError):
    """A cache key or invalidation pattern could not be resolved from the request."""

    def __init__(self, message: str = "Cache key resolution failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_KEY_ERROR", message, details)


class CacheSerializationError(CacheError):
    """A response body could not be serialized for caching."""

    def __init__(self, message: str = "Response is not cacheable", details: Optional[Dict[str, Any]] = None):
        super().__init__("CACHE_SERIALIZATION_ERROR", message, details)
