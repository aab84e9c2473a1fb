"""
Shared error handling for the 254Carbon Authorization Service.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field
from opentelemetry import trace


class ErrorResponse(BaseModel):
    """Standard error response format."""

    trace_id: Optional[str] = None
    code: str
    message: str
    status_code: int = 500
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    status_code = 500

    def __init__(
        self,
        code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        status_code: Optional[int] = None
    ):
        self.code = code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        # Get trace ID from current span
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
            status_code=self.status_code,
            details=self.details
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    status_code = 400

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class ForbiddenError(AccessLayerException):
    """Operation not permitted on the target entity."""

    status_code = 403

    def __init__(self, message: str = "Operation forbidden", details: Optional[Dict[str, Any]] = None):
        super().__init__("FORBIDDEN", message, details)


class NotFoundError(AccessLayerException):
    """Referenced entity does not exist."""

    status_code = 404

    def __init__(self, message: str = "Resource not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(AccessLayerException):
    """Request conflicts with current state (duplicate ids, dependent entities)."""

    status_code = 409

    def __init__(self, message: str = "Request conflicts with current state", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)


class ServiceError(AccessLayerException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


def from_pydantic_error(exc, message: str = "Validation failed") -> ValidationError:
    """Wrap a pydantic ValidationError into the service's ValidationError."""
    errors = [
        {
            "loc": ".".join(str(part) for part in error.get("loc", ())),
            "msg": error.get("msg"),
            "type": error.get("type"),
        }
        for error in exc.errors()
    ]
    first = errors[0]["msg"] if errors else message
    return ValidationError(f"{message}: {first}", {"errors": errors})
