"""
Shared error envelope returned by every 4xx/5xx response.

Services raise DocChatError subclasses; the exception handlers in
docchat.main render them through ApiErrors so route handlers never build
error bodies by hand.
"""

from __future__ import annotations

from pydantic import BaseModel, Field

from docchat.core.errors import DocChatError


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


# ---------------------------------------------------------------------------
# Pre-defined error factories (keeps handlers thin)
# ---------------------------------------------------------------------------

class ApiErrors:
    """Factories for every error case the API can emit."""

    @staticmethod
    def from_exception(exc: DocChatError, request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code=exc.error_code,
            message=exc.message,
            details=[],
            request_id=request_id,
        )

    @staticmethod
    def validation_error(errors: list[dict], request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="VALIDATION_ERROR",
            message="Request validation failed.",
            details=[
                ErrorDetail(
                    field=".".join(str(part) for part in err.get("loc", ())[1:]) or None,
                    message=err.get("msg", "invalid value"),
                    code=err.get("type", "invalid"),
                )
                for err in errors
            ],
            request_id=request_id,
        )

    @staticmethod
    def unauthorized(message: str = "Missing or invalid Authorization header.") -> ErrorResponse:
        return ErrorResponse(
            error_code="UNAUTHORIZED",
            message="Authentication required. Provide a valid Bearer token.",
            details=[ErrorDetail(field=None, message=message, code="UNAUTHORIZED")],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )
