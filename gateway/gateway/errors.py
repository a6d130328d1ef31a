"""Typed gateway errors and the JSON envelope they render to."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any


class GatewayError(Exception):
    """Base class for errors that map to a structured HTTP response.

    Parameters
    ----------
    message:
        Human-readable description, safe to show to the calling UI.
    code:
        Stable machine-readable code (``VALIDATION_ERROR``, ...).
    status_code:
        HTTP status to respond with.
    details:
        Optional extra context included verbatim in the envelope.
    """

    default_code = "INTERNAL_ERROR"
    default_status = 500

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.status_code = status_code or self.default_status
        self.details = details

    def to_error_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "statusCode": self.status_code,
        }
        if self.details:
            body["details"] = self.details
        return body


class ValidationError(GatewayError):
    default_code = "VALIDATION_ERROR"
    default_status = 400


class AuthenticationError(GatewayError):
    default_code = "AUTH_ERROR"
    default_status = 401


class NotFoundError(GatewayError):
    default_code = "NOT_FOUND"
    default_status = 404


class ConflictError(GatewayError):
    default_code = "CONFLICT"
    default_status = 409


class ExternalServiceError(GatewayError):
    """A call to an external service failed; carries the service name."""

    default_code = "EXTERNAL_SERVICE_ERROR"
    default_status = 502

    def __init__(
        self,
        message: str,
        service: str,
        *,
        code: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        merged = {"service": service, **(details or {})}
        super().__init__(message, code=code, status_code=status_code, details=merged)
        self.service = service


def error_envelope(exc: GatewayError) -> dict[str, Any]:
    """Render *exc* as ``{success: false, error: {...}, timestamp}``."""
    return {
        "success": False,
        "error": exc.to_error_body(),
        "timestamp": datetime.now(UTC).isoformat(),
    }
