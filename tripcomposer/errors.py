"""Domain error hierarchy shared by all marketplace services."""

from __future__ import annotations

from typing import Any, Optional


class TripComposerError(Exception):
    """Base class for errors that carry a stable code and an HTTP status."""

    status_code: int = 400
    default_code: str = "TRIPCOMPOSER_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Render the error as the API error envelope body."""
        return {"code": self.code, "message": self.message, "details": self.details}


class ValidationFailedError(TripComposerError):
    status_code = 400
    default_code = "VALIDATION_FAILED"


class ForbiddenError(TripComposerError):
    status_code = 403
    default_code = "FORBIDDEN"


class NotFoundError(TripComposerError):
    status_code = 404
    default_code = "NOT_FOUND"


class ConflictError(TripComposerError):
    status_code = 409
    default_code = "CONFLICT"


class InvalidTransitionError(ConflictError):
    default_code = "INVALID_TRANSITION"
