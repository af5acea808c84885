"""
Domain errors for the time clock.

Every rejection carries a human-readable message; gate rejections also carry the
measured value that drove them (distance, minutes early, similarity score) and
the limit it was compared against.
"""
from typing import Any, Optional


class DomainError(Exception):
    """Base exception for business rule violations."""

    status_code = 400
    default_code = "domain_error"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        measured: Any = None,
        limit: Any = None,
    ):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.measured = measured
        self.limit = limit
        # Pending effects to deliver even though the operation failed
        self.effects: list = []

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.measured is not None:
            body["measured"] = self.measured
        if self.limit is not None:
            body["limit"] = self.limit
        return body


class ValidationError(DomainError):
    """Malformed or inconsistent input."""

    status_code = 400
    default_code = "validation_error"


class ConflictError(DomainError):
    """Operation not allowed in the current clock state."""

    status_code = 409
    default_code = "conflict"


class ForbiddenError(DomainError):
    """Strict-mode gate rejection."""

    status_code = 403
    default_code = "forbidden"


class NotFoundError(DomainError):
    status_code = 404
    default_code = "not_found"


class ExternalServiceError(DomainError):
    """A collaborator (face matching, settings, ...) failed or timed out.

    Never surfaced to API callers; callers degrade it to a soft flag.
    """

    status_code = 502
    default_code = "external_service_error"
