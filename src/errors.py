"""
Kudos Integrity - Error Taxonomy

Every terminal failure of the integrity engine is raised as a subclass of
IntegrityError. Each carries a stable machine-readable code, the HTTP status
the API layer maps it to, a human message and optional structured details.

Dependency failure handling is configured per guard with
DependencyFailurePolicy rather than inline try/except blocks.
"""

from enum import Enum
from typing import Any


class DependencyFailurePolicy(Enum):
    """What a guard does when its backing store cannot answer."""

    PROCEED = "proceed"  # Log and continue as if allowed
    FAIL = "fail"  # Surface as Unavailable

    @classmethod
    def parse(cls, value: str | None, default: "DependencyFailurePolicy") -> "DependencyFailurePolicy":
        if not value:
            return default
        try:
            return cls(value.strip().lower())
        except ValueError:
            return default


class IntegrityError(Exception):
    """
    Base exception for all integrity engine errors.

    Attributes:
        code: Stable error code (e.g. "RATE_LIMITED")
        http_status: Status code the HTTP layer responds with
        message: Human readable message
        details: Extra structured context safe to return to the caller
        cause: Underlying exception, if any
    """

    code = "INTERNAL"
    http_status = 500

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        if cause:
            self.__cause__ = cause

    def to_dict(self) -> dict[str, Any]:
        """Convert to the error body returned by the API."""
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        base = f"[{self.code}] {self.message}"
        if self.cause:
            base += f" (caused by: {self.cause})"
        return base


# =============================================================================
# Terminal request errors
# =============================================================================


class ValidationError(IntegrityError):
    """Malformed input."""

    code = "VALIDATION_ERROR"
    http_status = 400


class InvalidRequest(IntegrityError):
    """Well-formed input that violates a business rule (e.g. self-verification)."""

    code = "INVALID_REQUEST"
    http_status = 400


class Forbidden(IntegrityError):
    """The actor's role does not allow the operation."""

    code = "FORBIDDEN"
    http_status = 403


class NotFound(IntegrityError):
    code = "NOT_FOUND"
    http_status = 404


class Conflict(IntegrityError):
    """The target record is no longer in the state the operation requires."""

    code = "CONFLICT"
    http_status = 409


class RateLimited(IntegrityError):
    code = "RATE_LIMITED"
    http_status = 429

    def __init__(
        self,
        message: str,
        retry_after: int | None = None,
        details: dict[str, Any] | None = None,
        cause: Exception | None = None,
    ):
        super().__init__(message, details=details, cause=cause)
        self.retry_after = retry_after


class QuotaExceeded(IntegrityError):
    code = "QUOTA_EXCEEDED"
    http_status = 429


# =============================================================================
# Dependency and unexpected failures
# =============================================================================


class Unavailable(IntegrityError):
    """A required dependency (record store, counter store) could not be reached."""

    code = "UNAVAILABLE"
    http_status = 500


class Internal(IntegrityError):
    code = "INTERNAL"
    http_status = 500
