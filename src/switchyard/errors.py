"""
Switchyard error types.

Every error carries a stable machine-readable ``code`` and the HTTP status
the API boundary maps it to, so callers can decide whether to retry, abort
or surface the failure.

Expected business outcomes (policy denials, failed verifications) are
returned as values, not raised.
"""

from __future__ import annotations

from typing import Any, Optional


class SwitchyardError(Exception):
    """Base error for all Switchyard operations."""

    code = "INTERNAL_ERROR"
    status = 500

    def __init__(self, message: str, details: Optional[Any] = None):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict:
        body: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


# Validation errors
class InvalidInputError(SwitchyardError):
    """Malformed input. Never retried by the server."""

    code = "INVALID_INPUT"
    status = 400


class PolicyValidationError(InvalidInputError):
    """Policy rules do not match the closed rule schema."""
    pass


# Lookup / ownership errors
class NotFoundError(SwitchyardError):
    code = "NOT_FOUND"
    status = 404


class AlreadyExistsError(SwitchyardError):
    code = "ALREADY_EXISTS"
    status = 409


class PolicyOwnershipError(NotFoundError):
    """Policy id exists but belongs to a different tenant.

    Surfaces as a plain not-found so no other tenant's data leaks.
    """
    pass


class UnauthorizedError(SwitchyardError):
    code = "UNAUTHORIZED"
    status = 401


# Resource unavailable (safe to retry with backoff)
class ResourceUnavailableError(SwitchyardError):
    status = 503


class NoFacilitatorAvailableError(ResourceUnavailableError):
    """No active facilitator supports the requested payment."""

    code = "NO_FACILITATOR_AVAILABLE"


class VerificationTimeoutError(ResourceUnavailableError):
    """Verification oracle did not answer within its time bound."""

    code = "VERIFICATION_TIMEOUT"


class FacilitatorError(ResourceUnavailableError):
    """Facilitator endpoint returned an unusable response."""

    code = "FACILITATOR_ERROR"


# Replay / idempotency conflicts (never retry the same authorization)
class ReplayDetectedError(SwitchyardError):
    code = "REPLAY_DETECTED"
    status = 409


# Trace errors
class TraceClosedError(SwitchyardError):
    """Step appended to a trace that has already ended."""

    code = "TRACE_CLOSED"
