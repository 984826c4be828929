"""Stable machine-readable reasons a policy or verification step rejected a request."""

from __future__ import annotations

from enum import Enum


class DenyCode(str, Enum):
    # Policy denials
    SCOPE_DENIED = "SCOPE_DENIED"
    ROUTE_NOT_SCOPED = "ROUTE_NOT_SCOPED"
    BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
    RATE_LIMITED = "RATE_LIMITED"

    # Verification outcomes
    REPLAY_DETECTED = "REPLAY_DETECTED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"
    VERIFICATION_TIMEOUT = "VERIFICATION_TIMEOUT"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"
    AUTHORIZATION_EXPIRED = "AUTHORIZATION_EXPIRED"
    AUTHORIZATION_NOT_YET_VALID = "AUTHORIZATION_NOT_YET_VALID"


_HTTP_STATUS = {
    DenyCode.SCOPE_DENIED: 403,
    DenyCode.ROUTE_NOT_SCOPED: 403,
    DenyCode.BUDGET_EXCEEDED: 403,
    DenyCode.RATE_LIMITED: 403,
    DenyCode.REPLAY_DETECTED: 409,
    DenyCode.VERIFICATION_FAILED: 400,
    DenyCode.VERIFICATION_TIMEOUT: 503,
    DenyCode.INVALID_SIGNATURE: 400,
    DenyCode.AUTHORIZATION_EXPIRED: 400,
    DenyCode.AUTHORIZATION_NOT_YET_VALID: 400,
}


def http_status_for(code: DenyCode) -> int:
    return _HTTP_STATUS[code]
