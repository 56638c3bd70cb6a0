"""Domain-specific exceptions for tenant-gate.

Each pipeline stage resolves its own error class into an HTTP response;
``http_status`` is the status that stage writes.
"""

from __future__ import annotations

from enum import StrEnum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from tenant_gate.auth.rate_limiter import RateLimitDecision


class AuthFailure(StrEnum):
    """Why a bearer credential was rejected."""

    MISSING_CREDENTIAL = "missing_credential"
    MALFORMED_CREDENTIAL = "malformed_credential"
    INVALID_SIGNATURE = "invalid_signature"
    EXPIRED = "expired"
    MISSING_CLAIMS = "missing_claims"


AUTH_FAILURE_MESSAGES: dict[AuthFailure, str] = {
    AuthFailure.MISSING_CREDENTIAL: "Authorization header required",
    AuthFailure.MALFORMED_CREDENTIAL: "Bearer token required",
    AuthFailure.INVALID_SIGNATURE: "Invalid token",
    AuthFailure.EXPIRED: "Token expired",
    AuthFailure.MISSING_CLAIMS: "Token missing required claims",
}


class AuthError(Exception):
    """Credential missing, malformed, forged, expired or incomplete."""

    http_status = 401

    def __init__(self, reason: AuthFailure) -> None:
        self.reason = reason
        super().__init__(AUTH_FAILURE_MESSAGES[reason])

    @property
    def message(self) -> str:
        return AUTH_FAILURE_MESSAGES[self.reason]


class RateLimitExceeded(Exception):
    """Tenant used up its quota for the current window."""

    http_status = 429

    def __init__(self, decision: RateLimitDecision) -> None:
        self.decision = decision
        super().__init__(
            f"Rate limit exceeded: {decision.count}/{decision.limit}, "
            f"resets in {decision.reset_in}s"
        )


class CounterStoreError(Exception):
    """Shared counter store unreachable, failing or too slow."""

    http_status = 503


class HandlerError(Exception):
    """Business handler failed after admission (e.g. persistence error)."""

    http_status = 500


class IdentityNotBoundError(Exception):
    """A stage or handler asked for tenant identity before it was bound."""


class IdentityAlreadyBoundError(Exception):
    """A second stage tried to bind identity for the same request."""


class PipelineOrderError(Exception):
    """Stage sequence violates the auth-before-tenant-logic contract."""
