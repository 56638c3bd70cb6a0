"""Tenant authentication and rate limiting.

Note: ``FixedWindowRateLimiter`` lives in ``auth.rate_limiter`` and is NOT
re-exported here so that importing the token verifier does not pull in
the counter store and its Redis client.
"""

from tenant_gate.auth.context import RequestContext, TenantIdentity
from tenant_gate.auth.tokens import TokenVerifier, issue_token

__all__ = ["RequestContext", "TenantIdentity", "TokenVerifier", "issue_token"]
