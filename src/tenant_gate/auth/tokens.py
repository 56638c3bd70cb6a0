"""Bearer token verification and issuance.

Tokens are JWTs signed with a shared HMAC secret. The verifier pins the
expected algorithm, so tokens declaring ``none`` or an asymmetric
algorithm never reach signature verification with the shared secret.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import jwt

from tenant_gate.auth.context import TenantIdentity
from tenant_gate.config import SYMMETRIC_JWT_ALGORITHMS
from tenant_gate.errors import AuthError, AuthFailure

BEARER_PREFIX = "Bearer "
DEFAULT_TOKEN_TTL = timedelta(hours=1)


class TokenVerifier:
    """Validate bearer credentials and extract the tenant identity.

    CPU-only, no I/O; safe to share across concurrent requests.
    """

    def __init__(
        self,
        secret: str,
        *,
        algorithm: str = "HS256",
        leeway_seconds: int = 0,
    ) -> None:
        if algorithm not in SYMMETRIC_JWT_ALGORITHMS:
            raise ValueError(f"Unsupported token algorithm: {algorithm}")
        if not secret:
            raise ValueError("Token secret must not be empty")
        self._secret = secret
        self._algorithm = algorithm
        self._leeway = leeway_seconds

    @property
    def algorithm(self) -> str:
        return self._algorithm

    def verify_header(self, header: str | None) -> TenantIdentity:
        """Parse an ``Authorization`` header value and verify its token.

        Raises:
            AuthError: MISSING_CREDENTIAL if the header is absent,
                MALFORMED_CREDENTIAL if it is not a Bearer credential,
                otherwise whatever ``verify`` raises.
        """
        if not header:
            raise AuthError(AuthFailure.MISSING_CREDENTIAL)
        if not header.startswith(BEARER_PREFIX):
            raise AuthError(AuthFailure.MALFORMED_CREDENTIAL)
        token = header[len(BEARER_PREFIX) :].strip()
        if not token:
            raise AuthError(AuthFailure.MALFORMED_CREDENTIAL)
        return self.verify(token)

    def verify(self, credential: str) -> TenantIdentity:
        """Verify a raw JWT and return the identity it carries.

        Raises:
            AuthError: INVALID_SIGNATURE, EXPIRED or MISSING_CLAIMS.
        """
        try:
            claims = jwt.decode(
                credential,
                self._secret,
                algorithms=[self._algorithm],
                options={"require": ["exp"]},
                leeway=self._leeway,
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthError(AuthFailure.EXPIRED) from exc
        except jwt.MissingRequiredClaimError as exc:
            raise AuthError(AuthFailure.MISSING_CLAIMS) from exc
        except jwt.InvalidTokenError as exc:
            # Wrong alg, bad signature, undecodable payload.
            raise AuthError(AuthFailure.INVALID_SIGNATURE) from exc

        tenant_id = claims.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            raise AuthError(AuthFailure.MISSING_CLAIMS)

        user_id = claims.get("user_id", "")
        if not isinstance(user_id, str):
            user_id = str(user_id)

        return TenantIdentity(tenant_id=tenant_id, user_id=user_id)


def issue_token(
    tenant_id: str,
    user_id: str,
    secret: str,
    *,
    algorithm: str = "HS256",
    ttl: timedelta = DEFAULT_TOKEN_TTL,
    now: datetime | None = None,
) -> str:
    """Mint a signed token carrying ``tenant_id`` and ``user_id`` claims.

    Args:
        tenant_id: Tenant the bearer acts for.
        user_id: User within the tenant.
        secret: Shared HMAC secret.
        algorithm: HMAC algorithm, must match the verifier's.
        ttl: Lifetime; negative values produce an already-expired token.
        now: Issue time, defaults to the current UTC time.

    Returns:
        Encoded JWT.
    """
    issued_at = now or datetime.now(UTC)
    payload = {
        "tenant_id": tenant_id,
        "user_id": user_id,
        "iat": issued_at,
        "exp": issued_at + ttl,
    }
    return jwt.encode(payload, secret, algorithm=algorithm)
