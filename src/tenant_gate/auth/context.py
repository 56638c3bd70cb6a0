"""Authenticated tenant identity and the per-request context carrying it."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass

from starlette.requests import Request

from tenant_gate.errors import IdentityAlreadyBoundError, IdentityNotBoundError


@dataclass(frozen=True)
class TenantIdentity:
    """Authenticated tenant identity, extracted from the bearer token."""

    tenant_id: str
    user_id: str = ""

    def __post_init__(self) -> None:
        if not self.tenant_id:
            raise ValueError("tenant_id must be a non-empty string")


@dataclass(frozen=True)
class RequestContext:
    """Per-request carrier threaded through every pipeline stage.

    Created unbound at pipeline entry. ``with_identity`` returns a new
    context; the identity can be bound only once.
    """

    request: Request
    identity: TenantIdentity | None = None

    @property
    def path(self) -> str:
        return self.request.url.path

    @property
    def method(self) -> str:
        return self.request.method

    @property
    def is_bound(self) -> bool:
        return self.identity is not None

    def with_identity(self, identity: TenantIdentity) -> RequestContext:
        if self.identity is not None:
            raise IdentityAlreadyBoundError(
                "Tenant identity is already bound for this request"
            )
        return dataclasses.replace(self, identity=identity)

    def require_identity(self) -> TenantIdentity:
        """Return the bound identity.

        Raises:
            IdentityNotBoundError: no stage has bound an identity yet.
        """
        if self.identity is None:
            raise IdentityNotBoundError("Tenant identity is not bound")
        return self.identity
