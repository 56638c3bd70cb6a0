"""FastAPI dependency injection."""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from tenant_gate.auth.context import RequestContext, TenantIdentity
from tenant_gate.storage.database import get_session

__all__ = ["get_request_context", "get_session", "get_tenant"]


async def get_request_context(request: Request) -> RequestContext:
    """Return the context the tenant pipeline bound for this request.

    Raises:
        HTTPException 500: the route was reached without a bound identity,
            i.e. outside the protected pipeline.
    """
    ctx = getattr(request.state, "request_context", None)
    if not isinstance(ctx, RequestContext) or not ctx.is_bound:
        raise HTTPException(status_code=500, detail="Tenant ID not found")
    return ctx


_get_request_context = Depends(get_request_context)


async def get_tenant(
    ctx: RequestContext = _get_request_context,
) -> TenantIdentity:
    """Bound tenant identity of the current request."""
    return ctx.require_identity()
