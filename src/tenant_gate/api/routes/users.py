"""Tenant-scoped user endpoints."""

from __future__ import annotations

from typing import Annotated

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_gate.api.deps import get_session, get_tenant
from tenant_gate.api.schemas import (
    UserCreatedResponse,
    UserCreateRequest,
    UserResponse,
    success_response,
)
from tenant_gate.auth.context import TenantIdentity
from tenant_gate.errors import HandlerError
from tenant_gate.storage.repositories import UserRepository

logger = structlog.get_logger()

router = APIRouter(tags=["users"])

SessionDep = Annotated[AsyncSession, Depends(get_session)]
TenantDep = Annotated[TenantIdentity, Depends(get_tenant)]

RECENT_USERS_LIMIT = 10


@router.get("/data")
async def list_data(tenant: TenantDep, session: SessionDep) -> JSONResponse:
    """List the tenant's most recent users.

    Rows that fail to convert are skipped and logged individually
    instead of failing the whole response.
    """
    repo = UserRepository(session, tenant.tenant_id)
    try:
        users = await repo.list_recent(limit=RECENT_USERS_LIMIT)
    except SQLAlchemyError as exc:
        logger.error("user_query_failed", error=str(exc))
        raise HandlerError("Database error") from exc

    items: list[dict[str, object]] = []
    for user in users:
        try:
            items.append(UserResponse.model_validate(user).model_dump(mode="json"))
        except ValidationError as exc:
            logger.warning(
                "user_row_skipped",
                row_id=str(getattr(user, "id", None)),
                error=str(exc),
            )
    return success_response(items)


@router.post("/users")
async def create_user(
    body: UserCreateRequest,
    tenant: TenantDep,
    session: SessionDep,
) -> JSONResponse:
    """Create a user in the caller's tenant."""
    repo = UserRepository(session, tenant.tenant_id)
    try:
        user = await repo.create(name=body.name)
        await session.commit()
    except SQLAlchemyError as exc:
        logger.error("user_insert_failed", error=str(exc))
        raise HandlerError("Database error") from exc

    logger.info("user_created", created_user_id=str(user.id))
    return success_response(
        UserCreatedResponse(user_id=user.id).model_dump(mode="json")
    )
