"""Tenant-scoped repositories for database operations."""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tenant_gate.storage.orm import User


class UserRepository:
    """Tenant-scoped repository for User operations.

    All queries are automatically filtered by tenant_id to ensure
    data isolation between tenants.
    """

    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        if not tenant_id:
            raise ValueError("tenant_id must be a non-empty string")
        self._session = session
        self._tenant_id = tenant_id

    async def create(self, *, name: str) -> User:
        """Create a new active user for the current tenant.

        Args:
            name: Display name.

        Returns:
            The newly created User ORM instance (flushed, id assigned).
        """
        user = User(tenant_id=self._tenant_id, name=name, is_active=True)
        self._session.add(user)
        await self._session.flush()
        return user

    async def list_recent(self, *, limit: int = 10) -> Sequence[User]:
        """Newest users of the current tenant.

        Args:
            limit: Maximum number of users to return.
        """
        stmt = (
            select(User)
            .where(User.tenant_id == self._tenant_id)
            .order_by(User.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()
