"""Fixed-window per-tenant rate limiter over a shared counter store."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import structlog

from tenant_gate.errors import CounterStoreError, RateLimitExceeded
from tenant_gate.storage.counter_store import CounterStore, WindowCount

logger = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""

    tenant_id: str
    count: int
    limit: int
    reset_in: int
    # Admitted without a counter because the store failed in fail-open mode.
    degraded: bool = False

    @property
    def allowed(self) -> bool:
        return self.degraded or self.count <= self.limit

    @property
    def remaining(self) -> int:
        return max(self.limit - self.count, 0)


class FixedWindowRateLimiter:
    """Admit at most ``limit`` requests per tenant per fixed window.

    Every call performs exactly one atomic increment on the store; the
    increment counts even when the request is rejected, so a burst past
    the limit never under-counts.

    Store failures fail closed (``CounterStoreError``) unless the limiter
    was built with ``fail_open=True``.
    """

    KEY_PREFIX = "rate_limit"

    def __init__(
        self,
        store: CounterStore,
        *,
        limit: int = 100,
        window_seconds: int = 60,
        timeout: float = 0.5,
        fail_open: bool = False,
    ) -> None:
        if limit <= 0 or window_seconds <= 0:
            raise ValueError("limit and window_seconds must be positive")
        self._store = store
        self._limit = limit
        self._window = window_seconds
        self._timeout = timeout
        self._fail_open = fail_open

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def window_seconds(self) -> int:
        return self._window

    def key_for(self, tenant_id: str) -> str:
        return f"{self.KEY_PREFIX}:{tenant_id}"

    async def admit(self, tenant_id: str) -> RateLimitDecision:
        """Count one request for ``tenant_id`` and decide admission.

        Args:
            tenant_id: Bound tenant identity, never a raw request value.

        Returns:
            The decision for an admitted request.

        Raises:
            RateLimitExceeded: the tenant is over its limit for this window.
            CounterStoreError: the store failed and the limiter fails closed.
        """
        if not tenant_id:
            raise ValueError("tenant_id must be a non-empty string")

        try:
            window = await self._increment(self.key_for(tenant_id))
        except CounterStoreError as exc:
            if not self._fail_open:
                logger.error(
                    "counter_store_error", tenant_id=tenant_id, error=str(exc)
                )
                raise
            logger.warning(
                "rate_limit_fail_open", tenant_id=tenant_id, error=str(exc)
            )
            return RateLimitDecision(
                tenant_id=tenant_id,
                count=0,
                limit=self._limit,
                reset_in=self._window,
                degraded=True,
            )

        decision = RateLimitDecision(
            tenant_id=tenant_id,
            count=window.count,
            limit=self._limit,
            reset_in=window.reset_in,
        )
        if not decision.allowed:
            logger.info(
                "rate_limit_exceeded",
                tenant_id=tenant_id,
                count=window.count,
                limit=self._limit,
            )
            raise RateLimitExceeded(decision)
        return decision

    async def peek(self, tenant_id: str) -> int:
        """Current window count for ``tenant_id``. Observability only."""
        return await self._store.peek(self.key_for(tenant_id))

    async def _increment(self, key: str) -> WindowCount:
        try:
            async with asyncio.timeout(self._timeout):
                return await self._store.increment(key, self._window)
        except TimeoutError as exc:
            raise CounterStoreError(
                f"Counter store timed out after {self._timeout}s"
            ) from exc
