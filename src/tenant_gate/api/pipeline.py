"""Tenant request pipeline: metrics -> auth -> rate limit -> handler.

The stage order is an explicit tuple validated at construction, not an
artifact of middleware registration order. Every stage receives the
per-request ``RequestContext`` as an argument and either calls the next
stage or writes its own error response and stops the chain.
"""

from __future__ import annotations

import functools
from collections.abc import Awaitable, Callable, Sequence
from typing import ClassVar, Protocol

import structlog
from starlette.datastructures import MutableHeaders
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from tenant_gate.api.metrics import RequestMetricsRecorder
from tenant_gate.api.schemas import error_response
from tenant_gate.auth.context import RequestContext
from tenant_gate.auth.rate_limiter import FixedWindowRateLimiter, RateLimitDecision
from tenant_gate.auth.tokens import TokenVerifier
from tenant_gate.errors import (
    AuthError,
    CounterStoreError,
    PipelineOrderError,
    RateLimitExceeded,
)

logger = structlog.get_logger()

Next = Callable[[RequestContext, Send], Awaitable[None]]


class Stage(Protocol):
    """One link of the pipeline.

    ``binds_identity``: the stage attaches a TenantIdentity to the context.
    ``requires_identity``: the stage reads the bound identity.
    ``protected_only``: the stage runs only under the protected path prefix.
    """

    binds_identity: ClassVar[bool]
    requires_identity: ClassVar[bool]
    protected_only: ClassVar[bool]

    async def __call__(
        self, ctx: RequestContext, send: Send, call_next: Next
    ) -> None: ...


async def _respond(ctx: RequestContext, send: Send, response: Response) -> None:
    await response(ctx.request.scope, ctx.request.receive, send)


class AuthStage:
    """Verify the bearer token and bind the tenant identity."""

    binds_identity: ClassVar[bool] = True
    requires_identity: ClassVar[bool] = False
    protected_only: ClassVar[bool] = True

    def __init__(self, verifier: TokenVerifier) -> None:
        self._verifier = verifier

    async def __call__(
        self, ctx: RequestContext, send: Send, call_next: Next
    ) -> None:
        try:
            identity = self._verifier.verify_header(
                ctx.request.headers.get("authorization")
            )
        except AuthError as exc:
            logger.info("auth_rejected", reason=str(exc.reason), path=ctx.path)
            await _respond(
                ctx,
                send,
                error_response(
                    exc.http_status,
                    exc.message,
                    headers={"WWW-Authenticate": "Bearer"},
                ),
            )
            return

        with structlog.contextvars.bound_contextvars(
            tenant_id=identity.tenant_id, user_id=identity.user_id
        ):
            await call_next(ctx.with_identity(identity), send)


class RateLimitStage:
    """Admit or reject by the bound tenant's fixed-window counter."""

    binds_identity: ClassVar[bool] = False
    requires_identity: ClassVar[bool] = True
    protected_only: ClassVar[bool] = True

    def __init__(self, limiter: FixedWindowRateLimiter) -> None:
        self._limiter = limiter

    async def __call__(
        self, ctx: RequestContext, send: Send, call_next: Next
    ) -> None:
        identity = ctx.require_identity()
        try:
            decision = await self._limiter.admit(identity.tenant_id)
        except RateLimitExceeded as exc:
            await _respond(
                ctx,
                send,
                error_response(
                    exc.http_status,
                    "Rate limit exceeded",
                    headers={
                        "Retry-After": str(exc.decision.reset_in),
                        **_rate_limit_headers(exc.decision),
                    },
                ),
            )
            return
        except CounterStoreError as exc:
            await _respond(
                ctx,
                send,
                error_response(exc.http_status, "Rate limiter unavailable"),
            )
            return

        if decision.degraded:
            await call_next(ctx, send)
        else:
            await call_next(ctx, _HeaderInjectingSend(send, decision))


def _rate_limit_headers(decision: RateLimitDecision) -> dict[str, str]:
    return {
        "X-RateLimit-Limit": str(decision.limit),
        "X-RateLimit-Remaining": str(decision.remaining),
    }


class _HeaderInjectingSend:
    """Add rate-limit headers to the handler's response start message."""

    def __init__(self, send: Send, decision: RateLimitDecision) -> None:
        self._send = send
        self._headers = _rate_limit_headers(decision)

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start":
            headers = MutableHeaders(scope=message)
            for name, value in self._headers.items():
                headers.setdefault(name, value)
        await self._send(message)


class Pipeline:
    """Ordered chain of stages terminating in a tenant-scoped handler.

    Raises:
        PipelineOrderError: a stage needs tenant identity that no earlier
            stage binds on every path it runs for.
    """

    def __init__(
        self,
        stages: Sequence[Stage],
        *,
        protected_prefix: str = "/api/",
    ) -> None:
        self._validate(stages)
        self.stages: tuple[Stage, ...] = tuple(stages)
        self.protected_prefix = protected_prefix

    @classmethod
    def standard(
        cls,
        *,
        metrics: RequestMetricsRecorder,
        verifier: TokenVerifier,
        limiter: FixedWindowRateLimiter,
        protected_prefix: str = "/api/",
    ) -> Pipeline:
        """Build the production order: metrics, auth, rate limit."""
        return cls(
            (metrics, AuthStage(verifier), RateLimitStage(limiter)),
            protected_prefix=protected_prefix,
        )

    @staticmethod
    def _validate(stages: Sequence[Stage]) -> None:
        bound_everywhere = False
        bound_when_protected = False
        for stage in stages:
            if stage.requires_identity:
                covered = bound_everywhere or (
                    stage.protected_only and bound_when_protected
                )
                if not covered:
                    raise PipelineOrderError(
                        f"{type(stage).__name__} requires tenant identity "
                        "but no earlier stage binds it"
                    )
            if stage.binds_identity:
                if stage.protected_only:
                    bound_when_protected = True
                else:
                    bound_everywhere = True

    def is_protected(self, path: str) -> bool:
        return path.startswith(self.protected_prefix)

    def stages_for(self, path: str) -> tuple[Stage, ...]:
        if self.is_protected(path):
            return self.stages
        return tuple(stage for stage in self.stages if not stage.protected_only)

    async def run(self, request: Request, send: Send, handler: Next) -> None:
        """Run one request through the chain, then ``handler``.

        The context most recently handed on is kept as
        ``request.state.request_context``, so outer stages can read what
        inner ones bound.
        """
        chain = self.stages_for(request.url.path)

        async def call_at(index: int, ctx: RequestContext, send: Send) -> None:
            request.state.request_context = ctx
            if index == len(chain):
                await handler(ctx, send)
                return
            await chain[index](ctx, send, functools.partial(call_at, index + 1))

        await call_at(0, RequestContext(request=request), send)


class TenantPipelineMiddleware:
    """Pure ASGI middleware hosting a ``Pipeline`` in front of the app.

    The handler sees the final context as ``request.state.request_context``.
    """

    def __init__(self, app: ASGIApp, pipeline: Pipeline) -> None:
        self.app = app
        self.pipeline = pipeline

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)

        async def handler(ctx: RequestContext, send: Send) -> None:
            await self.app(scope, receive, send)

        await self.pipeline.run(request, send, handler)
