"""Per-request Prometheus instrumentation and the /metrics exposition route."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING, ClassVar

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)
from starlette.routing import Match
from starlette.types import Message, Scope, Send

if TYPE_CHECKING:
    from tenant_gate.api.pipeline import Next
    from tenant_gate.auth.context import RequestContext

logger = structlog.get_logger()

LABELS = ("path", "method", "status")

# Status recorded when the chain raised before a response started; the
# server error layer answers such requests with 500.
UNHANDLED_ERROR_STATUS = 500
# Client went away (or deadline hit) before any response was written.
CLIENT_CLOSED_REQUEST_STATUS = 499

# Path label shared by every request that matches no route.
UNMATCHED_PATH = "<unmatched>"


def route_template(scope: Scope) -> str:
    """Path template of the route serving ``scope``, e.g. ``/api/items/{id}``.

    Uses the route the router recorded when one ran. Requests stopped before
    routing (auth rejections) are matched against the app's routes here.
    """
    route = scope.get("route")
    if route is None:
        partial = None
        for candidate in getattr(scope.get("app"), "routes", ()):
            match, _ = candidate.matches(scope)
            if match is Match.FULL:
                route = candidate
                break
            if match is Match.PARTIAL and partial is None:
                partial = candidate
        else:
            route = partial
    return getattr(route, "path_format", UNMATCHED_PATH)


class StatusCapture:
    """ASGI ``send`` wrapper that remembers the first response status.

    Messages are forwarded unchanged and immediately, so capturing never
    alters or delays the actual response.
    """

    def __init__(self, send: Send) -> None:
        self._send = send
        self.status_code: int | None = None

    async def __call__(self, message: Message) -> None:
        if message["type"] == "http.response.start" and self.status_code is None:
            self.status_code = message["status"]
        await self._send(message)


class RequestMetricsRecorder:
    """Outermost pipeline stage: duration, count and in-flight gauge.

    The in-flight slot is held by ``Gauge.track_inprogress()`` and the
    observation is emitted in ``finally``, so both happen exactly once on
    every exit path, including short-circuits, errors and cancellation.
    """

    binds_identity: ClassVar[bool] = False
    requires_identity: ClassVar[bool] = False
    protected_only: ClassVar[bool] = False

    SKIP_LOG_PATHS: frozenset[str] = frozenset({"/health", "/metrics"})

    def __init__(self, registry: CollectorRegistry = REGISTRY) -> None:
        self.registry = registry
        self.request_duration = Histogram(
            "http_request_duration_seconds",
            "Duration of HTTP requests in seconds",
            LABELS,
            registry=registry,
        )
        self.request_count = Counter(
            "http_requests_total",
            "Total number of HTTP requests",
            LABELS,
            registry=registry,
        )
        self.in_flight = Gauge(
            "http_active_requests",
            "Number of active HTTP requests",
            registry=registry,
        )

    async def __call__(
        self, ctx: RequestContext, send: Send, call_next: Next
    ) -> None:
        capture = StatusCapture(send)
        fallback_status = UNHANDLED_ERROR_STATUS
        start = time.perf_counter()
        try:
            with self.in_flight.track_inprogress():
                await call_next(ctx, capture)
        except asyncio.CancelledError:
            fallback_status = CLIENT_CLOSED_REQUEST_STATUS
            raise
        finally:
            self._record(
                ctx,
                capture.status_code or fallback_status,
                time.perf_counter() - start,
            )

    def _record(self, ctx: RequestContext, status_code: int, duration: float) -> None:
        labels = (route_template(ctx.request.scope), ctx.method, str(status_code))
        self.request_duration.labels(*labels).observe(duration)
        self.request_count.labels(*labels).inc()

        if ctx.path in self.SKIP_LOG_PATHS:
            return
        # Stages downstream may have replaced the context; the last one
        # handed on carries the bound identity.
        final: RequestContext = getattr(ctx.request.state, "request_context", ctx)
        identity: dict[str, str] = {}
        if final.identity is not None:
            identity = {
                "tenant_id": final.identity.tenant_id,
                "user_id": final.identity.user_id,
            }
        logger.info(
            "http_request",
            method=ctx.method,
            path=ctx.path,
            status_code=status_code,
            latency_ms=int(duration * 1000),
            **identity,
        )


router = APIRouter(tags=["observability"])


@router.get("/metrics", include_in_schema=False)
async def metrics(request: Request) -> Response:
    """Prometheus text exposition of the app's collector registry."""
    registry: CollectorRegistry = request.app.state.metrics_registry
    return Response(generate_latest(registry), media_type=CONTENT_TYPE_LATEST)
