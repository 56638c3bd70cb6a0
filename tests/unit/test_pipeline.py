"""Tests for pipeline ordering and stage behavior."""

from typing import ClassVar
from unittest.mock import AsyncMock

import pytest
import structlog
from prometheus_client import CollectorRegistry
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.types import Message

from tenant_gate.api.metrics import RequestMetricsRecorder
from tenant_gate.api.pipeline import AuthStage, Pipeline, RateLimitStage
from tenant_gate.auth.context import RequestContext
from tenant_gate.auth.rate_limiter import FixedWindowRateLimiter
from tenant_gate.auth.tokens import TokenVerifier, issue_token
from tenant_gate.errors import CounterStoreError, PipelineOrderError
from tenant_gate.storage.counter_store import InMemoryCounterStore

SECRET = "pipeline-test-secret-of-at-least-32-bytes"


class _Recording:
    """Stage that records its name and passes through."""

    binds_identity: ClassVar[bool] = False
    requires_identity: ClassVar[bool] = False
    protected_only: ClassVar[bool] = False

    def __init__(self, name: str, calls: list[str]) -> None:
        self.name = name
        self.calls = calls

    async def __call__(self, ctx, send, call_next) -> None:
        self.calls.append(self.name)
        await call_next(ctx, send)


class _BindsEverywhere(_Recording):
    binds_identity: ClassVar[bool] = True


def _request(path: str = "/api/data", headers: dict[str, str] | None = None):
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    return Request(
        {
            "type": "http",
            "method": "GET",
            "path": path,
            "headers": raw,
            "query_string": b"",
        }
    )


def _bearer(tenant_id: str = "t1", user_id: str = "u1") -> dict[str, str]:
    return {"Authorization": f"Bearer {issue_token(tenant_id, user_id, SECRET)}"}


class _Sent:
    """Collects ASGI messages written by the pipeline."""

    def __init__(self) -> None:
        self.messages: list[Message] = []

    async def __call__(self, message: Message) -> None:
        self.messages.append(message)

    @property
    def status(self) -> int:
        return self.messages[0]["status"]

    @property
    def headers(self) -> dict[str, str]:
        return {
            k.decode().lower(): v.decode() for k, v in self.messages[0]["headers"]
        }


async def _ok_handler(ctx: RequestContext, send) -> None:
    await PlainTextResponse("ok")(ctx.request.scope, ctx.request.receive, send)


@pytest.fixture()
def verifier() -> TokenVerifier:
    return TokenVerifier(SECRET)


@pytest.fixture()
def limiter() -> FixedWindowRateLimiter:
    return FixedWindowRateLimiter(InMemoryCounterStore(), limit=2)


@pytest.fixture()
def pipeline(verifier, limiter) -> Pipeline:
    return Pipeline.standard(
        metrics=RequestMetricsRecorder(CollectorRegistry()),
        verifier=verifier,
        limiter=limiter,
    )


class TestPipelineOrder:
    def test_standard_order(self, pipeline: Pipeline) -> None:
        assert [type(s) for s in pipeline.stages] == [
            RequestMetricsRecorder,
            AuthStage,
            RateLimitStage,
        ]

    def test_rate_limit_before_auth_rejected(self, verifier, limiter) -> None:
        with pytest.raises(PipelineOrderError, match="RateLimitStage"):
            Pipeline([RateLimitStage(limiter), AuthStage(verifier)])

    def test_rate_limit_without_auth_rejected(self, limiter) -> None:
        with pytest.raises(PipelineOrderError):
            Pipeline([RateLimitStage(limiter)])

    def test_global_binder_satisfies_requirement(self, limiter) -> None:
        Pipeline([_BindsEverywhere("bind", []), RateLimitStage(limiter)])

    def test_unprotected_paths_skip_protected_stages(self, pipeline) -> None:
        assert pipeline.is_protected("/api/data")
        assert not pipeline.is_protected("/health")
        assert not pipeline.is_protected("/apiary")
        assert [type(s) for s in pipeline.stages_for("/health")] == [
            RequestMetricsRecorder
        ]
        assert pipeline.stages_for("/api/users") == pipeline.stages

    def test_custom_prefix(self, verifier, limiter) -> None:
        p = Pipeline.standard(
            metrics=RequestMetricsRecorder(CollectorRegistry()),
            verifier=verifier,
            limiter=limiter,
            protected_prefix="/v1/",
        )
        assert p.is_protected("/v1/data")
        assert not p.is_protected("/api/data")


class TestPipelineRun:
    async def test_stages_run_in_order(self) -> None:
        calls: list[str] = []
        p = Pipeline([_Recording("a", calls), _Recording("b", calls)])
        handler = AsyncMock()

        await p.run(_request(), _Sent(), handler)

        assert calls == ["a", "b"]
        handler.assert_awaited_once()

    async def test_handler_receives_bound_context(self, pipeline) -> None:
        seen: list[RequestContext] = []

        async def handler(ctx: RequestContext, send) -> None:
            seen.append(ctx)
            await _ok_handler(ctx, send)

        await pipeline.run(_request(headers=_bearer("acme", "alice")), _Sent(), handler)

        identity = seen[0].require_identity()
        assert identity.tenant_id == "acme"
        assert identity.user_id == "alice"

    async def test_unprotected_path_has_no_identity(self, pipeline) -> None:
        seen: list[RequestContext] = []

        async def handler(ctx: RequestContext, send) -> None:
            seen.append(ctx)
            await _ok_handler(ctx, send)

        sent = _Sent()
        await pipeline.run(_request("/health"), sent, handler)

        assert sent.status == 200
        assert seen[0].is_bound is False

    async def test_identity_in_log_context_during_handler(self, pipeline) -> None:
        bound: dict[str, object] = {}

        async def handler(ctx: RequestContext, send) -> None:
            bound.update(structlog.contextvars.get_contextvars())
            await _ok_handler(ctx, send)

        await pipeline.run(_request(headers=_bearer("acme", "alice")), _Sent(), handler)

        assert bound["tenant_id"] == "acme"
        assert bound["user_id"] == "alice"
        assert "tenant_id" not in structlog.contextvars.get_contextvars()

    async def test_final_context_kept_on_request(self, pipeline) -> None:
        request = _request(headers=_bearer("acme", "alice"))

        await pipeline.run(request, _Sent(), _ok_handler)

        final = request.state.request_context
        assert final.require_identity().tenant_id == "acme"


class TestAuthStage:
    async def test_missing_header_short_circuits(self, pipeline, limiter) -> None:
        handler = AsyncMock()
        sent = _Sent()

        await pipeline.run(_request(), sent, handler)

        handler.assert_not_awaited()
        assert sent.status == 401
        assert sent.headers["www-authenticate"] == "Bearer"
        assert b"Authorization header required" in sent.messages[1]["body"]

    async def test_rejected_auth_does_not_count(self, pipeline, limiter) -> None:
        for _ in range(5):
            await pipeline.run(
                _request(headers={"Authorization": "Bearer junk"}),
                _Sent(),
                AsyncMock(),
            )
        assert await limiter.peek("t1") == 0


class TestRateLimitStage:
    async def test_headers_on_admitted_response(self, pipeline) -> None:
        sent = _Sent()
        await pipeline.run(_request(headers=_bearer()), sent, _ok_handler)

        assert sent.status == 200
        assert sent.headers["x-ratelimit-limit"] == "2"
        assert sent.headers["x-ratelimit-remaining"] == "1"

    async def test_over_limit_short_circuits(self, pipeline) -> None:
        for _ in range(2):
            await pipeline.run(_request(headers=_bearer()), _Sent(), _ok_handler)

        handler = AsyncMock()
        sent = _Sent()
        await pipeline.run(_request(headers=_bearer()), sent, handler)

        handler.assert_not_awaited()
        assert sent.status == 429
        assert 1 <= int(sent.headers["retry-after"]) <= 60
        assert sent.headers["x-ratelimit-remaining"] == "0"

    async def test_store_failure_returns_503(self, verifier) -> None:
        store = AsyncMock()
        store.increment.side_effect = CounterStoreError("down")
        p = Pipeline.standard(
            metrics=RequestMetricsRecorder(CollectorRegistry()),
            verifier=verifier,
            limiter=FixedWindowRateLimiter(store),
        )
        handler = AsyncMock()
        sent = _Sent()

        await p.run(_request(headers=_bearer()), sent, handler)

        handler.assert_not_awaited()
        assert sent.status == 503

    async def test_fail_open_admits_without_headers(self, verifier) -> None:
        store = AsyncMock()
        store.increment.side_effect = CounterStoreError("down")
        p = Pipeline.standard(
            metrics=RequestMetricsRecorder(CollectorRegistry()),
            verifier=verifier,
            limiter=FixedWindowRateLimiter(store, fail_open=True),
        )
        sent = _Sent()

        await p.run(_request(headers=_bearer()), sent, _ok_handler)

        assert sent.status == 200
        assert "x-ratelimit-limit" not in sent.headers
