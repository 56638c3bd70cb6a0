"""Shared pytest fixtures."""

from collections.abc import AsyncGenerator, Callable
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from prometheus_client import CollectorRegistry

from tenant_gate.api.app import create_app
from tenant_gate.auth.tokens import issue_token
from tenant_gate.config import Settings
from tenant_gate.storage.counter_store import InMemoryCounterStore
from tenant_gate.storage.database import get_session

TEST_SECRET = "test-secret-key-with-at-least-32-bytes!!"


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--run-db",
        action="store_true",
        default=False,
        help="Run tests that require a live PostgreSQL instance",
    )
    parser.addoption(
        "--run-redis",
        action="store_true",
        default=False,
        help="Run tests that require a live Redis instance",
    )


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    markers_to_check = {
        "requires_db": ("--run-db", "needs --run-db flag"),
        "requires_redis": ("--run-redis", "needs --run-redis flag"),
    }

    skip_conditions = {
        marker_name: (not config.getoption(option_flag), reason_msg)
        for marker_name, (option_flag, reason_msg) in markers_to_check.items()
    }

    for item in items:
        for marker_name, (should_skip, reason_msg) in skip_conditions.items():
            if should_skip and marker_name in item.keywords:
                item.add_marker(pytest.mark.skip(reason=reason_msg))


def bearer(
    tenant_id: str = "t1",
    user_id: str = "u1",
    *,
    ttl: timedelta = timedelta(minutes=5),
    secret: str = TEST_SECRET,
) -> dict[str, str]:
    """Authorization header carrying a freshly signed token."""
    token = issue_token(tenant_id, user_id, secret, ttl=ttl)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def settings() -> Settings:
    return Settings(
        environment="testing",  # type: ignore[arg-type]
        jwt_secret=TEST_SECRET,  # type: ignore[arg-type]
        counter_backend="memory",  # type: ignore[arg-type]
        _env_file=None,
    )


@pytest.fixture()
def counter_store() -> InMemoryCounterStore:
    return InMemoryCounterStore()


@pytest.fixture()
def registry() -> CollectorRegistry:
    """Isolated Prometheus registry per test."""
    return CollectorRegistry()


@pytest.fixture()
def mock_session() -> AsyncMock:
    session = AsyncMock()
    session.add = MagicMock()
    return session


@pytest.fixture()
def test_app(
    settings: Settings,
    counter_store: InMemoryCounterStore,
    registry: CollectorRegistry,
    mock_session: AsyncMock,
) -> FastAPI:
    """App with in-memory counters, isolated metrics and a mocked DB session."""
    app = create_app(settings, counter_store=counter_store, registry=registry)
    app.dependency_overrides[get_session] = lambda: mock_session
    return app


@pytest.fixture()
async def client(test_app: FastAPI) -> AsyncGenerator[AsyncClient]:
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture()
def auth() -> Callable[..., dict[str, str]]:
    """Factory for signed Authorization headers: ``auth("t1", "u1")``."""
    return bearer
