"""Shared test fixtures for vmfleet."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import pytest

from vmfleet.catalog import Catalog
from vmfleet.db.engine import create_async_engine, create_session_factory, create_tables
from vmfleet.providers.base import LaunchSpec
from vmfleet.providers.mock import MockProvider
from vmfleet.servers.projector import StatusProjector
from vmfleet.servers.service import LifecycleController
from vmfleet.servers.status import ServerStatus
from vmfleet.servers.store import ServerRecord, ServerStore
from vmfleet.servers.sweeper import ReconciliationSweeper

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable, Callable

    from sqlalchemy.ext.asyncio import AsyncEngine


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """In-memory aiosqlite engine with the schema created."""
    eng = create_async_engine("sqlite+aiosqlite://")
    await create_tables(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def store(engine: AsyncEngine) -> ServerStore:
    return ServerStore(create_session_factory(engine))


@pytest.fixture
def provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def catalog() -> Catalog:
    return Catalog()


@pytest.fixture
async def controller(
    store: ServerStore,
    provider: MockProvider,
    catalog: Catalog,
) -> AsyncGenerator[LifecycleController, None]:
    ctl = LifecycleController(store, provider, catalog, projector=StatusProjector(provider))
    yield ctl
    await ctl.aclose(timeout_seconds=1.0)


@pytest.fixture
def sweeper(store: ServerStore, provider: MockProvider) -> ReconciliationSweeper:
    return ReconciliationSweeper(store, provider, interval_seconds=0.01)


def _make_record(**overrides: Any) -> ServerRecord:
    values: dict[str, Any] = {
        "id": "r1",
        "owner_id": "u1",
        "instance_type": "t3.small",
        "plan_type": "basic",
        "status": ServerStatus.RUNNING,
        "created_at": datetime(2026, 1, 5, 12, 0, tzinfo=UTC),
        "provider_instance_id": "i-123",
    }
    values.update(overrides)
    return ServerRecord(**values)


async def _seed_live(
    store: ServerStore,
    provider: MockProvider,
    *,
    status: ServerStatus = ServerStatus.RUNNING,
    **overrides: Any,
) -> ServerRecord:
    provider.queue_instance_id(overrides.pop("provider_instance_id", "i-123"))
    launched = await provider.create(
        _spec(overrides.get("id", "r1"), overrides.get("owner_id", "u1")),
    )
    provider.set_state(launched.provider_instance_id, status)
    record = _make_record(
        provider_instance_id=launched.provider_instance_id,
        private_address=launched.private_address,
        status=status,
        **overrides,
    )
    await store.insert(record)
    provider.calls.clear()
    return record


def _spec(server_id: str, owner_id: str) -> LaunchSpec:
    return LaunchSpec(
        instance_type="t3.small",
        bootstrap_payload=b"#!/bin/bash\n",
        owner_id=owner_id,
        server_id=server_id,
        plan_type="basic",
    )


@pytest.fixture
def make_record() -> Callable[..., ServerRecord]:
    """Factory for ServerRecord snapshots with sensible defaults."""
    return _make_record


@pytest.fixture
def seed_live(
    store: ServerStore,
    provider: MockProvider,
) -> Callable[..., Awaitable[ServerRecord]]:
    """Insert a record backed by a mock instance in the given status."""

    async def _seed(**kwargs: Any) -> ServerRecord:
        return await _seed_live(store, provider, **kwargs)

    return _seed
