"""Tests for vmfleet.servers.service — LifecycleController."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import TYPE_CHECKING, Any
from unittest.mock import patch

import pytest

from vmfleet.exceptions import (
    InvalidTransitionError,
    NotProvisionedError,
    ProviderAuthError,
    ProviderUnavailableError,
    ServerNotFoundError,
    UnknownInstanceTypeError,
)
from vmfleet.middleware.logging import FleetContextFilter, FleetJsonFormatter
from vmfleet.providers.base import ActionResult, LaunchSpec
from vmfleet.providers.mock import MockProvider
from vmfleet.servers.service import LifecycleController
from vmfleet.servers.status import ServerAction, ServerStatus

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from vmfleet.catalog import Catalog
    from vmfleet.servers.store import ServerRecord, ServerStore
    from vmfleet.servers.sweeper import ReconciliationSweeper


@pytest.fixture
async def slow_controller(store: ServerStore, catalog: Catalog):
    """Controller whose provider takes a moment to answer every call."""
    provider = MockProvider(latency_seconds=0.05)
    ctl = LifecycleController(store, provider, catalog)
    yield ctl, provider
    await ctl.aclose(timeout_seconds=1.0)


# ======================================================================
# create_server
# ======================================================================


class TestCreateServer:
    async def test_create_then_read(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
    ) -> None:
        provider.queue_instance_id("i-123")

        record = await controller.create_server("u1", "t3.small", "basic")

        assert record.status is ServerStatus.PROVISIONING
        assert record.provider_instance_id is None
        assert record.owner_id == "u1"

        await controller.drain()

        stored = await store.get("u1", record.id)
        assert stored is not None
        assert stored.status is ServerStatus.RUNNING
        assert stored.provider_instance_id == "i-123"
        assert stored.private_address is not None

    async def test_create_calls_provider_with_server_id(
        self,
        controller: LifecycleController,
        provider: MockProvider,
    ) -> None:
        record = await controller.create_server("u1", "t3.micro", "basic")
        await controller.drain()
        assert provider.calls[0] == ("create", record.id)

    async def test_unknown_instance_type(
        self,
        controller: LifecycleController,
        store: ServerStore,
    ) -> None:
        with pytest.raises(UnknownInstanceTypeError):
            await controller.create_server("u1", "small", "basic")
        assert await store.list_owned("u1") == []

    async def test_provider_failure_marks_failed(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
    ) -> None:
        provider.fail_next("create", ProviderUnavailableError("capacity exhausted"))

        record = await controller.create_server("u1", "t3.small", "basic")
        await controller.drain()

        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.FAILED
        assert stored.error_reason == "capacity exhausted"
        assert stored.provider_instance_id is None

    async def test_auth_failure_marks_failed(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        provider.fail_next("create", ProviderAuthError("bad keys"))

        with caplog.at_level(logging.ERROR, logger="vmfleet.servers.service"):
            record = await controller.create_server("u1", "t3.small", "basic")
            await controller.drain()

        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.FAILED
        assert stored.error_reason is not None
        assert "authorization" in stored.error_reason
        assert "rejected credentials" in caplog.text

    async def test_unexpected_error_marks_failed(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
    ) -> None:
        provider.fail_next("create", RuntimeError("kaboom"))

        record = await controller.create_server("u1", "t3.small", "basic")
        await controller.drain()

        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.FAILED
        assert stored.error_reason == "Unexpected error: kaboom"

    async def test_launch_write_failure_fails_record_and_terminates_instance(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        provider.queue_instance_id("i-lost")
        real_update = store.update

        async def update_failing_on_launch(server_id: str, **kwargs: Any) -> bool:
            if "provider_instance_id" in kwargs:
                raise RuntimeError("db connection reset")
            return await real_update(server_id, **kwargs)

        with (
            patch.object(store, "update", new=update_failing_on_launch),
            caplog.at_level(logging.ERROR, logger="vmfleet.servers.service"),
        ):
            record = await controller.create_server("u1", "t3.small", "basic")
            await controller.drain()

        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.FAILED
        assert stored.provider_instance_id is None
        assert stored.error_reason == "Could not record launch: db connection reset"
        assert ("terminate", "i-lost") in provider.calls
        assert provider.state_of("i-lost") is ServerStatus.TERMINATING
        assert "Could not record launch of i-lost" in caplog.text

    async def test_bootstrap_failure_marks_failed(
        self,
        store: ServerStore,
        provider: MockProvider,
        catalog: Catalog,
    ) -> None:
        def broken_bootstrap(owner_id: str, server_id: str) -> bytes:
            raise ValueError("template missing")

        ctl = LifecycleController(store, provider, catalog, bootstrap=broken_bootstrap)

        record = await ctl.create_server("u1", "t3.small", "basic")
        await ctl.drain()

        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.FAILED
        assert stored.error_reason == "Unexpected error: template missing"
        assert provider.calls == []

    async def test_pending_launch_status(
        self,
        store: ServerStore,
        catalog: Catalog,
    ) -> None:
        provider = MockProvider(launch_status=ServerStatus.PENDING)
        ctl = LifecycleController(store, provider, catalog)

        record = await ctl.create_server("u1", "t3.small", "basic")
        await ctl.drain()

        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.PENDING

    async def test_deleted_while_provisioning_terminates_orphan(
        self,
        slow_controller: tuple[LifecycleController, MockProvider],
        store: ServerStore,
    ) -> None:
        ctl, provider = slow_controller
        provider.queue_instance_id("i-orphan")

        record = await ctl.create_server("u1", "t3.small", "basic")
        await ctl.delete_server("u1", record.id)
        await ctl.drain()

        assert await store.get_by_id(record.id) is None
        assert ("terminate", "i-orphan") in provider.calls
        assert provider.state_of("i-orphan") is ServerStatus.TERMINATING

    async def test_shutdown_cancels_and_fails_pending_creates(
        self,
        store: ServerStore,
        catalog: Catalog,
    ) -> None:
        ctl = LifecycleController(store, MockProvider(latency_seconds=5.0), catalog)

        record = await ctl.create_server("u1", "t3.small", "basic")
        assert ctl.pending_creates == 1
        await ctl.aclose(timeout_seconds=0.01)

        assert ctl.pending_creates == 0
        stored = await store.get_by_id(record.id)
        assert stored is not None
        assert stored.status is ServerStatus.FAILED
        assert stored.error_reason == "Provisioning cancelled during shutdown"


# ======================================================================
# apply_action
# ======================================================================


class TestApplyAction:
    async def test_stop_running(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()

        status = await controller.apply_action("u1", "r1", ServerAction.STOP)

        assert status is ServerStatus.STOPPING
        assert provider.calls == [("stop", "i-123")]
        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.STOPPING

    async def test_accepts_plain_strings(
        self,
        controller: LifecycleController,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live(status=ServerStatus.STOPPED)
        assert await controller.apply_action("u1", "r1", "start") is ServerStatus.STARTING

    async def test_unknown_action(
        self,
        controller: LifecycleController,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()
        with pytest.raises(InvalidTransitionError, match="Unknown action"):
            await controller.apply_action("u1", "r1", "hibernate")

    async def test_not_found_for_other_owner(
        self,
        controller: LifecycleController,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()
        with pytest.raises(ServerNotFoundError):
            await controller.apply_action("intruder", "r1", ServerAction.STOP)

    async def test_not_provisioned(
        self,
        controller: LifecycleController,
        store: ServerStore,
        make_record: Callable[..., ServerRecord],
    ) -> None:
        await store.insert(
            make_record(status=ServerStatus.PROVISIONING, provider_instance_id=None)
        )
        with pytest.raises(NotProvisionedError):
            await controller.apply_action("u1", "r1", ServerAction.STOP)

    async def test_invalid_transition_leaves_record_untouched(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()

        with pytest.raises(InvalidTransitionError) as exc_info:
            await controller.apply_action("u1", "r1", ServerAction.START)

        assert exc_info.value.details["server_id"] == "r1"
        assert exc_info.value.details["action"] == "start"
        assert provider.calls == []
        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.RUNNING
        assert stored.updated_at is None

    async def test_stop_while_stopped_is_a_noop(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live(status=ServerStatus.STOPPED)

        status = await controller.apply_action("u1", "r1", ServerAction.STOP)

        assert status is ServerStatus.STOPPED
        assert provider.calls == []
        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.updated_at is None

    async def test_repeated_stop_converges_to_stopped(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        sweeper: ReconciliationSweeper,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()

        assert await controller.apply_action("u1", "r1", ServerAction.STOP) is ServerStatus.STOPPING
        assert await controller.apply_action("u1", "r1", ServerAction.STOP) is ServerStatus.STOPPING
        assert provider.calls == [("stop", "i-123")]

        provider.settle()
        assert await sweeper.run_sweep() == 1

        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.STOPPED
        assert await controller.apply_action("u1", "r1", ServerAction.STOP) is ServerStatus.STOPPED
        assert [c for c in provider.calls if c[0] == "stop"] == [("stop", "i-123")]

    async def test_action_logs_carry_server_fields(
        self,
        controller: LifecycleController,
        seed_live: Callable[..., Awaitable[ServerRecord]],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await seed_live()
        context_filter = FleetContextFilter()
        caplog.handler.addFilter(context_filter)
        try:
            with caplog.at_level(logging.INFO, logger="vmfleet.servers.service"):
                await controller.apply_action("u1", "r1", ServerAction.STOP)
        finally:
            caplog.handler.removeFilter(context_filter)

        records = [r for r in caplog.records if r.name == "vmfleet.servers.service"]
        assert records
        for record in records:
            assert record.server_id == "r1"
            assert record.owner_id == "u1"
            assert record.action == "stop"

        command_log = next(r for r in records if getattr(r, "provider_instance_id", None))
        payload = json.loads(FleetJsonFormatter().format(command_log))
        assert payload["provider_instance_id"] == "i-123"
        assert payload["server_id"] == "r1"
        assert payload["action"] == "stop"

    async def test_provider_error_propagates_without_write(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()
        provider.fail_next("reboot", ProviderUnavailableError("timeout"))

        with pytest.raises(ProviderUnavailableError):
            await controller.apply_action("u1", "r1", ServerAction.REBOOT)

        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.RUNNING

    async def test_racing_stop_and_start(
        self,
        slow_controller: tuple[LifecycleController, MockProvider],
        store: ServerStore,
        make_record: Callable[..., ServerRecord],
    ) -> None:
        ctl, provider = slow_controller
        provider.queue_instance_id("i-123")
        launched = await provider.create(
            LaunchSpec(
                instance_type="t3.small",
                bootstrap_payload=b"",
                owner_id="u1",
                server_id="r1",
                plan_type="basic",
            )
        )
        await store.insert(make_record(provider_instance_id=launched.provider_instance_id))

        results = await asyncio.gather(
            ctl.apply_action("u1", "r1", ServerAction.STOP),
            ctl.apply_action("u1", "r1", ServerAction.START),
            return_exceptions=True,
        )

        successes = [r for r in results if isinstance(r, ServerStatus)]
        failures = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert successes == [ServerStatus.STOPPING]
        assert len(failures) == 1
        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.STOPPING

    async def test_concurrent_sweep_write_wins(
        self,
        store: ServerStore,
        catalog: Catalog,
        make_record: Callable[..., ServerRecord],
    ) -> None:
        class _RacingProvider(MockProvider):
            async def stop(self, provider_instance_id: str) -> ActionResult:
                # Provider truth lands in the store while the command is in flight.
                await store.update("r1", status=ServerStatus.STOPPED)
                return ActionResult(accepted_status=ServerStatus.STOPPING)

        ctl = LifecycleController(store, _RacingProvider(), catalog)
        await store.insert(make_record())

        status = await ctl.apply_action("u1", "r1", ServerAction.STOP)

        assert status is ServerStatus.STOPPED
        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.STOPPED


# ======================================================================
# delete_server
# ======================================================================


class TestDeleteServer:
    async def test_terminates_and_deletes(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()

        await controller.delete_server("u1", "r1")

        assert provider.calls == [("terminate", "i-123")]
        assert provider.state_of("i-123") is ServerStatus.TERMINATING
        assert await store.get_by_id("r1") is None

    async def test_provider_failure_still_deletes(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        await seed_live()
        provider.fail_next("terminate", ProviderUnavailableError("endpoint down"))

        with caplog.at_level(logging.WARNING, logger="vmfleet.servers.service"):
            await controller.delete_server("u1", "r1")

        assert await store.get_by_id("r1") is None
        assert "Could not terminate instance i-123" in caplog.text

    async def test_unprovisioned_skips_provider(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        make_record: Callable[..., ServerRecord],
    ) -> None:
        await store.insert(make_record(status=ServerStatus.FAILED, provider_instance_id=None))

        await controller.delete_server("u1", "r1")

        assert provider.calls == []
        assert await store.get_by_id("r1") is None

    async def test_terminated_skips_provider(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        make_record: Callable[..., ServerRecord],
    ) -> None:
        await store.insert(make_record(status=ServerStatus.TERMINATED))

        await controller.delete_server("u1", "r1")

        assert provider.calls == []
        assert await store.get_by_id("r1") is None

    async def test_not_found(
        self,
        controller: LifecycleController,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live()
        with pytest.raises(ServerNotFoundError):
            await controller.delete_server("intruder", "r1")


# ======================================================================
# Reads
# ======================================================================


class TestReads:
    async def test_get_server_projects_live_state(
        self,
        controller: LifecycleController,
        provider: MockProvider,
        store: ServerStore,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live(status=ServerStatus.STARTING)
        provider.settle()

        record = await controller.get_server("u1", "r1")

        assert record.status is ServerStatus.RUNNING
        assert record.public_address is not None
        stored = await store.get_by_id("r1")
        assert stored is not None
        assert stored.status is ServerStatus.STARTING

    async def test_get_server_not_found(self, controller: LifecycleController) -> None:
        with pytest.raises(ServerNotFoundError):
            await controller.get_server("u1", "nope")

    async def test_list_servers_scoped_to_owner(
        self,
        controller: LifecycleController,
        seed_live: Callable[..., Awaitable[ServerRecord]],
    ) -> None:
        await seed_live(id="a", provider_instance_id="i-a")
        await seed_live(id="b", provider_instance_id="i-b", owner_id="u2")

        records = await controller.list_servers("u1")
        assert [r.id for r in records] == ["a"]

    async def test_stats(
        self,
        controller: LifecycleController,
        store: ServerStore,
        make_record: Callable[..., ServerRecord],
    ) -> None:
        statuses = [
            ServerStatus.RUNNING,
            ServerStatus.RUNNING,
            ServerStatus.STOPPED,
            ServerStatus.PROVISIONING,
            ServerStatus.PENDING,
            ServerStatus.FAILED,
        ]
        for index, status in enumerate(statuses):
            await store.insert(make_record(id=f"r{index}", status=status))
        await store.insert(make_record(id="other", owner_id="u2"))

        assert await controller.get_stats("u1") == {
            "total": 6,
            "running": 2,
            "stopped": 1,
            "provisioning": 2,
        }
