"""Tests for vmfleet.providers.cloud_base — shared provider call shell."""

from __future__ import annotations

import asyncio
from typing import Any

import pytest

from vmfleet.exceptions import (
    ProviderThrottledError,
    ProviderUnavailableError,
    ProviderUnknownError,
)
from vmfleet.providers.base import (
    ActionResult,
    ComputeProvider,
    InstanceDetails,
    InstanceHealth,
    LaunchResult,
    LaunchSpec,
)
from vmfleet.providers.cloud_base import CloudProvider
from vmfleet.servers.status import ServerStatus


class _FakeCloud(CloudProvider):
    """Minimal concrete provider whose describe hook replays queued outcomes."""

    def __init__(self, outcomes: list[Any] | None = None, **kwargs: Any) -> None:
        kwargs.setdefault("retry_backoff_seconds", 0.0)
        super().__init__(**kwargs)
        self.outcomes = outcomes or []
        self.connects = 0
        self.disconnects = 0
        self.describe_calls = 0
        self.delay = 0.0

    @property
    def provider_name(self) -> str:
        return "fake"

    async def _connect(self) -> None:
        self.connects += 1

    async def _disconnect(self) -> None:
        self.disconnects += 1

    async def _create(self, spec: LaunchSpec) -> LaunchResult:
        return LaunchResult(provider_instance_id="i-1", status=ServerStatus.PENDING)

    async def _describe(self, provider_instance_id: str) -> InstanceDetails:
        self.describe_calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes.pop(0) if self.outcomes else ServerStatus.RUNNING
        if isinstance(outcome, Exception):
            raise outcome
        return InstanceDetails(provider_instance_id=provider_instance_id, status=outcome)

    async def _describe_health(self, provider_instance_id: str) -> InstanceHealth:
        return InstanceHealth(status="running", checks_passed=True)

    async def _start(self, provider_instance_id: str) -> ActionResult:
        return ActionResult(accepted_status=ServerStatus.STARTING)

    async def _stop(self, provider_instance_id: str) -> ActionResult:
        return ActionResult(accepted_status=ServerStatus.STOPPING)

    async def _reboot(self, provider_instance_id: str) -> ActionResult:
        return ActionResult(accepted_status=ServerStatus.REBOOTING)

    async def _terminate(self, provider_instance_id: str) -> ActionResult:
        return ActionResult(accepted_status=ServerStatus.TERMINATING)


class TestCloudProvider:
    def test_satisfies_protocol(self) -> None:
        assert isinstance(_FakeCloud(), ComputeProvider)

    def test_cannot_instantiate_abstract(self) -> None:
        with pytest.raises(TypeError):
            CloudProvider()  # type: ignore[abstract]

    async def test_connects_lazily_once(self) -> None:
        provider = _FakeCloud()
        assert provider.connects == 0
        await provider.describe("i-1")
        await provider.stop("i-1")
        assert provider.connects == 1

    async def test_disconnect_only_when_connected(self) -> None:
        provider = _FakeCloud()
        await provider.disconnect()
        assert provider.disconnects == 0
        await provider.describe("i-1")
        await provider.disconnect()
        assert provider.disconnects == 1

    async def test_timeout_is_unavailable(self) -> None:
        provider = _FakeCloud(timeout_seconds=0.01, retry_attempts=1)
        provider.delay = 1.0
        with pytest.raises(ProviderUnavailableError, match="timed out"):
            await provider.describe("i-1")

    async def test_retryable_errors_retried(self) -> None:
        provider = _FakeCloud([ProviderThrottledError("slow"), ServerStatus.STOPPED])
        details = await provider.describe("i-1")
        assert details.status is ServerStatus.STOPPED
        assert provider.describe_calls == 2

    async def test_unexpected_error_normalised(self) -> None:
        provider = _FakeCloud([ZeroDivisionError("boom")])
        with pytest.raises(ProviderUnknownError) as exc_info:
            await provider.describe("i-1")
        assert exc_info.value.details == {"provider": "fake", "operation": "describe"}
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)
        assert provider.describe_calls == 1

    async def test_commands_return_accepted_status(self) -> None:
        provider = _FakeCloud()
        assert (await provider.start("i-1")).accepted_status is ServerStatus.STARTING
        assert (await provider.reboot("i-1")).accepted_status is ServerStatus.REBOOTING
        assert (await provider.terminate("i-1")).accepted_status is ServerStatus.TERMINATING
