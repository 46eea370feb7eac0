"""In-memory compute provider for development and testing."""

from __future__ import annotations

import asyncio
import uuid
from datetime import UTC, datetime

from vmfleet.exceptions import InstanceNotFoundError, ProviderUnknownError
from vmfleet.providers.base import (
    ActionResult,
    InstanceDetails,
    InstanceHealth,
    LaunchResult,
    LaunchSpec,
)
from vmfleet.servers.status import ServerStatus

# Where each transitional state lands when the mock "catches up".
_SETTLED: dict[ServerStatus, ServerStatus] = {
    ServerStatus.PENDING: ServerStatus.RUNNING,
    ServerStatus.STARTING: ServerStatus.RUNNING,
    ServerStatus.REBOOTING: ServerStatus.RUNNING,
    ServerStatus.STOPPING: ServerStatus.STOPPED,
    ServerStatus.TERMINATING: ServerStatus.TERMINATED,
}


def _settle_instance(inst: InstanceDetails, index: int) -> None:
    inst.status = _SETTLED.get(inst.status, inst.status)
    if inst.status == ServerStatus.RUNNING and inst.public_address is None:
        inst.public_address = f"203.0.113.{index % 250 + 1}"


class MockProvider:
    """Simulated provider whose ground truth tests can steer.

    * ``launch_status`` is the state reported by ``create``.
    * :meth:`queue_instance_id` fixes the id of the next launch.
    * :meth:`fail_next` makes the next call to an operation raise.
    * :meth:`set_state` / :meth:`forget` simulate out-of-band changes.
    * :meth:`settle` completes every in-progress transition.
    * ``settle_on_describe`` completes an instance's transition the next
      time it is described, so the sweeper converges without test help.
      The ``mock`` backend of a running service uses it.
    """

    def __init__(
        self,
        latency_seconds: float = 0.0,
        *,
        launch_status: ServerStatus = ServerStatus.RUNNING,
        settle_on_describe: bool = False,
    ) -> None:
        self._latency = latency_seconds
        self._settle_on_describe = settle_on_describe
        self._launch_status = launch_status
        self._instances: dict[str, InstanceDetails] = {}
        self._queued_ids: list[str] = []
        self._failures: dict[str, list[Exception]] = {}
        self.calls: list[tuple[str, str]] = []

    @property
    def provider_name(self) -> str:
        return "mock"

    # ------------------------------------------------------------------
    # Test controls
    # ------------------------------------------------------------------

    def queue_instance_id(self, instance_id: str) -> None:
        self._queued_ids.append(instance_id)

    def fail_next(self, operation: str, exc: Exception) -> None:
        self._failures.setdefault(operation, []).append(exc)

    def set_state(
        self,
        instance_id: str,
        status: ServerStatus,
        *,
        public_address: str | None = None,
    ) -> None:
        inst = self._get(instance_id)
        inst.status = status
        if public_address is not None:
            inst.public_address = public_address

    def forget(self, instance_id: str) -> None:
        self._instances.pop(instance_id, None)

    def settle(self) -> None:
        for index, inst in enumerate(self._instances.values()):
            _settle_instance(inst, index)

    def state_of(self, instance_id: str) -> ServerStatus:
        return self._get(instance_id).status

    # ------------------------------------------------------------------
    # Provider contract
    # ------------------------------------------------------------------

    async def create(self, spec: LaunchSpec) -> LaunchResult:
        await self._enter("create", spec.server_id)
        instance_id = self._queued_ids.pop(0) if self._queued_ids else f"i-{uuid.uuid4().hex[:8]}"
        private = "10.0.0.%d" % (len(self._instances) % 250 + 2)
        self._instances[instance_id] = InstanceDetails(
            provider_instance_id=instance_id,
            status=self._launch_status,
            private_address=private,
            instance_type=spec.instance_type,
            launch_time=datetime.now(UTC),
            zone="mock-zone-1a",
        )
        return LaunchResult(
            provider_instance_id=instance_id,
            status=self._launch_status,
            private_address=private,
        )

    async def describe(self, provider_instance_id: str) -> InstanceDetails:
        await self._enter("describe", provider_instance_id)
        inst = self._get(provider_instance_id)
        if self._settle_on_describe:
            _settle_instance(inst, list(self._instances).index(provider_instance_id))
        return InstanceDetails(
            provider_instance_id=inst.provider_instance_id,
            status=inst.status,
            public_address=inst.public_address,
            private_address=inst.private_address,
            instance_type=inst.instance_type,
            launch_time=inst.launch_time,
            zone=inst.zone,
        )

    async def describe_health(self, provider_instance_id: str) -> InstanceHealth:
        await self._enter("describe_health", provider_instance_id)
        inst = self._get(provider_instance_id)
        if inst.status == ServerStatus.PENDING:
            return InstanceHealth(status=ServerStatus.PENDING.value, checks_passed=False)
        ok = inst.status == ServerStatus.RUNNING
        return InstanceHealth(
            status=inst.status.value,
            checks_passed=ok,
            system_status="ok" if ok else "not-applicable",
            instance_status="ok" if ok else "not-applicable",
        )

    async def start(self, provider_instance_id: str) -> ActionResult:
        await self._enter("start", provider_instance_id)
        inst = self._live(provider_instance_id, "start")
        if inst.status == ServerStatus.STOPPED:
            inst.status = ServerStatus.STARTING
        return ActionResult(accepted_status=ServerStatus.STARTING)

    async def stop(self, provider_instance_id: str) -> ActionResult:
        await self._enter("stop", provider_instance_id)
        inst = self._live(provider_instance_id, "stop")
        if inst.status not in (ServerStatus.STOPPING, ServerStatus.STOPPED):
            inst.status = ServerStatus.STOPPING
        return ActionResult(accepted_status=ServerStatus.STOPPING)

    async def reboot(self, provider_instance_id: str) -> ActionResult:
        await self._enter("reboot", provider_instance_id)
        inst = self._live(provider_instance_id, "reboot")
        if inst.status == ServerStatus.RUNNING:
            inst.status = ServerStatus.REBOOTING
        return ActionResult(accepted_status=ServerStatus.REBOOTING)

    async def terminate(self, provider_instance_id: str) -> ActionResult:
        await self._enter("terminate", provider_instance_id)
        inst = self._get(provider_instance_id)
        if inst.status != ServerStatus.TERMINATED:
            inst.status = ServerStatus.TERMINATING
        return ActionResult(accepted_status=ServerStatus.TERMINATING)

    async def disconnect(self) -> None:
        return None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _enter(self, operation: str, key: str) -> None:
        self.calls.append((operation, key))
        if self._latency:
            await asyncio.sleep(self._latency)
        pending = self._failures.get(operation)
        if pending:
            raise pending.pop(0)

    def _get(self, instance_id: str) -> InstanceDetails:
        inst = self._instances.get(instance_id)
        if inst is None:
            raise InstanceNotFoundError(
                f"Instance {instance_id} not found",
                details={"provider": "mock", "instance_id": instance_id},
            )
        return inst

    def _live(self, instance_id: str, operation: str) -> InstanceDetails:
        inst = self._get(instance_id)
        if inst.status in (ServerStatus.TERMINATING, ServerStatus.TERMINATED):
            raise ProviderUnknownError(
                f"Cannot {operation} instance {instance_id} in state {inst.status.value}",
                details={"provider": "mock", "instance_id": instance_id},
            )
        return inst
