"""Lifecycle controller — create, control, delete and read servers."""

from __future__ import annotations

import asyncio
import logging
import uuid
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from vmfleet.bootstrap import default_bootstrap
from vmfleet.exceptions import (
    InvalidTransitionError,
    NotProvisionedError,
    ProviderAuthError,
    ProviderError,
    ServerNotFoundError,
    error_context,
)
from vmfleet.middleware.correlation import bind_log_context
from vmfleet.providers.base import LaunchSpec
from vmfleet.servers.locks import RecordLockArena
from vmfleet.servers.projector import StatusProjector
from vmfleet.servers.status import (
    ServerAction,
    ServerStatus,
    can_complete_create,
    check_delete,
    is_noop_action,
    next_status_for_action,
)
from vmfleet.servers.store import ServerRecord

if TYPE_CHECKING:
    from vmfleet.bootstrap import BootstrapGenerator
    from vmfleet.catalog import Catalog
    from vmfleet.providers.base import ActionResult, ComputeProvider, LaunchResult
    from vmfleet.servers.store import ServerStore

logger = logging.getLogger(__name__)


class LifecycleController:
    """Owns the provisioning state machine.

    Mutating operations on an existing record hold that record's lock
    from the first read to the last write, and every status write is a
    compare-and-swap against the status that was read, so a concurrent
    sweeper pass cannot be clobbered.
    """

    def __init__(
        self,
        store: ServerStore,
        provider: ComputeProvider,
        catalog: Catalog,
        *,
        projector: StatusProjector | None = None,
        locks: RecordLockArena | None = None,
        bootstrap: BootstrapGenerator = default_bootstrap,
    ) -> None:
        self._store = store
        self._provider = provider
        self._catalog = catalog
        self._projector = projector or StatusProjector(provider)
        self._locks = locks or RecordLockArena()
        self._bootstrap = bootstrap
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def locks(self) -> RecordLockArena:
        return self._locks

    @property
    def pending_creates(self) -> int:
        return len(self._pending)

    # ------------------------------------------------------------------
    # Create
    # ------------------------------------------------------------------

    async def create_server(
        self,
        owner_id: str,
        instance_type: str,
        plan_type: str = "basic",
    ) -> ServerRecord:
        """Persist a ``provisioning`` record and launch its instance in the background.

        Returns as soon as the record is stored.  The background task
        always resolves the record to a provider status or ``failed``.
        """
        self._catalog.validate(instance_type)

        record = ServerRecord(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            instance_type=instance_type,
            plan_type=plan_type,
            status=ServerStatus.PROVISIONING,
            created_at=datetime.now(UTC),
        )
        await self._store.insert(record)
        logger.info(
            "Server %s created for owner %s (type=%s, plan=%s)",
            record.id,
            owner_id,
            instance_type,
            plan_type,
        )

        task = asyncio.create_task(self._complete_create(record), name=f"create-{record.id}")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return record

    async def _complete_create(self, record: ServerRecord) -> None:
        with bind_log_context(server_id=record.id, owner_id=record.owner_id, action="create"):
            result = await self._launch(record)
            if result is None:
                return
            try:
                await self._record_launch(record, result)
            except asyncio.CancelledError:
                await self._abandon_launch(record, result, "Provisioning cancelled during shutdown")
                raise
            except Exception as exc:
                logger.exception(
                    "Could not record launch of %s for server %s",
                    result.provider_instance_id,
                    record.id,
                    extra={"provider_instance_id": result.provider_instance_id},
                )
                await self._abandon_launch(record, result, f"Could not record launch: {exc}")

    async def _launch(self, record: ServerRecord) -> LaunchResult | None:
        """Call the provider; on failure mark the record failed and return None."""
        try:
            spec = LaunchSpec(
                instance_type=record.instance_type,
                bootstrap_payload=self._bootstrap(record.owner_id, record.id),
                owner_id=record.owner_id,
                server_id=record.id,
                plan_type=record.plan_type,
            )
            return await self._provider.create(spec)
        except asyncio.CancelledError:
            await self._fail_create(record, "Provisioning cancelled during shutdown")
            raise
        except ProviderAuthError as exc:
            logger.error(
                "Provider rejected credentials while creating server %s: %s",
                record.id,
                exc,
            )
            await self._fail_create(record, f"Provider authorization failed: {exc}")
            return None
        except ProviderError as exc:
            logger.error("Provisioning server %s failed: %s", record.id, exc)
            await self._fail_create(record, str(exc))
            return None
        except Exception as exc:
            logger.exception("Unexpected error provisioning server %s", record.id)
            await self._fail_create(record, f"Unexpected error: {exc}")
            return None

    async def _record_launch(self, record: ServerRecord, result: LaunchResult) -> None:
        async with self._locks.hold(record.id):
            if not can_complete_create(ServerStatus.PROVISIONING, result.status):
                await self._fail_create(
                    record,
                    f"Provider reported unexpected launch status '{result.status}'",
                )
                await self._discard_orphan(record.id, result.provider_instance_id)
                return

            updated = await self._store.update(
                record.id,
                expected_status=ServerStatus.PROVISIONING,
                provider_instance_id=result.provider_instance_id,
                status=result.status,
                private_address=result.private_address,
            )
            if updated:
                logger.info(
                    "Server %s provisioned as %s: %s → %s",
                    record.id,
                    result.provider_instance_id,
                    ServerStatus.PROVISIONING.value,
                    result.status.value,
                )
                return

        # Deleted or failed while the create call was in flight.
        await self._discard_orphan(record.id, result.provider_instance_id)

    async def _fail_create(self, record: ServerRecord, reason: str) -> None:
        try:
            updated = await self._store.update(
                record.id,
                expected_status=ServerStatus.PROVISIONING,
                status=ServerStatus.FAILED,
                error_reason=reason,
            )
        except Exception:
            logger.exception("Could not mark server %s as failed (reason: %s)", record.id, reason)
            return
        if updated:
            logger.info("Server %s: provisioning → failed (%s)", record.id, reason)

    async def _abandon_launch(
        self,
        record: ServerRecord,
        result: LaunchResult,
        reason: str,
    ) -> None:
        """Fail the record and terminate the instance unless the launch write landed."""
        await self._fail_create(record, reason)
        try:
            current = await self._store.get_by_id(record.id)
        except Exception:
            logger.exception("Could not re-read server %s after a failed launch write", record.id)
            current = None
        if current is not None and current.provider_instance_id == result.provider_instance_id:
            return
        await self._discard_orphan(record.id, result.provider_instance_id)

    async def _discard_orphan(self, server_id: str, provider_instance_id: str) -> None:
        logger.warning(
            "Instance %s has no live record (server %s); terminating it",
            provider_instance_id,
            server_id,
        )
        try:
            await self._provider.terminate(provider_instance_id)
        except ProviderError as exc:
            logger.error(
                "Could not terminate orphaned instance %s: %s",
                provider_instance_id,
                exc,
            )

    # ------------------------------------------------------------------
    # Control actions
    # ------------------------------------------------------------------

    async def apply_action(
        self,
        owner_id: str,
        server_id: str,
        action: ServerAction | str,
    ) -> ServerStatus:
        """Issue ``start``/``stop``/``reboot`` and persist the transitional status."""
        try:
            action = ServerAction(action)
        except ValueError:
            msg = f"Unknown action '{action}'"
            raise InvalidTransitionError(msg, action=str(action)) from None

        async with self._locks.hold(server_id):
            with (
                bind_log_context(server_id=server_id, owner_id=owner_id, action=action.value),
                error_context(server_id=server_id, action=action.value),
            ):
                return await self._apply_locked(owner_id, server_id, action)

    async def _apply_locked(
        self,
        owner_id: str,
        server_id: str,
        action: ServerAction,
    ) -> ServerStatus:
        record = await self._require(owner_id, server_id)
        if record.provider_instance_id is None:
            msg = f"Server '{server_id}' is not provisioned yet"
            raise NotProvisionedError(msg, details={"server_id": server_id})

        if is_noop_action(record.status, action):
            logger.info(
                "Server %s already %s, ignoring %s",
                server_id,
                record.status.value,
                action.value,
            )
            return record.status

        target = next_status_for_action(record.status, action)
        logger.info(
            "%s server %s (%s) for owner %s",
            action.value,
            server_id,
            record.provider_instance_id,
            owner_id,
            extra={"provider_instance_id": record.provider_instance_id},
        )
        result = await self._send_action(action, record.provider_instance_id)
        if result.accepted_status != target:
            logger.warning(
                "Provider accepted %s for server %s as '%s', expected '%s'",
                action.value,
                server_id,
                result.accepted_status,
                target.value,
            )

        if await self._store.update(server_id, expected_status=record.status, status=target):
            logger.info("Server %s: %s → %s", server_id, record.status.value, target.value)
            return target

        # The sweeper moved the record while the command was in flight.
        current = await self._store.get_by_id(server_id)
        logger.warning(
            "Server %s changed during %s; keeping '%s'",
            server_id,
            action.value,
            current.status.value if current else "deleted",
        )
        return current.status if current else target

    async def _send_action(self, action: ServerAction, provider_instance_id: str) -> ActionResult:
        commands = {
            ServerAction.START: self._provider.start,
            ServerAction.STOP: self._provider.stop,
            ServerAction.REBOOT: self._provider.reboot,
        }
        try:
            return await commands[action](provider_instance_id)
        except ProviderAuthError:
            logger.error(
                "Provider rejected credentials for %s on %s",
                action.value,
                provider_instance_id,
            )
            raise

    # ------------------------------------------------------------------
    # Delete
    # ------------------------------------------------------------------

    async def delete_server(self, owner_id: str, server_id: str) -> None:
        """Terminate the instance (best effort) and remove the record."""
        async with self._locks.hold(server_id):
            with bind_log_context(server_id=server_id, owner_id=owner_id, action="delete"):
                await self._delete_locked(owner_id, server_id)

    async def _delete_locked(self, owner_id: str, server_id: str) -> None:
        record = await self._require(owner_id, server_id)
        logger.info(
            "Deleting server %s (%s) for owner %s",
            server_id,
            record.provider_instance_id,
            owner_id,
            extra={"provider_instance_id": record.provider_instance_id},
        )

        if record.provider_instance_id is not None and not record.is_terminal:
            target = check_delete(record.status)
            await self._store.update(server_id, expected_status=record.status, status=target)
            try:
                await self._provider.terminate(record.provider_instance_id)
            except ProviderAuthError as exc:
                logger.error(
                    "Provider rejected credentials terminating %s: %s",
                    record.provider_instance_id,
                    exc,
                )
            except ProviderError as exc:
                logger.warning(
                    "Could not terminate instance %s: %s",
                    record.provider_instance_id,
                    exc,
                )

        await self._store.delete(server_id)
        logger.info("Server %s deleted", server_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_server(self, owner_id: str, server_id: str) -> ServerRecord:
        record = await self._require(owner_id, server_id)
        return await self._projector.project(record)

    async def list_servers(self, owner_id: str) -> list[ServerRecord]:
        records = await self._store.list_owned(owner_id)
        return await self._projector.project_many(records)

    async def get_stats(self, owner_id: str) -> dict[str, int]:
        """Counts by status bucket, from stored records."""
        records = await self._store.list_owned(owner_id)
        waiting = (ServerStatus.PROVISIONING, ServerStatus.PENDING)
        return {
            "total": len(records),
            "running": sum(r.status == ServerStatus.RUNNING for r in records),
            "stopped": sum(r.status == ServerStatus.STOPPED for r in records),
            "provisioning": sum(r.status in waiting for r in records),
        }

    async def _require(self, owner_id: str, server_id: str) -> ServerRecord:
        record = await self._store.get(owner_id, server_id)
        if record is None:
            msg = f"Server '{server_id}' not found"
            raise ServerNotFoundError(msg, details={"server_id": server_id})
        return record

    # ------------------------------------------------------------------
    # Shutdown
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait for every in-flight create task to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def aclose(self, *, timeout_seconds: float = 10.0) -> None:
        """Give in-flight creates *timeout_seconds* to finish, then cancel them."""
        if not self._pending:
            return
        _, leftovers = await asyncio.wait(set(self._pending), timeout=timeout_seconds)
        for task in leftovers:
            task.cancel()
        if leftovers:
            await asyncio.gather(*leftovers, return_exceptions=True)
            logger.warning("Cancelled %d in-flight create task(s) at shutdown", len(leftovers))
