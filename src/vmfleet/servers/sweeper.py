"""Background reconciliation of stored records against provider truth."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from vmfleet.exceptions import InstanceNotFoundError, ProviderAuthError
from vmfleet.middleware.correlation import bind_log_context
from vmfleet.servers.status import ServerStatus, can_observe

if TYPE_CHECKING:
    from vmfleet.providers.base import ComputeProvider
    from vmfleet.servers.store import ServerRecord, ServerStore

logger = logging.getLogger(__name__)


class ReconciliationSweeper:
    """Periodically pulls provider state into the record store.

    Runs as a background task during the application lifespan.  No lock
    is held across a pass: each record is read, compared and written with
    a compare-and-swap on the status that was read, so a user action that
    lands in between wins and the record is picked up again next pass.
    """

    def __init__(
        self,
        store: ServerStore,
        provider: ComputeProvider,
        *,
        interval_seconds: float = 300.0,
        provisioning_timeout_minutes: float = 30.0,
    ) -> None:
        self._store = store
        self._provider = provider
        self._interval = interval_seconds
        self._provisioning_timeout = timedelta(minutes=provisioning_timeout_minutes)
        self._task: asyncio.Task[None] | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._task is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the background sweep loop."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Sweeper started (interval=%ss)", self._interval)

    async def stop(self) -> None:
        """Stop the sweep loop gracefully."""
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("Sweeper stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.run_sweep()
            except Exception:
                logger.exception("Error in sweep loop")
            await asyncio.sleep(self._interval)

    # ------------------------------------------------------------------
    # Sweep pass
    # ------------------------------------------------------------------

    async def run_sweep(self) -> int:
        """Run one reconciliation pass and return the number of records corrected."""
        corrected = await self._fail_stale_provisioning()

        records = await self._store.list_reconcilable()
        auth_failed = False
        failures = 0
        for record in records:
            with bind_log_context(
                server_id=record.id,
                owner_id=record.owner_id,
                provider_instance_id=record.provider_instance_id,
                action="sweep",
            ):
                try:
                    if await self._reconcile(record):
                        corrected += 1
                except ProviderAuthError as exc:
                    failures += 1
                    if not auth_failed:
                        logger.error("Provider rejected credentials during sweep: %s", exc)
                        auth_failed = True
                except Exception:
                    failures += 1
                    logger.warning("Failed to reconcile server %s", record.id, exc_info=True)

        logger.info(
            "Sweep finished: %d checked, %d corrected, %d failed",
            len(records),
            corrected,
            failures,
        )
        return corrected

    async def _reconcile(self, record: ServerRecord) -> bool:
        """Compare one record with the provider and write back any drift."""
        instance_id = record.provider_instance_id
        assert instance_id is not None

        try:
            details = await self._provider.describe(instance_id)
        except InstanceNotFoundError:
            # Deleted out of band; treated as gone.
            return await self._write(record, {"status": ServerStatus.TERMINATED})

        values: dict[str, Any] = {}
        if details.status != record.status and can_observe(record.status, details.status):
            values["status"] = details.status
        if details.public_address != record.public_address:
            values["public_address"] = details.public_address
        if details.private_address and details.private_address != record.private_address:
            values["private_address"] = details.private_address

        if not values:
            return False
        return await self._write(record, values)

    async def _write(self, record: ServerRecord, values: dict[str, Any]) -> bool:
        updated = await self._store.update(record.id, expected_status=record.status, **values)
        if not updated:
            logger.info("Server %s changed during sweep, skipping", record.id)
            return False
        if "status" in values:
            logger.info(
                "Server %s status: %s → %s",
                record.id,
                record.status.value,
                ServerStatus(values["status"]).value,
            )
        return True

    # ------------------------------------------------------------------
    # Stuck detection
    # ------------------------------------------------------------------

    async def _fail_stale_provisioning(self) -> int:
        """Fail records whose create call never reported back."""
        cutoff = datetime.now(UTC) - self._provisioning_timeout
        stale = await self._store.list_stale_provisioning(cutoff)
        failed = 0
        for record in stale:
            minutes = self._provisioning_timeout.total_seconds() / 60
            updated = await self._store.update(
                record.id,
                expected_status=ServerStatus.PROVISIONING,
                status=ServerStatus.FAILED,
                error_reason=f"Provisioning did not complete within {minutes:.0f} minutes",
            )
            if updated:
                failed += 1
                logger.warning(
                    "Server %s stuck in provisioning, marked failed",
                    record.id,
                    extra={"server_id": record.id, "owner_id": record.owner_id},
                )
        return failed
