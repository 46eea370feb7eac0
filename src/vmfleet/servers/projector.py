"""Read-path merge of live provider state into record snapshots."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from typing import TYPE_CHECKING

from vmfleet.exceptions import ProviderAuthError, ProviderError
from vmfleet.servers.status import can_observe

if TYPE_CHECKING:
    from vmfleet.providers.base import ComputeProvider
    from vmfleet.servers.store import ServerRecord

logger = logging.getLogger(__name__)


class StatusProjector:
    """Overlay provider truth on a copy of a stored record.

    Nothing is persisted here; drift is written back by the sweeper.  A
    provider failure degrades to the stored record so one unreachable
    instance never fails a whole listing.
    """

    def __init__(self, provider: ComputeProvider) -> None:
        self._provider = provider

    @staticmethod
    def needs_projection(record: ServerRecord) -> bool:
        return record.provider_instance_id is not None and not record.is_terminal

    async def project(self, record: ServerRecord) -> ServerRecord:
        if not self.needs_projection(record):
            return record

        instance_id = record.provider_instance_id
        assert instance_id is not None
        try:
            details, health = await asyncio.gather(
                self._provider.describe(instance_id),
                self._provider.describe_health(instance_id),
            )
        except ProviderAuthError:
            logger.error("Provider rejected credentials while projecting server %s", record.id)
            return record
        except ProviderError as exc:
            logger.warning(
                "Could not fetch live status for server %s (%s): %s",
                record.id,
                instance_id,
                exc,
            )
            return record

        status = details.status if can_observe(record.status, details.status) else record.status
        return dataclasses.replace(
            record,
            status=status,
            public_address=details.public_address,
            private_address=details.private_address or record.private_address,
            checks_passed=health.checks_passed,
            zone=details.zone,
            launch_time=details.launch_time,
        )

    async def project_many(self, records: list[ServerRecord]) -> list[ServerRecord]:
        """Project every record concurrently, preserving order."""
        return list(await asyncio.gather(*(self.project(r) for r in records)))
