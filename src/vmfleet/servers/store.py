"""Instance record store — persisted server records scoped to their owner."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import delete, select, update

from vmfleet.db.models import ServerRow
from vmfleet.servers.status import TERMINAL_STATUSES, ServerStatus

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
    from sqlalchemy.sql import ColumnElement

logger = logging.getLogger(__name__)

_UPDATABLE = frozenset(
    {
        "status",
        "provider_instance_id",
        "private_address",
        "public_address",
        "error_reason",
    }
)


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on the way back.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass(frozen=True)
class ServerRecord:
    """Immutable snapshot of one server record."""

    id: str
    owner_id: str
    instance_type: str
    plan_type: str
    status: ServerStatus
    created_at: datetime
    provider_instance_id: str | None = None
    private_address: str | None = None
    public_address: str | None = None
    error_reason: str | None = None
    updated_at: datetime | None = None
    # Display-only, filled in by the status projector and never persisted.
    checks_passed: bool | None = None
    zone: str | None = None
    launch_time: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        for key in ("created_at", "updated_at", "launch_time"):
            value = data[key]
            data[key] = value.isoformat() if value is not None else None
        return data

    @classmethod
    def from_row(cls, row: ServerRow) -> ServerRecord:
        return cls(
            id=row.id,
            owner_id=row.owner_id,
            instance_type=row.instance_type,
            plan_type=row.plan_type,
            status=ServerStatus(row.status),
            created_at=_as_utc(row.created_at) or datetime.now(UTC),
            provider_instance_id=row.provider_instance_id,
            private_address=row.private_address,
            public_address=row.public_address,
            error_reason=row.error_reason,
            updated_at=_as_utc(row.updated_at),
        )


class ServerStore:
    """CRUD over the ``servers`` table.

    Every method opens its own short-lived session so no transaction is
    held across provider calls.  Status writes accept only
    :class:`ServerStatus` values and may be guarded by a compare-and-swap
    on the stored status.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get(self, owner_id: str, server_id: str) -> ServerRecord | None:
        """Return the record if it exists and belongs to *owner_id*."""
        async with self._session_factory() as session:
            stmt = select(ServerRow).where(
                ServerRow.id == server_id,
                ServerRow.owner_id == owner_id,
            )
            row = (await session.execute(stmt)).scalar_one_or_none()
            return ServerRecord.from_row(row) if row is not None else None

    async def get_by_id(self, server_id: str) -> ServerRecord | None:
        """Unscoped lookup for internal callers (create task, sweeper)."""
        async with self._session_factory() as session:
            row = await session.get(ServerRow, server_id)
            return ServerRecord.from_row(row) if row is not None else None

    async def list_owned(self, owner_id: str) -> list[ServerRecord]:
        """All records of *owner_id*, newest first."""
        async with self._session_factory() as session:
            stmt = (
                select(ServerRow)
                .where(ServerRow.owner_id == owner_id)
                .order_by(ServerRow.created_at.desc(), ServerRow.id)
            )
            rows = (await session.execute(stmt)).scalars().all()
            return [ServerRecord.from_row(r) for r in rows]

    async def list_by_predicate(self, *criteria: ColumnElement[bool]) -> list[ServerRecord]:
        """All records matching every SQL criterion, oldest first."""
        async with self._session_factory() as session:
            stmt = select(ServerRow).where(*criteria).order_by(ServerRow.created_at, ServerRow.id)
            rows = (await session.execute(stmt)).scalars().all()
            return [ServerRecord.from_row(r) for r in rows]

    async def list_reconcilable(self) -> list[ServerRecord]:
        """Records with a provider instance and a non-terminal status."""
        return await self.list_by_predicate(
            ServerRow.provider_instance_id.is_not(None),
            ServerRow.status.not_in([s.value for s in TERMINAL_STATUSES]),
        )

    async def list_stale_provisioning(self, created_before: datetime) -> list[ServerRecord]:
        """Records still waiting for their create call since before *created_before*."""
        return await self.list_by_predicate(
            ServerRow.provider_instance_id.is_(None),
            ServerRow.status == ServerStatus.PROVISIONING.value,
            ServerRow.created_at < created_before,
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert(self, record: ServerRecord) -> ServerRecord:
        async with self._session_factory() as session:
            session.add(
                ServerRow(
                    id=record.id,
                    owner_id=record.owner_id,
                    instance_type=record.instance_type,
                    plan_type=record.plan_type,
                    provider_instance_id=record.provider_instance_id,
                    status=ServerStatus(record.status).value,
                    private_address=record.private_address,
                    public_address=record.public_address,
                    error_reason=record.error_reason,
                    created_at=record.created_at,
                )
            )
            await session.commit()
        return record

    async def update(
        self,
        server_id: str,
        *,
        expected_status: ServerStatus | None = None,
        **fields: Any,
    ) -> bool:
        """Apply *fields* to one record.

        With *expected_status* the write only happens if the stored
        status still equals it.  ``provider_instance_id`` can only be
        written while it is unset.  Returns True if a row was updated.
        """
        unknown = set(fields) - _UPDATABLE
        if unknown:
            msg = f"Fields not updatable: {', '.join(sorted(unknown))}"
            raise ValueError(msg)
        if not fields:
            return False

        values: dict[str, Any] = dict(fields)
        if "status" in values:
            values["status"] = ServerStatus(values["status"]).value
        values["updated_at"] = datetime.now(UTC)

        criteria: list[ColumnElement[bool]] = [ServerRow.id == server_id]
        if expected_status is not None:
            criteria.append(ServerRow.status == ServerStatus(expected_status).value)
        if "provider_instance_id" in fields:
            if fields["provider_instance_id"] is None:
                msg = "provider_instance_id cannot be cleared"
                raise ValueError(msg)
            criteria.append(ServerRow.provider_instance_id.is_(None))

        async with self._session_factory() as session:
            result = await session.execute(update(ServerRow).where(*criteria).values(**values))
            await session.commit()
            updated = bool(result.rowcount)

        if not updated:
            logger.debug("Update of server %s matched no row (%s)", server_id, sorted(fields))
        return updated

    async def delete(self, server_id: str) -> bool:
        async with self._session_factory() as session:
            result = await session.execute(delete(ServerRow).where(ServerRow.id == server_id))
            await session.commit()
            return bool(result.rowcount)
