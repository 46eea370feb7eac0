"""SQLAlchemy 2.0 ORM models for vmfleet."""

from __future__ import annotations

from datetime import datetime  # noqa: TC003 - SQLAlchemy needs runtime access

from sqlalchemy import (
    DateTime,
    Index,
    String,
    Text,
    func,
)
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    mapped_column,
)


class Base(DeclarativeBase):
    """Declarative base for all vmfleet models."""


class ServerRow(Base):
    """A user's virtual machine lease and its last known provider state."""

    __tablename__ = "servers"
    __table_args__ = (Index("ix_servers_status", "status"),)

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
    )
    owner_id: Mapped[str] = mapped_column(
        String(255),
        index=True,
    )
    instance_type: Mapped[str] = mapped_column(String(64))
    plan_type: Mapped[str] = mapped_column(String(64))
    provider_instance_id: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    status: Mapped[str] = mapped_column(
        String(32),
        default="provisioning",
    )
    private_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    public_address: Mapped[str | None] = mapped_column(
        String(64),
        nullable=True,
    )
    error_reason: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
