"""Compute provider protocol and normalized data structures."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from datetime import datetime

    from vmfleet.servers.status import ServerStatus


@dataclass
class LaunchSpec:
    """Everything the provider needs to launch one instance."""

    instance_type: str
    bootstrap_payload: bytes
    owner_id: str
    server_id: str
    plan_type: str
    tags: dict[str, str] = field(default_factory=dict)


@dataclass
class LaunchResult:
    """Provider response to an accepted create request."""

    provider_instance_id: str
    status: ServerStatus
    private_address: str | None = None


@dataclass
class InstanceDetails:
    """Provider view of a single instance."""

    provider_instance_id: str
    status: ServerStatus
    public_address: str | None = None
    private_address: str | None = None
    instance_type: str | None = None
    launch_time: datetime | None = None
    zone: str | None = None


@dataclass
class InstanceHealth:
    """Result of the provider's health checks for an instance."""

    status: str
    checks_passed: bool = False
    system_status: str | None = None
    instance_status: str | None = None


@dataclass
class ActionResult:
    """Transitional status the provider accepted for a control command."""

    accepted_status: ServerStatus


@runtime_checkable
class ComputeProvider(Protocol):
    """Protocol that all compute providers must implement.

    Every method raises a :class:`~vmfleet.exceptions.ProviderError`
    subclass on failure.
    """

    @property
    def provider_name(self) -> str:
        """Unique provider identifier."""
        ...  # pragma: no cover

    async def create(self, spec: LaunchSpec) -> LaunchResult:
        """Launch an instance.  Failure does not prove nothing was launched."""
        ...  # pragma: no cover

    async def describe(self, provider_instance_id: str) -> InstanceDetails:
        """Describe an instance.  Raises InstanceNotFoundError if it is gone."""
        ...  # pragma: no cover

    async def describe_health(self, provider_instance_id: str) -> InstanceHealth:
        """Report health checks; ``pending`` when none are available yet."""
        ...  # pragma: no cover

    async def start(self, provider_instance_id: str) -> ActionResult:
        ...  # pragma: no cover

    async def stop(self, provider_instance_id: str) -> ActionResult:
        ...  # pragma: no cover

    async def reboot(self, provider_instance_id: str) -> ActionResult:
        ...  # pragma: no cover

    async def terminate(self, provider_instance_id: str) -> ActionResult:
        ...  # pragma: no cover

    async def disconnect(self) -> None:
        """Release SDK clients."""
        ...  # pragma: no cover
