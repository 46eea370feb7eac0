"""Instance-type catalog and display plans.

The catalog is a read-only table built once from settings and injected
into the lifecycle controller for ``create_server`` validation.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from pydantic import BaseModel

from vmfleet.exceptions import UnknownInstanceTypeError


class InstanceTypeSpec(BaseModel):
    """Hardware and price of one catalog entry."""

    cpu: int
    ram_gb: float
    storage_gb: int
    monthly_cost: float
    hourly_cost: float = 0.0


DEFAULT_INSTANCE_TYPES: dict[str, InstanceTypeSpec] = {
    "t3.micro": InstanceTypeSpec(
        cpu=2, ram_gb=1, storage_gb=20, monthly_cost=7.59, hourly_cost=0.0104
    ),
    "t3.small": InstanceTypeSpec(
        cpu=2, ram_gb=2, storage_gb=40, monthly_cost=15.18, hourly_cost=0.0208
    ),
    "t3.medium": InstanceTypeSpec(
        cpu=2, ram_gb=4, storage_gb=80, monthly_cost=30.37, hourly_cost=0.0416
    ),
    "t3.large": InstanceTypeSpec(
        cpu=2, ram_gb=8, storage_gb=160, monthly_cost=60.74, hourly_cost=0.0832
    ),
}


@dataclass(frozen=True)
class Plan:
    """A display plan correlated with an instance type."""

    id: str
    name: str
    instance_type: str
    price: float
    bandwidth: str
    features: tuple[str, ...] = field(default_factory=tuple)
    popular: bool = False


DEFAULT_PLANS: tuple[Plan, ...] = (
    Plan(
        id="basic",
        name="Basic",
        instance_type="t3.micro",
        price=14.99,
        bandwidth="1 TB",
        features=("Pre-installed stack", "Daily Backups", "SSL Certificate", "Email Support"),
    ),
    Plan(
        id="standard",
        name="Standard",
        instance_type="t3.small",
        price=29.99,
        bandwidth="2 TB",
        features=("Everything in Basic", "Priority Support", "Custom Domain"),
        popular=True,
    ),
    Plan(
        id="professional",
        name="Professional",
        instance_type="t3.medium",
        price=59.99,
        bandwidth="4 TB",
        features=("Everything in Standard", "Dedicated Resources", "24/7 Support"),
    ),
    Plan(
        id="business",
        name="Business",
        instance_type="t3.large",
        price=99.99,
        bandwidth="8 TB",
        features=("Everything in Professional", "Custom Configuration", "SLA Guarantee"),
    ),
)


class Catalog:
    """Immutable view over the configured instance types and plans."""

    def __init__(
        self,
        instance_types: Mapping[str, InstanceTypeSpec] | None = None,
        plans: tuple[Plan, ...] = DEFAULT_PLANS,
    ) -> None:
        types = dict(instance_types if instance_types is not None else DEFAULT_INSTANCE_TYPES)
        self._types: Mapping[str, InstanceTypeSpec] = MappingProxyType(types)
        self._plans = tuple(p for p in plans if p.instance_type in types)

    @property
    def instance_types(self) -> Mapping[str, InstanceTypeSpec]:
        return self._types

    @property
    def plans(self) -> tuple[Plan, ...]:
        return self._plans

    def __contains__(self, instance_type: object) -> bool:
        return instance_type in self._types

    def validate(self, instance_type: str) -> InstanceTypeSpec:
        """Return the spec for *instance_type* or raise UnknownInstanceTypeError."""
        spec = self._types.get(instance_type)
        if spec is None:
            available = ", ".join(sorted(self._types)) or "(none)"
            msg = f"Unknown instance type '{instance_type}'. Available: {available}"
            raise UnknownInstanceTypeError(msg, details={"instance_type": instance_type})
        return spec

    def plans_payload(self) -> list[dict[str, object]]:
        """Plans joined with their instance-type specs, for display."""
        payload: list[dict[str, object]] = []
        for plan in self._plans:
            spec = self._types[plan.instance_type]
            payload.append(
                {
                    "id": plan.id,
                    "name": plan.name,
                    "instance_type": plan.instance_type,
                    "price": plan.price,
                    "provider_cost": spec.monthly_cost,
                    "specs": {
                        "cpu": f"{spec.cpu} vCPUs",
                        "ram": f"{spec.ram_gb:g} GB",
                        "storage": f"{spec.storage_gb} GB SSD",
                        "bandwidth": plan.bandwidth,
                    },
                    "features": list(plan.features),
                    "popular": plan.popular,
                }
            )
        return payload
