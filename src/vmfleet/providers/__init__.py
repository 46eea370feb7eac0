"""Compute providers: protocol, shared base, AWS and mock implementations."""

from __future__ import annotations

from vmfleet.providers.base import (
    ActionResult,
    ComputeProvider,
    InstanceDetails,
    InstanceHealth,
    LaunchResult,
    LaunchSpec,
)

__all__ = [
    "ActionResult",
    "ComputeProvider",
    "InstanceDetails",
    "InstanceHealth",
    "LaunchResult",
    "LaunchSpec",
]
