"""Pydantic-settings configuration for vmfleet."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from vmfleet.catalog import DEFAULT_INSTANCE_TYPES, InstanceTypeSpec

# ---------------------------------------------------------------------------
# Sub-configs
# ---------------------------------------------------------------------------


class ProviderConfig(BaseModel):
    """Which compute backend to use and how to bound its calls."""

    backend: Literal["aws", "mock"] = Field(
        default="mock",
        description=(
            "'mock' is an in-memory simulator for development; its instances"
            " are lost on restart and it has no timeout or retry wrapper."
        ),
    )
    timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Upper bound on every single provider call.",
    )
    retry_attempts: int = Field(default=3, ge=1)
    retry_backoff_seconds: float = Field(default=1.0, ge=0)


class AWSConfig(BaseModel):
    """Amazon Web Services provider."""

    access_key_id: str = ""
    secret_access_key: str = ""
    session_token: str = ""
    region: str = "us-east-1"
    ami_id: str = "ami-0c02fb55c47d15a8e"
    key_name: str = ""
    security_group_id: str = ""
    subnet_id: str = ""
    detailed_monitoring: bool = True


class SweepConfig(BaseModel):
    """Reconciliation sweeper."""

    enabled: bool = True
    interval_seconds: float = Field(default=300.0, gt=0)
    provisioning_timeout_minutes: float = Field(
        default=30.0,
        gt=0,
        description="Records still provisioning without a provider id after this are failed.",
    )


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class FleetSettings(BaseSettings):
    """Central configuration for vmfleet.

    All values can be overridden via environment variables prefixed
    with ``VMFLEET_``.  Nested models use ``__`` as a delimiter,
    e.g. ``VMFLEET_AWS__REGION``.
    """

    model_config = SettingsConfigDict(
        env_prefix="VMFLEET_",
        env_nested_delimiter="__",
    )

    # -- Core -----------------------------------------------------------------

    host: str = "0.0.0.0"
    port: int = 3000
    debug: bool = False
    log_level: str = "INFO"
    api_key: str = Field(
        default="",
        description="Empty string disables auth (dev only).",
    )
    database_url: str = "sqlite+aiosqlite:///./vmfleet.db"

    # -- Sub-configs ----------------------------------------------------------

    provider: ProviderConfig = Field(default_factory=ProviderConfig)
    aws: AWSConfig = Field(default_factory=AWSConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    catalog: dict[str, InstanceTypeSpec] = Field(
        default_factory=lambda: dict(DEFAULT_INSTANCE_TYPES),
    )
