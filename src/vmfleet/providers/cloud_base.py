"""Abstract base for real compute providers.

Concrete providers override the ``_*`` hooks; the public methods add
the shared behaviour every provider call needs:

CONNECT → BOUNDED TIMEOUT → RETRY TRANSIENT ERRORS → NORMALISE ERRORS
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

from vmfleet.decorators import retry_transient, timeout
from vmfleet.exceptions import ProviderError, ProviderUnknownError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from vmfleet.providers.base import (
        ActionResult,
        InstanceDetails,
        InstanceHealth,
        LaunchResult,
        LaunchSpec,
    )

logger = logging.getLogger(__name__)


class CloudProvider(ABC):
    """Base class for real compute providers.

    Parameters
    ----------
    timeout_seconds:
        Upper bound on every single provider call.
    retry_attempts:
        Attempts for calls failing with a retryable error.
    retry_backoff_seconds:
        Base delay between attempts (doubles each retry).
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 30.0,
        retry_attempts: int = 3,
        retry_backoff_seconds: float = 1.0,
    ) -> None:
        self._connected = False
        self._timeout = timeout_seconds
        self._retry_attempts = retry_attempts
        self._retry_backoff = retry_backoff_seconds

    # ------------------------------------------------------------------
    # Abstract hooks, implemented per provider
    # ------------------------------------------------------------------

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Unique identifier, e.g. 'aws'."""

    @abstractmethod
    async def _connect(self) -> None:
        """Authenticate and initialise the provider SDK client."""

    @abstractmethod
    async def _disconnect(self) -> None:
        """Tear down SDK connections."""

    @abstractmethod
    async def _create(self, spec: LaunchSpec) -> LaunchResult:
        """Launch one instance."""

    @abstractmethod
    async def _describe(self, provider_instance_id: str) -> InstanceDetails:
        """Describe one instance."""

    @abstractmethod
    async def _describe_health(self, provider_instance_id: str) -> InstanceHealth:
        """Fetch health checks for one instance."""

    @abstractmethod
    async def _start(self, provider_instance_id: str) -> ActionResult: ...

    @abstractmethod
    async def _stop(self, provider_instance_id: str) -> ActionResult: ...

    @abstractmethod
    async def _reboot(self, provider_instance_id: str) -> ActionResult: ...

    @abstractmethod
    async def _terminate(self, provider_instance_id: str) -> ActionResult: ...

    # ------------------------------------------------------------------
    # Public contract
    # ------------------------------------------------------------------

    async def ensure_connected(self) -> None:
        """Connect if not already connected."""
        if not self._connected:
            await self._connect()
            self._connected = True

    async def create(self, spec: LaunchSpec) -> LaunchResult:
        logger.info(
            "[%s] Creating %s instance for server %s",
            self.provider_name,
            spec.instance_type,
            spec.server_id,
        )
        result: LaunchResult = await self._call("create", self._create, spec)
        logger.info(
            "[%s] Instance %s accepted for server %s",
            self.provider_name,
            result.provider_instance_id,
            spec.server_id,
        )
        return result

    async def describe(self, provider_instance_id: str) -> InstanceDetails:
        result: InstanceDetails = await self._call(
            "describe", self._describe, provider_instance_id
        )
        return result

    async def describe_health(self, provider_instance_id: str) -> InstanceHealth:
        result: InstanceHealth = await self._call(
            "describe_health", self._describe_health, provider_instance_id
        )
        return result

    async def start(self, provider_instance_id: str) -> ActionResult:
        return await self._command("start", self._start, provider_instance_id)

    async def stop(self, provider_instance_id: str) -> ActionResult:
        return await self._command("stop", self._stop, provider_instance_id)

    async def reboot(self, provider_instance_id: str) -> ActionResult:
        return await self._command("reboot", self._reboot, provider_instance_id)

    async def terminate(self, provider_instance_id: str) -> ActionResult:
        return await self._command("terminate", self._terminate, provider_instance_id)

    async def disconnect(self) -> None:
        """Gracefully disconnect from the provider."""
        if self._connected:
            await self._disconnect()
            self._connected = False

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _command(
        self,
        operation: str,
        hook: Callable[[str], Awaitable[ActionResult]],
        provider_instance_id: str,
    ) -> ActionResult:
        logger.info("[%s] %s instance %s", self.provider_name, operation, provider_instance_id)
        result: ActionResult = await self._call(operation, hook, provider_instance_id)
        return result

    async def _call(
        self,
        operation: str,
        hook: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> Any:
        """Run *hook* with connect, timeout, retry and error normalisation."""

        @retry_transient(max_attempts=self._retry_attempts, backoff_base=self._retry_backoff)
        @timeout(seconds=self._timeout)
        async def _attempt() -> Any:
            await self.ensure_connected()
            return await hook(*args)

        try:
            return await _attempt()
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("[%s] Unexpected error during %s", self.provider_name, operation)
            raise ProviderUnknownError(
                f"{operation} failed: {exc}",
                details={"provider": self.provider_name, "operation": operation},
            ) from exc
