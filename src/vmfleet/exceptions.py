"""Exception hierarchy for vmfleet.

All exceptions inherit from FleetError so callers can catch
controller-level errors with a single except clause.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from collections.abc import Generator


class FleetError(Exception):
    """Base exception for all vmfleet errors."""

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


# =============================================================================
# Caller-input Errors
# =============================================================================


class ServerNotFoundError(FleetError):
    """Raised when no server record matches ``(owner_id, server_id)``."""


class UnknownInstanceTypeError(FleetError):
    """Raised when an instance type is not in the configured catalog."""


class NotProvisionedError(FleetError):
    """Raised when an action needs a provider instance that does not exist yet."""


class InvalidTransitionError(FleetError):
    """Raised when the current status has no edge for the requested action."""

    def __init__(
        self,
        message: str = "",
        *,
        current: str = "",
        action: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        self.current = current
        self.action = action
        super().__init__(message, details=details)


# =============================================================================
# Provider Errors
# =============================================================================


class ProviderError(FleetError):
    """Base for compute-provider errors."""

    retryable = False


class InstanceNotFoundError(ProviderError):
    """Raised when the provider has no record of an instance."""


class ProviderThrottledError(ProviderError):
    """Raised when the provider rejects a call because of rate limiting."""

    retryable = True


class ProviderAuthError(ProviderError):
    """Raised when provider credentials are missing or rejected."""


class ProviderUnavailableError(ProviderError):
    """Raised when the provider cannot be reached or a call timed out."""

    retryable = True


class ProviderUnknownError(ProviderError):
    """Raised for unexpected provider responses."""


# =============================================================================
# Error Context Manager
# =============================================================================


@contextmanager
def error_context(**context: Any) -> Generator[None, None, None]:
    """Enrich FleetError exceptions with contextual metadata.

    Any FleetError raised inside the block will have its ``details``
    dict updated with the provided key-value pairs. Other exceptions
    pass through unchanged.

    Example::

        with error_context(server_id="r1", action="stop"):
            raise InvalidTransitionError("cannot stop")
        # error.details == {"server_id": "r1", "action": "stop"}
    """
    try:
        yield
    except FleetError as exc:
        exc.details.update(context)
        raise
