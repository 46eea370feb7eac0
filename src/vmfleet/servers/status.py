"""Server status enum and the transition table.

Two kinds of edges exist:

* **command edges** fire when a user issues ``start``/``stop``/``reboot``
  or deletes a server.  They are strict: an action with no edge from the
  current status raises :class:`InvalidTransitionError`.
* **observed edges** fire when the provider reports ground truth (create
  completion, sweeper drift correction, projected reads).  Any non-terminal
  status may move to any status the provider can report.

Terminal statuses (``terminated``, ``failed``) have no outgoing edges.
"""

from __future__ import annotations

from enum import StrEnum

from vmfleet.exceptions import InvalidTransitionError


class ServerStatus(StrEnum):
    """Lifecycle status of a server record."""

    PROVISIONING = "provisioning"
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    STARTING = "starting"
    REBOOTING = "rebooting"
    TERMINATING = "terminating"
    TERMINATED = "terminated"
    FAILED = "failed"


class ServerAction(StrEnum):
    """User-issued control action."""

    START = "start"
    STOP = "stop"
    REBOOT = "reboot"


TERMINAL_STATUSES = frozenset({ServerStatus.TERMINATED, ServerStatus.FAILED})

TRANSITIONAL_STATUSES = frozenset(
    {
        ServerStatus.PROVISIONING,
        ServerStatus.PENDING,
        ServerStatus.STARTING,
        ServerStatus.STOPPING,
        ServerStatus.REBOOTING,
        ServerStatus.TERMINATING,
    }
)

# Statuses a provider can report for a live instance.
OBSERVABLE_STATUSES = frozenset(
    {
        ServerStatus.PENDING,
        ServerStatus.RUNNING,
        ServerStatus.STOPPING,
        ServerStatus.STOPPED,
        ServerStatus.TERMINATING,
        ServerStatus.TERMINATED,
    }
)

_COMMAND_EDGES: dict[tuple[ServerStatus, ServerAction], ServerStatus] = {
    (ServerStatus.RUNNING, ServerAction.STOP): ServerStatus.STOPPING,
    (ServerStatus.RUNNING, ServerAction.REBOOT): ServerStatus.REBOOTING,
    (ServerStatus.STOPPED, ServerAction.START): ServerStatus.STARTING,
}

# Repeating an action whose effect is already in progress (or done) is a no-op.
_IDEMPOTENT: dict[ServerAction, frozenset[ServerStatus]] = {
    ServerAction.STOP: frozenset({ServerStatus.STOPPING, ServerStatus.STOPPED}),
    ServerAction.START: frozenset({ServerStatus.STARTING}),
    ServerAction.REBOOT: frozenset({ServerStatus.REBOOTING}),
}

# Every status must be classified exactly once.
assert TERMINAL_STATUSES | TRANSITIONAL_STATUSES | {
    ServerStatus.RUNNING,
    ServerStatus.STOPPED,
} == set(ServerStatus)
assert {action for _, action in _COMMAND_EDGES} == set(ServerAction)


def is_terminal(status: ServerStatus) -> bool:
    return status in TERMINAL_STATUSES


def is_noop_action(current: ServerStatus, action: ServerAction) -> bool:
    """Return True if *action* is already in effect for *current*."""
    return current in _IDEMPOTENT[action]


def next_status_for_action(current: ServerStatus, action: ServerAction) -> ServerStatus:
    """Return the transitional status *action* moves *current* into.

    Raises :class:`InvalidTransitionError` when no command edge exists.
    """
    target = _COMMAND_EDGES.get((current, action))
    if target is None:
        msg = f"Cannot {action.value} a server in '{current.value}' state"
        raise InvalidTransitionError(msg, current=current.value, action=action.value)
    return target


def check_delete(current: ServerStatus) -> ServerStatus:
    """Validate the delete edge (any non-terminal status -> terminating)."""
    if is_terminal(current):
        msg = f"Cannot terminate a server in '{current.value}' state"
        raise InvalidTransitionError(msg, current=current.value, action="delete")
    return ServerStatus.TERMINATING


def can_observe(current: ServerStatus, observed: ServerStatus) -> bool:
    """Return True if provider truth *observed* may replace *current*."""
    if is_terminal(current):
        return False
    return observed in OBSERVABLE_STATUSES


def can_complete_create(current: ServerStatus, result: ServerStatus) -> bool:
    """Create completion edge: provisioning -> any observable status or failed."""
    if current != ServerStatus.PROVISIONING:
        return False
    return result in OBSERVABLE_STATUSES or result == ServerStatus.FAILED
