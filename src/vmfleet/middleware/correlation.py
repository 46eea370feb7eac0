"""Request id and per-operation log context.

Two context variables travel with every task:

* the request id, set per HTTP request by :class:`CorrelationIdMiddleware`
  and echoed on the response and in error bodies;
* the log context, a small mapping of server fields (``server_id``,
  ``owner_id``, ``provider_instance_id``, ``action``) bound with
  :func:`bind_log_context` around lifecycle operations and sweeps, and
  stamped on log records by :class:`~vmfleet.middleware.logging.FleetContextFilter`.
"""

from __future__ import annotations

import contextlib
import re
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING, Any

from starlette.datastructures import Headers, MutableHeaders

if TYPE_CHECKING:
    from collections.abc import Iterator, Mapping

REQUEST_ID_HEADER = "x-request-id"
OWNER_ID_HEADER = "x-owner-id"

# Inbound ids are reused only if they are short and log-safe.
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._:-]{1,128}$")

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
log_context_var: ContextVar[Mapping[str, str] | None] = ContextVar("log_context", default=None)

_Scope = dict[str, Any]
_Receive = Any
_Send = Any


def get_request_id() -> str:
    """Return the current request ID, or ``""`` outside a request."""
    return request_id_var.get()


def get_log_context() -> Mapping[str, str]:
    return log_context_var.get() or {}


@contextlib.contextmanager
def bind_log_context(**fields: str | None) -> Iterator[None]:
    """Add *fields* to the log context for the enclosed block.

    ``None`` values are skipped; inner bindings override outer ones.
    """
    merged = dict(get_log_context())
    merged.update({key: value for key, value in fields.items() if value is not None})
    token = log_context_var.set(merged)
    try:
        yield
    finally:
        log_context_var.reset(token)


def resolve_request_id(candidate: str | None) -> str:
    """Reuse *candidate* when it is a safe id, otherwise mint a new one."""
    if candidate and _VALID_REQUEST_ID.match(candidate):
        return candidate
    return uuid.uuid4().hex


class CorrelationIdMiddleware:
    """Pure ASGI middleware that scopes a request id and owner to each request.

    The request id goes into ``scope["state"]`` and the response's
    ``x-request-id`` header; the caller's ``X-Owner-Id`` is bound into the
    log context so every record logged while serving the request names it.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: _Scope, receive: _Receive, send: _Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        request_id = resolve_request_id(headers.get(REQUEST_ID_HEADER))
        scope.setdefault("state", {})["request_id"] = request_id
        owner_id = (headers.get(OWNER_ID_HEADER) or "").strip() or None

        async def _send_with_id(message: dict[str, Any]) -> None:
            if message["type"] == "http.response.start":
                MutableHeaders(scope=message)[REQUEST_ID_HEADER] = request_id
            await send(message)

        token = request_id_var.set(request_id)
        try:
            with bind_log_context(owner_id=owner_id):
                await self.app(scope, receive, _send_with_id)
        finally:
            request_id_var.reset(token)
