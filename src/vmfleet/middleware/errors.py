"""Centralised error handling for the HTTP surface.

Provides:

* :class:`CatchAllErrorMiddleware` — a pure ASGI middleware that
  catches unhandled exceptions and returns a generic 500 JSON body.
* :func:`register_error_handlers` — FastAPI exception handlers for
  :class:`~vmfleet.exceptions.FleetError`, Starlette ``HTTPException``
  and request validation errors.
"""

from __future__ import annotations

import json
import logging
import re
from typing import TYPE_CHECKING, Any

from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException
from starlette.responses import JSONResponse

from vmfleet.exceptions import (
    FleetError,
    InvalidTransitionError,
    NotProvisionedError,
    ProviderError,
    ProviderThrottledError,
    ProviderUnavailableError,
    ServerNotFoundError,
    UnknownInstanceTypeError,
)
from vmfleet.middleware.correlation import get_request_id

if TYPE_CHECKING:
    from fastapi import FastAPI
    from starlette.requests import Request

logger = logging.getLogger(__name__)

_Scope = dict[str, Any]
_Receive = Any
_Send = Any

# Most specific class wins; anything else under FleetError is a 500.
# Provider credential failures surface as 502, not 401: the caller is not
# the one who is unauthorized.
_STATUS_MAP: dict[type[FleetError], int] = {
    ServerNotFoundError: 404,
    UnknownInstanceTypeError: 422,
    NotProvisionedError: 409,
    InvalidTransitionError: 409,
    ProviderThrottledError: 429,
    ProviderUnavailableError: 503,
    ProviderError: 502,
}

_CAMEL_RE = re.compile(r"(?<=[a-z0-9])(?=[A-Z])")


def error_code_from_class(cls: type[Exception]) -> str:
    """Convert e.g. ``ServerNotFoundError`` to ``SERVER_NOT_FOUND``."""
    name = cls.__name__
    if name.endswith("Error"):
        name = name[: -len("Error")]
    return _CAMEL_RE.sub("_", name).upper()


def status_for(exc: FleetError) -> int:
    for cls in type(exc).__mro__:
        if cls in _STATUS_MAP:
            return _STATUS_MAP[cls]
    return 500


def _error_body(
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(),
            "details": details or {},
        },
    }


class CatchAllErrorMiddleware:
    """Return a well-formed 500 JSON body for any exception that escapes the app."""

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: _Scope, receive: _Receive, send: _Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        try:
            await self.app(scope, receive, send)
        except Exception:
            logger.exception("Unhandled exception in ASGI application")
            body = json.dumps(
                _error_body("INTERNAL_SERVER_ERROR", "An unexpected error occurred."),
            ).encode()
            await send(
                {
                    "type": "http.response.start",
                    "status": 500,
                    "headers": [
                        (b"content-type", b"application/json"),
                        (b"content-length", str(len(body)).encode()),
                    ],
                },
            )
            await send({"type": "http.response.body", "body": body})


async def handle_fleet_error(request: Request, exc: Exception) -> JSONResponse:
    """Map any :class:`FleetError` subclass to a JSON response."""
    assert isinstance(exc, FleetError)
    status = status_for(exc)
    if status >= 500:
        logger.warning("%s on %s: %s", type(exc).__name__, request.url.path, exc)
    return JSONResponse(
        status_code=status,
        content=_error_body(error_code_from_class(type(exc)), str(exc), exc.details),
    )


async def handle_http_exception(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body("HTTP_ERROR", str(exc.detail)),
    )


async def handle_validation_error(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, RequestValidationError)
    return JSONResponse(
        status_code=422,
        content=_error_body(
            "VALIDATION_ERROR",
            "Request validation failed.",
            {"errors": exc.errors()},
        ),
    )


def register_error_handlers(app: FastAPI) -> None:
    """Register all exception handlers on the given FastAPI app."""
    app.add_exception_handler(FleetError, handle_fleet_error)
    app.add_exception_handler(HTTPException, handle_http_exception)
    app.add_exception_handler(RequestValidationError, handle_validation_error)
