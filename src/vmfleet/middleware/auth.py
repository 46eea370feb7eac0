"""API-key check and owner identity (pure ASGI).

When an API key is configured, ``Authorization: Bearer <key>`` is
compared in constant time.  The caller's owner id is read from the
``X-Owner-Id`` header and stored in ``scope["state"]["owner_id"]`` for
the routers; identity itself is established upstream of this service.
"""

from __future__ import annotations

import hmac
import json
from typing import Any

from starlette.datastructures import Headers

from vmfleet.middleware.correlation import OWNER_ID_HEADER, get_request_id

EXEMPT_PATHS: set[str] = {
    "/health",
    "/health/ready",
    "/docs",
    "/openapi.json",
}

_Scope = dict[str, Any]
_Receive = Any
_Send = Any


class AuthMiddleware:
    """Pure ASGI middleware for Bearer-token authentication.

    Parameters
    ----------
    app:
        The inner ASGI application.
    api_key:
        The expected API key.  When empty the key check is skipped
        (development / testing mode); the owner header is still read.
    """

    def __init__(self, app: Any, api_key: str) -> None:
        self.app = app
        self.api_key = api_key

    async def __call__(self, scope: _Scope, receive: _Receive, send: _Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = Headers(scope=scope)
        path: str = scope.get("path", "/")

        if self.api_key and path not in EXEMPT_PATHS:
            auth_header = headers.get("authorization")
            token = ""
            if auth_header and auth_header.lower().startswith("bearer "):
                token = auth_header[7:]
            if not hmac.compare_digest(token, self.api_key):
                await self._send_401(send)
                return

        owner_id = (headers.get(OWNER_ID_HEADER) or "").strip()
        scope.setdefault("state", {})["owner_id"] = owner_id or None
        await self.app(scope, receive, send)

    @staticmethod
    async def _send_401(send: _Send) -> None:
        body = json.dumps(
            {
                "error": {
                    "code": "AUTHENTICATION_FAILED",
                    "message": "Invalid or missing API key.",
                    "request_id": get_request_id(),
                    "details": {},
                },
            },
        ).encode()

        await send(
            {
                "type": "http.response.start",
                "status": 401,
                "headers": [
                    (b"content-type", b"application/json"),
                    (b"content-length", str(len(body)).encode()),
                ],
            },
        )
        await send({"type": "http.response.body", "body": body})
