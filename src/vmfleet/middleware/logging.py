"""Single-line JSON logging carrying the request id and server fields."""

from __future__ import annotations

import datetime
import json
import logging
import sys
import traceback
from typing import Any

from vmfleet.middleware.correlation import get_log_context, get_request_id

# Structured fields lifted from ``extra=`` or the bound log context.
SERVER_FIELDS: tuple[str, ...] = ("server_id", "owner_id", "provider_instance_id", "action")

# SDK loggers that are chatty at INFO.
_QUIET_LOGGERS: tuple[str, ...] = ("botocore", "boto3", "urllib3", "aiosqlite")


class FleetContextFilter(logging.Filter):
    """Stamp the request id and the bound server fields on every record.

    Values passed explicitly through ``extra=`` take precedence over the
    bound context.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()
        for key, value in get_log_context().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


class FleetJsonFormatter(logging.Formatter):
    """Format log records as JSON objects.

    Empty fields are left out::

        {
            "timestamp": "2026-03-01T09:15:02.117034+00:00",
            "level": "INFO",
            "logger": "vmfleet.servers.service",
            "message": "Server 7f3c...: running → stopping",
            "request_id": "9b1d...",
            "server_id": "7f3c...",
            "owner_id": "u1",
            "action": "stop"
        }
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": datetime.datetime.fromtimestamp(
                record.created,
                tz=datetime.UTC,
            ).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        request_id = getattr(record, "request_id", "")
        if request_id:
            payload["request_id"] = request_id
        for key in SERVER_FIELDS:
            value = getattr(record, key, None)
            if value is not None:
                payload[key] = str(value)
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = "".join(traceback.format_exception(*record.exc_info))
        return json.dumps(payload, ensure_ascii=False, default=str)


def setup_logging(level: int | str = logging.INFO) -> None:
    """Send all records through one JSON stdout handler."""
    root = logging.getLogger()
    root.setLevel(level)

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(FleetJsonFormatter())
    handler.addFilter(FleetContextFilter())
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
