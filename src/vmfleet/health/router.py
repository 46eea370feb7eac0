"""Health-check router consumed by container orchestrators."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

import vmfleet

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
async def liveness() -> dict[str, str]:
    """Liveness: healthy whenever the process is up."""
    return {"status": "healthy", "version": vmfleet.__version__}


@router.get("/health/ready")
async def readiness(request: Request) -> JSONResponse:
    """Readiness: database reachable and sweeper state."""
    sweeper = getattr(request.app.state, "sweeper", None)
    sweeper_state = "running" if sweeper is not None and sweeper.running else "stopped"
    try:
        async with request.app.state.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception:
        logger.warning("Readiness check failed: database unreachable", exc_info=True)
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "database": "disconnected", "sweeper": sweeper_state},
        )
    return JSONResponse(
        status_code=200,
        content={"status": "ready", "database": "connected", "sweeper": sweeper_state},
    )
