"""Dependency injection for FastAPI route handlers.

Components are built once in the application lifespan and stored on
``app.state``; these helpers hand them to route handlers.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from vmfleet.catalog import Catalog
from vmfleet.servers.service import LifecycleController
from vmfleet.servers.sweeper import ReconciliationSweeper


def get_owner_id(request: Request) -> str:
    """Owner id placed in the request state by :class:`AuthMiddleware`."""
    owner_id = getattr(request.state, "owner_id", None)
    if not owner_id:
        raise HTTPException(status_code=401, detail="Missing X-Owner-Id header")
    return str(owner_id)


def get_controller(request: Request) -> LifecycleController:
    return request.app.state.controller


def get_sweeper(request: Request) -> ReconciliationSweeper:
    return request.app.state.sweeper


def get_catalog(request: Request) -> Catalog:
    return request.app.state.catalog


OwnerId = Annotated[str, Depends(get_owner_id)]
