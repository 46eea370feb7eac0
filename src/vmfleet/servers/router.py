"""REST API for servers — /api/v1/servers/*, plus plans and on-demand sweeps."""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from vmfleet.catalog import Catalog
from vmfleet.deps import OwnerId, get_catalog, get_controller, get_sweeper
from vmfleet.servers.service import LifecycleController
from vmfleet.servers.status import ServerAction
from vmfleet.servers.sweeper import ReconciliationSweeper

router = APIRouter(prefix="/api/v1/servers", tags=["servers"])
plans_router = APIRouter(prefix="/api/v1/plans", tags=["plans"])
sweeps_router = APIRouter(prefix="/api/v1/sweeps", tags=["sweeps"])

Controller = Annotated[LifecycleController, Depends(get_controller)]


# ------------------------------------------------------------------
# Request / Response schemas
# ------------------------------------------------------------------


class CreateServerRequest(BaseModel):
    """Body for POST /api/v1/servers."""

    instance_type: str = Field(min_length=1)
    plan_type: str = "basic"


class ActionResponse(BaseModel):
    """Response from POST /api/v1/servers/{id}/{action}."""

    status: str


class SweepResponse(BaseModel):
    """Response from POST /api/v1/sweeps."""

    corrected: int


# ------------------------------------------------------------------
# Servers
# ------------------------------------------------------------------


@router.post("", status_code=201)
async def create_server(
    body: CreateServerRequest,
    owner_id: OwnerId,
    controller: Controller,
) -> dict[str, Any]:
    """Create a server; the record is returned while still provisioning."""
    record = await controller.create_server(owner_id, body.instance_type, body.plan_type)
    return record.to_dict()


@router.get("")
async def list_servers(owner_id: OwnerId, controller: Controller) -> list[dict[str, Any]]:
    """List the caller's servers with live provider status merged in."""
    return [r.to_dict() for r in await controller.list_servers(owner_id)]


@router.get("/stats")
async def server_stats(owner_id: OwnerId, controller: Controller) -> dict[str, int]:
    return await controller.get_stats(owner_id)


@router.get("/{server_id}")
async def get_server(server_id: str, owner_id: OwnerId, controller: Controller) -> dict[str, Any]:
    record = await controller.get_server(owner_id, server_id)
    return record.to_dict()


@router.post("/{server_id}/{action}")
async def apply_action(
    server_id: str,
    action: ServerAction,
    owner_id: OwnerId,
    controller: Controller,
) -> ActionResponse:
    """Start, stop or reboot a server."""
    status = await controller.apply_action(owner_id, server_id, action)
    return ActionResponse(status=status.value)


@router.delete("/{server_id}")
async def delete_server(
    server_id: str,
    owner_id: OwnerId,
    controller: Controller,
) -> dict[str, Any]:
    """Terminate the instance (best effort) and delete the record."""
    await controller.delete_server(owner_id, server_id)
    return {"id": server_id, "deleted": True}


# ------------------------------------------------------------------
# Plans
# ------------------------------------------------------------------


@plans_router.get("")
async def list_plans(catalog: Annotated[Catalog, Depends(get_catalog)]) -> list[dict[str, Any]]:
    return catalog.plans_payload()


# ------------------------------------------------------------------
# Sweeps
# ------------------------------------------------------------------


@sweeps_router.post("")
async def run_sweep(
    sweeper: Annotated[ReconciliationSweeper, Depends(get_sweeper)],
) -> SweepResponse:
    """Run one reconciliation pass now."""
    return SweepResponse(corrected=await sweeper.run_sweep())
