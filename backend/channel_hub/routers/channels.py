from __future__ import annotations

from typing import Any, List

from fastapi import APIRouter, Depends, Query

from channel_hub.runtime import get_orchestrator
from channel_hub.schemas_channels import (
    ConnectionCreateRequest,
    ConnectionSyncRequest,
    InventoryPushRequest,
    RatePushRequest,
    RoomMappingsReplaceRequest,
)
from channel_hub.services.channels import connections as lifecycle
from channel_hub.services.channels.connections import public_connection
from channel_hub.services.channels.orchestrator import ChannelOrchestrator
from channel_hub.utils import serialize_doc

router = APIRouter(prefix="/api/channels", tags=["channels"])


@router.get("/types")
async def list_channel_types(orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    return {"items": orch.registry.channel_types()}


# ---- Connections ----


@router.post("/connections", status_code=201)
async def create_connection(
    payload: ConnectionCreateRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Link a hotel to a channel; credentials are validated with the OTA first."""
    doc, check = await lifecycle.connect_channel(orch, payload.hotel_id, payload.channel_type, payload.api_credentials)
    return {
        "connection": public_connection(doc),
        "validation": {"valid": check.valid, "code": check.code, "error_message": check.error_message},
    }


@router.get("/connections")
async def list_connections(
    hotel_id: str = Query(..., min_length=1),
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    items = await lifecycle.list_connections(orch, hotel_id)
    return {"items": [public_connection(doc) for doc in items]}


@router.get("/connections/{connection_id}")
async def get_connection(connection_id: str, orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    doc = await lifecycle.get_connection(orch, connection_id)
    return public_connection(doc)


@router.post("/connections/{connection_id}/validate")
async def validate_connection(connection_id: str, orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    doc, check = await lifecycle.revalidate_connection(orch, connection_id)
    return {
        "connection": public_connection(doc),
        "validation": {"valid": check.valid, "code": check.code, "error_message": check.error_message},
    }


@router.delete("/connections/{connection_id}")
async def delete_connection(connection_id: str, orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    doc = await lifecycle.disconnect_channel(orch, connection_id)
    return public_connection(doc)


# ---- Mappings ----


@router.get("/connections/{connection_id}/mappings")
async def get_mappings(connection_id: str, orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    items = await lifecycle.get_room_mappings(orch, connection_id)
    return {"items": serialize_doc(items)}


@router.put("/connections/{connection_id}/mappings")
async def put_mappings(
    connection_id: str,
    payload: RoomMappingsReplaceRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    items = await lifecycle.replace_room_mappings(
        orch, connection_id, [m.model_dump() for m in payload.mappings]
    )
    return {"items": serialize_doc(items)}


# ---- Sync status ----


@router.get("/connections/{connection_id}/sync-logs")
async def get_sync_logs(
    connection_id: str,
    limit: int = Query(50, ge=1, le=500),
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    items: List[dict[str, Any]] = await lifecycle.recent_sync_logs(orch, connection_id, limit=limit)
    return {"items": serialize_doc(items)}


@router.post("/connections/{connection_id}/pull")
async def pull_connection(connection_id: str, orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    summary = await orch.pull_connection(connection_id)
    return summary.to_dict()


@router.post("/connections/{connection_id}/sync")
async def sync_connection(
    connection_id: str,
    payload: ConnectionSyncRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Push current availability of every mapped room for the given nights."""
    outcome = await orch.sync_connection(connection_id, payload.start, payload.end)
    return outcome.to_dict()


# ---- Inventory / pricing entry points ----


@router.post("/hotels/{hotel_id}/inventory")
async def push_inventory(
    hotel_id: str,
    payload: InventoryPushRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    outcomes = await orch.push_inventory(hotel_id, [u.to_update() for u in payload.updates])
    return {"results": [o.to_dict() for o in outcomes]}


@router.post("/hotels/{hotel_id}/rates")
async def push_rates(
    hotel_id: str,
    payload: RatePushRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    outcomes = await orch.push_rates(hotel_id, [u.to_update() for u in payload.updates])
    return {"results": [o.to_dict() for o in outcomes]}
