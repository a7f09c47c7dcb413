from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends

from channel_hub.runtime import get_orchestrator
from channel_hub.schemas_channels import AvailabilityRequest, DirectBookingRequest
from channel_hub.services.channels.orchestrator import ChannelOrchestrator
from channel_hub.utils import serialize_doc

router = APIRouter(prefix="/api/channels/direct-bookings", tags=["direct_bookings"])


@router.post("/availability")
async def check_availability(
    payload: AvailabilityRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orch.reconciler.check_availability(payload.room_id, payload.check_in, payload.check_out)


@router.post("", status_code=201)
async def create_direct_booking(
    payload: DirectBookingRequest,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Sell a room directly; 409 room_night_conflict when any night is taken."""
    result = await orch.reserve_direct(
        payload.hotel_id,
        payload.room_id,
        payload.check_in,
        payload.check_out,
        guest_name=payload.guest_name,
        guest_email=payload.guest_email,
        guest_phone=payload.guest_phone,
        guest_count=payload.guest_count,
        total_amount=payload.total_amount,
        currency=payload.currency,
    )
    return {"outcome": result.outcome.value, "booking": serialize_doc(result.booking)}


@router.delete("/{booking_id}")
async def cancel_direct_booking(booking_id: str, orch: ChannelOrchestrator = Depends(get_orchestrator)) -> dict[str, Any]:
    result = await orch.cancel_direct(booking_id)
    return {"outcome": result.outcome.value, "booking": serialize_doc(result.booking)}
