from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Request

from channel_hub.repositories.webhook_inbox_repository import (
    STATUS_DISCARDED,
    STATUS_PENDING,
    WebhookInboxRepository,
)
from channel_hub.runtime import get_orchestrator
from channel_hub.services.channels.orchestrator import ChannelOrchestrator
from channel_hub.sync_worker import process_webhook_item

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/channels/webhooks", tags=["channel_webhooks"])


@router.post("/{channel_type}")
async def receive_channel_webhook(
    channel_type: str,
    request: Request,
    background_tasks: BackgroundTasks,
    orch: ChannelOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Accept an OTA booking notification.

    Unknown channel types fail loudly (404). Anything else is acknowledged
    with 200 once stored, even when the payload cannot be parsed, so the OTA
    does not keep redelivering garbage. Ingestion runs after the response.
    """

    adapter = orch.registry.get(channel_type)

    try:
        payload: Any = await request.json()
    except ValueError:
        payload = None

    inbox = WebhookInboxRepository(orch.db)
    booking = adapter.parse_webhook(payload)
    if booking is None:
        logger.warning("Discarding malformed %s webhook", adapter.channel_type)
        item = await inbox.store(
            channel_type=adapter.channel_type,
            payload=payload if isinstance(payload, dict) else {"raw": repr(payload)[:2000]},
            status=STATUS_DISCARDED,
            reason="malformed_payload",
        )
        return {"ok": True, "status": STATUS_DISCARDED, "id": item["_id"]}

    item = await inbox.store(
        channel_type=adapter.channel_type,
        payload=payload,
        status=STATUS_PENDING,
        external_booking_id=booking.external_booking_id,
    )
    background_tasks.add_task(process_webhook_item, orch, item["_id"])
    return {"ok": True, "status": "accepted", "id": item["_id"]}
