from __future__ import annotations

import asyncio
import logging
from typing import Optional

from channel_hub.config import CHANNEL_OUTBOX_POLL_SECONDS, CHANNEL_RETRY_MAX_ATTEMPTS
from channel_hub.errors import ChannelAdapterError
from channel_hub.repositories.webhook_inbox_repository import STATUS_DISCARDED, WebhookInboxRepository
from channel_hub.runtime import get_orchestrator
from channel_hub.services.channels.orchestrator import ChannelOrchestrator

logger = logging.getLogger("channel_sync_worker")


async def dispatch_outbox(orch: ChannelOrchestrator, *, limit: int = 10) -> int:
    """Run due push retries and compensating cancellations.

    Items are claimed atomically (pending -> processing) so several workers
    can poll the same collection without running an item twice.
    """

    items = await orch.outbox.claim_due(limit=limit)
    for item in items:
        logger.info("Processing outbox item %s (%s) for connection %s", item["_id"], item["kind"], item["connection_id"])
        try:
            status = await orch.run_outbox_item(item)
        except Exception as e:
            logger.error("Outbox item %s failed: %s", item["_id"], e, exc_info=True)
            await orch.outbox.record_failure(item, str(e))
            continue
        logger.info("Outbox item %s -> %s", item["_id"], status)
    return len(items)


async def process_webhook_item(orch: ChannelOrchestrator, item_id: str) -> Optional[dict]:
    """Ingest one stored webhook delivery if nobody else has claimed it yet."""

    inbox = WebhookInboxRepository(orch.db)
    item = await inbox.claim(item_id)
    if item is None:
        return None
    return await _ingest_claimed(orch, inbox, item)


async def drain_webhook_inbox(orch: ChannelOrchestrator, *, limit: int = 50) -> int:
    inbox = WebhookInboxRepository(orch.db)
    processed = 0
    while processed < limit:
        item = await inbox.claim_next()
        if item is None:
            break
        await _ingest_claimed(orch, inbox, item)
        processed += 1
    return processed


async def _ingest_claimed(orch: ChannelOrchestrator, inbox: WebhookInboxRepository, item: dict) -> Optional[dict]:
    try:
        result = await orch.ingest_webhook(item["channel_type"], item["payload"])
    except ChannelAdapterError as e:
        # channel type no longer registered; nothing will ever accept it
        logger.error("Webhook %s dropped: %s", item["_id"], e.message)
        await inbox.mark_processed(item["_id"], {"status": STATUS_DISCARDED, "reason": e.code})
        return None
    except Exception as e:
        logger.error("Webhook %s ingestion failed: %s", item["_id"], e, exc_info=True)
        await inbox.mark_failed(item["_id"], str(e), max_attempts=CHANNEL_RETRY_MAX_ATTEMPTS)
        return None

    out = result.to_dict()
    await inbox.mark_processed(item["_id"], out)
    logger.info(
        "Webhook %s (%s) -> %s %s",
        item["_id"],
        item["channel_type"],
        result.status,
        result.outcome or result.reason,
    )
    return out


async def channel_sync_loop() -> None:
    orch = await get_orchestrator()
    while True:
        try:
            processed = await dispatch_outbox(orch, limit=10)
            if processed:
                logger.info("Channel sync worker processed %s outbox items", processed)
        except Exception as e:  # pragma: no cover
            logger.error("Channel sync worker loop error: %s", e, exc_info=True)

        await asyncio.sleep(CHANNEL_OUTBOX_POLL_SECONDS)


async def webhook_inbox_loop() -> None:
    orch = await get_orchestrator()
    while True:
        try:
            processed = await drain_webhook_inbox(orch)
            if processed:
                logger.info("Webhook inbox worker processed %s deliveries", processed)
        except Exception as e:  # pragma: no cover
            logger.error("Webhook inbox loop error: %s", e, exc_info=True)

        await asyncio.sleep(CHANNEL_OUTBOX_POLL_SECONDS)
