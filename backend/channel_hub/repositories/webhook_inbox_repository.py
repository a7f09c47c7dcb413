from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pymongo import ReturnDocument

from channel_hub.config import CHANNEL_WEBHOOK_LEASE_SECONDS
from channel_hub.utils import now_utc

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_PROCESSED = "processed"
STATUS_DISCARDED = "discarded"
STATUS_FAILED = "failed"


class WebhookInboxRepository:
    """channel_webhook_inbox: raw OTA deliveries accepted but not yet ingested.

    The HTTP handler only stores the delivery; ingestion happens after the
    response so the OTA never waits on reconciliation.
    """

    def __init__(self, db):
        self.col = db.channel_webhook_inbox

    async def store(
        self,
        *,
        channel_type: str,
        payload: Any,
        status: str = STATUS_PENDING,
        external_booking_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = now_utc()
        doc = {
            "_id": str(uuid4()),
            "channel_type": channel_type,
            "payload": payload,
            "status": status,
            "external_booking_id": external_booking_id,
            "reason": reason,
            "attempts": 0,
            "result": None,
            "created_at": now,
            "updated_at": now,
        }
        await self.col.insert_one(doc)
        return doc

    async def claim(self, item_id: str) -> Optional[Dict[str, Any]]:
        """Claim one specific pending item (background task path)."""

        now = now_utc()
        return await self.col.find_one_and_update(
            {"_id": item_id, "status": STATUS_PENDING},
            {"$set": {"status": STATUS_PROCESSING, "locked_at": now, "updated_at": now}, "$inc": {"attempts": 1}},
            return_document=ReturnDocument.AFTER,
        )

    async def claim_next(
        self,
        *,
        now: Optional[datetime] = None,
        lease_seconds: int = CHANNEL_WEBHOOK_LEASE_SECONDS,
    ) -> Optional[Dict[str, Any]]:
        """Claim the oldest pending item (worker loop path).

        A delivery stuck in processing longer than `lease_seconds` lost its
        worker and is claimed again.
        """

        now = now or now_utc()
        expired = now - timedelta(seconds=lease_seconds)
        return await self.col.find_one_and_update(
            {
                "$or": [
                    {"status": STATUS_PENDING},
                    {"status": STATUS_PROCESSING, "locked_at": {"$lt": expired}},
                ]
            },
            {"$set": {"status": STATUS_PROCESSING, "locked_at": now, "updated_at": now}, "$inc": {"attempts": 1}},
            sort=[("created_at", 1)],
            return_document=ReturnDocument.AFTER,
        )

    async def mark_processed(self, item_id: str, result: Dict[str, Any]) -> None:
        await self.col.update_one(
            {"_id": item_id},
            {"$set": {"status": STATUS_PROCESSED, "result": result, "updated_at": now_utc()}},
        )

    async def mark_failed(self, item_id: str, error: str, *, max_attempts: int) -> str:
        """Put the item back for another try unless it has used up its attempts."""

        item = await self.col.find_one({"_id": item_id})
        attempts = int((item or {}).get("attempts") or 0)
        status = STATUS_FAILED if attempts >= max_attempts else STATUS_PENDING
        await self.col.update_one(
            {"_id": item_id},
            {"$set": {"status": status, "reason": error, "updated_at": now_utc()}},
        )
        return status

    async def get(self, item_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"_id": item_id})

    async def list_by_status(self, status: str, *, limit: int = 100) -> List[Dict[str, Any]]:
        cursor = self.col.find({"status": status}).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)
