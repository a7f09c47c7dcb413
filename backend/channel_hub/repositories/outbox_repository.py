from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple
from uuid import uuid4

from pymongo import ReturnDocument

from channel_hub.config import (
    CHANNEL_OUTBOX_LEASE_SECONDS,
    CHANNEL_RETRY_BASE_DELAY_SECONDS,
    CHANNEL_RETRY_MAX_ATTEMPTS,
    CHANNEL_RETRY_MAX_DELAY_SECONDS,
)
from channel_hub.utils import now_utc

logger = logging.getLogger(__name__)

KIND_PUSH_INVENTORY = "push_inventory"
KIND_PUSH_RATES = "push_rates"
KIND_CANCEL_BOOKING = "cancel_booking"


def compute_backoff(attempts: int) -> timedelta:
    """Exponential backoff for the next try after `attempts` failed tries."""

    delay = CHANNEL_RETRY_BASE_DELAY_SECONDS * (2 ** max(attempts - 1, 0))
    return timedelta(seconds=min(delay, CHANNEL_RETRY_MAX_DELAY_SECONDS))


class OutboxRepository:
    """channel_sync_outbox: persisted retry state for channel calls.

    Each row carries its own attempt counter so a restart never loses retry
    progress. Status flow: pending -> processing -> done | pending (retry) |
    failed (attempts exhausted) | suspended (connection not active) |
    superseded (newer push already delivered the same room-dates).
    """

    def __init__(self, db):
        self.col = db.channel_sync_outbox

    async def enqueue(
        self,
        *,
        kind: str,
        connection_id: str,
        payload: Dict[str, Any],
        attempts: int = 0,
        max_attempts: int = CHANNEL_RETRY_MAX_ATTEMPTS,
        last_error: Optional[str] = None,
        delay: Optional[timedelta] = None,
    ) -> Dict[str, Any]:
        now = now_utc()
        doc = {
            "_id": str(uuid4()),
            "kind": kind,
            "connection_id": connection_id,
            "payload": payload,
            "status": "pending",
            "attempts": attempts,
            "max_attempts": max_attempts,
            "next_retry_at": now + (delay if delay is not None else compute_backoff(attempts)),
            "last_error": last_error,
            "created_at": now,
            "updated_at": now,
        }
        await self.col.insert_one(doc)
        logger.info("Queued %s for connection %s (attempts=%s)", kind, connection_id, attempts)
        return doc

    async def claim_due(
        self,
        *,
        now: Optional[datetime] = None,
        limit: int = 10,
        lease_seconds: int = CHANNEL_OUTBOX_LEASE_SECONDS,
    ) -> List[Dict[str, Any]]:
        """Claim up to `limit` due items; safe across concurrent workers.

        Items left in processing past `lease_seconds` belonged to a worker
        that died mid-call and are claimed again.
        """

        now = now or now_utc()
        expired = now - timedelta(seconds=lease_seconds)
        claimed: List[Dict[str, Any]] = []
        for _ in range(limit):
            doc = await self.col.find_one_and_update(
                {
                    "$or": [
                        {"status": "pending", "next_retry_at": {"$lte": now}},
                        {"status": "processing", "locked_at": {"$lt": expired}},
                    ]
                },
                {"$set": {"status": "processing", "locked_at": now, "started_at": now, "updated_at": now}},
                sort=[("created_at", 1)],
                return_document=ReturnDocument.AFTER,
            )
            if doc is None:
                break
            claimed.append(doc)
        return claimed

    async def mark_done(self, item_id: str) -> None:
        now = now_utc()
        await self.col.update_one(
            {"_id": item_id},
            {"$set": {"status": "done", "finished_at": now, "updated_at": now, "last_error": None}},
        )

    async def record_failure(self, item: Dict[str, Any], error: str) -> str:
        """Bump the attempt counter; reschedule or give up. Returns new status."""

        attempts = int(item.get("attempts") or 0) + 1
        now = now_utc()
        if attempts >= int(item.get("max_attempts") or CHANNEL_RETRY_MAX_ATTEMPTS):
            status = "failed"
            fields: Dict[str, Any] = {"finished_at": now}
        else:
            status = "pending"
            fields = {"next_retry_at": now + compute_backoff(attempts)}
        fields.update({"status": status, "attempts": attempts, "last_error": error, "updated_at": now})
        await self.col.update_one({"_id": item["_id"]}, {"$set": fields})
        return status

    async def mark_failed(self, item_id: str, error: str) -> None:
        """Terminal failure without further retries (non-retryable result)."""

        now = now_utc()
        await self.col.update_one(
            {"_id": item_id},
            {"$set": {"status": "failed", "finished_at": now, "updated_at": now, "last_error": error}},
        )

    async def suspend(self, item_id: str, reason: str) -> None:
        await self.col.update_one(
            {"_id": item_id},
            {"$set": {"status": "suspended", "last_error": reason, "updated_at": now_utc()}},
        )

    async def requeue_suspended(self, connection_id: str) -> int:
        now = now_utc()
        res = await self.col.update_many(
            {"connection_id": connection_id, "status": "suspended"},
            {"$set": {"status": "pending", "next_retry_at": now, "updated_at": now}},
        )
        return res.modified_count

    async def supersede(self, connection_id: str, kind: str, keys: Iterable[Tuple[str, str]]) -> int:
        """Drop (room_id, date) pairs from older queued pushes of this kind.

        A queued retry carrying an older value must never overwrite what a
        later push already delivered for the same room and night.
        """

        delivered = set(keys)
        if not delivered:
            return 0
        touched = 0
        cursor = self.col.find(
            {"connection_id": connection_id, "kind": kind, "status": {"$in": ["pending", "suspended"]}}
        )
        for item in await cursor.to_list(length=None):
            updates = (item.get("payload") or {}).get("updates") or []
            remaining = [u for u in updates if (u["room_id"], u["date"]) not in delivered]
            if len(remaining) == len(updates):
                continue
            touched += 1
            if remaining:
                await self.col.update_one(
                    {"_id": item["_id"], "status": item["status"]},
                    {"$set": {"payload.updates": remaining, "updated_at": now_utc()}},
                )
            else:
                await self.col.update_one(
                    {"_id": item["_id"], "status": item["status"]},
                    {"$set": {"status": "superseded", "updated_at": now_utc()}},
                )
        return touched

    async def list_for_connection(self, connection_id: str, *, status: Optional[str] = None) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {"connection_id": connection_id}
        if status is not None:
            flt["status"] = status
        cursor = self.col.find(flt).sort("created_at", 1)
        return await cursor.to_list(length=None)
