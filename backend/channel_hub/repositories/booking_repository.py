from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from channel_hub.utils import now_utc

logger = logging.getLogger(__name__)

# Ledger statuses
PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
REJECTED = "REJECTED"


@dataclass
class ClaimResult:
    ok: bool
    claimed: List[str] = field(default_factory=list)
    conflict_date: Optional[str] = None
    conflicting_booking_id: Optional[str] = None


def _lock_id(room_id: str, night: str) -> str:
    return f"{room_id}|{night}"


class BookingRepository:
    """Local booking ledger plus the room-night lock table.

    `room_night_locks` holds one document per (room, night) keyed by a natural
    `_id`, so inserting a lock is an atomic compare-and-set in the store: two
    workers racing for the same night cannot both succeed, whichever process
    they run in.
    """

    def __init__(self, db):
        self.col = db.bookings
        self.locks = db.room_night_locks

    async def get(self, booking_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"_id": booking_id})

    async def get_by_key(self, idempotency_key: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"idempotency_key": idempotency_key})

    async def insert(self, doc: Dict[str, Any]) -> None:
        """Insert a ledger row; DuplicateKeyError propagates to the caller."""

        now = now_utc()
        doc.setdefault("created_at", now)
        doc.setdefault("updated_at", now)
        await self.col.insert_one(doc)

    async def update_fields(
        self,
        booking_id: str,
        fields: Dict[str, Any],
        *,
        expect_status: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """Patch a row; with `expect_status` the write only lands on that status."""

        flt: Dict[str, Any] = {"_id": booking_id}
        if expect_status is not None:
            flt["status"] = expect_status
        return await self.col.find_one_and_update(
            flt,
            {"$set": {**fields, "updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )

    async def set_status(
        self,
        booking_id: str,
        to_status: str,
        *,
        from_statuses: Iterable[str],
        extra: Optional[Dict[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Atomic status flip; returns the updated row or None if it lost."""

        fields = {"status": to_status, "updated_at": now_utc()}
        if extra:
            fields.update(extra)
        return await self.col.find_one_and_update(
            {"_id": booking_id, "status": {"$in": list(from_statuses)}},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    async def take_over_pending(self, booking_id: str, seen_updated_at: Any) -> Optional[Dict[str, Any]]:
        """Claim a stale PENDING row; only one caller observing `seen_updated_at` wins."""

        doc = await self.col.find_one_and_update(
            {"_id": booking_id, "status": PENDING, "updated_at": seen_updated_at},
            {"$set": {"updated_at": now_utc()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is not None:
            logger.info("Took over stale pending booking %s", booking_id)
        return doc

    async def count_confirmed_for_room(self, connection_id: str, room_id: str) -> int:
        return await self.col.count_documents(
            {"connection_id": connection_id, "room_id": room_id, "status": CONFIRMED}
        )

    async def claim_nights(self, booking_id: str, room_id: str, nights: Iterable[str]) -> ClaimResult:
        """Claim every night for `booking_id`, or none of the new ones.

        Nights are claimed in ascending date order so that two contending
        claims always meet on the same first contested night. Nights already
        held by the same booking count as claimed but are not reported in
        `claimed` (they must survive a rollback).
        """

        claimed: List[str] = []
        for night in sorted(set(nights)):
            holder = await self._claim_one(booking_id, room_id, night)
            if holder is None:
                claimed.append(night)
                continue
            if holder == booking_id:
                continue
            await self.release_nights(booking_id, room_id, claimed)
            return ClaimResult(ok=False, conflict_date=night, conflicting_booking_id=holder)
        return ClaimResult(ok=True, claimed=claimed)

    async def _claim_one(self, booking_id: str, room_id: str, night: str) -> Optional[str]:
        """Insert the lock; None when claimed now, otherwise the holder id."""

        for _ in range(3):
            try:
                await self.locks.insert_one(
                    {
                        "_id": _lock_id(room_id, night),
                        "room_id": room_id,
                        "date": night,
                        "booking_id": booking_id,
                        "created_at": now_utc(),
                    }
                )
                return None
            except DuplicateKeyError:
                existing = await self.locks.find_one({"_id": _lock_id(room_id, night)})
                if existing is not None:
                    return existing["booking_id"]
                # holder released between insert and read; try again
        raise RuntimeError(f"room-night lock for {room_id} {night} kept changing hands")

    async def release_nights(
        self,
        booking_id: str,
        room_id: Optional[str] = None,
        nights: Optional[Iterable[str]] = None,
    ) -> int:
        """Drop locks held by `booking_id`; every room when `room_id` is None."""

        flt: Dict[str, Any] = {"booking_id": booking_id}
        if room_id is not None:
            flt["room_id"] = room_id
        if nights is not None:
            nights = list(nights)
            if not nights:
                return 0
            flt["date"] = {"$in": nights}
        res = await self.locks.delete_many(flt)
        return res.deleted_count

    async def holders(self, room_id: str, nights: Iterable[str]) -> Dict[str, str]:
        """Map night -> holding booking id for the given nights."""

        cursor = self.locks.find({"_id": {"$in": [_lock_id(room_id, n) for n in nights]}})
        docs = await cursor.to_list(length=None)
        return {doc["date"]: doc["booking_id"] for doc in docs}
