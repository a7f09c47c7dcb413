from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from channel_hub.utils import now_utc

SCOPE_CONNECTION = "connection"
SCOPE_BOOKING = "booking"


class SyncLogRepository:
    """Append-only audit of every push/pull/webhook attempt.

    Rows are never updated. `scope` separates adapter calls ("connection")
    from reconciliation decisions ("booking"); only connection-scope rows
    count towards connection health.
    """

    def __init__(self, db):
        self.col = db.channel_sync_logs

    async def append(
        self,
        *,
        connection_id: str,
        operation: str,
        success: bool,
        scope: str = SCOPE_CONNECTION,
        code: Optional[str] = None,
        affected_rooms: Optional[List[str]] = None,
        error_message: Optional[str] = None,
        raw_response: Optional[Dict[str, Any]] = None,
        outcome: Optional[str] = None,
        external_booking_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        attempt: int = 1,
        duration_ms: Optional[int] = None,
    ) -> Dict[str, Any]:
        doc = {
            "id": "slog_" + uuid4().hex[:16],
            "connection_id": connection_id,
            "operation": operation,
            "scope": scope,
            "success": bool(success),
            "code": code,
            "affected_rooms": list(affected_rooms or []),
            "error_message": error_message,
            "raw_response": raw_response,
            "outcome": outcome,
            "external_booking_id": external_booking_id,
            "booking_id": booking_id,
            "attempt": attempt,
            "duration_ms": duration_ms,
            "created_at": now_utc(),
        }
        await self.col.insert_one(doc)
        doc.pop("_id", None)
        return doc

    async def recent(
        self,
        connection_id: str,
        *,
        limit: int = 50,
        operations: Optional[Iterable[str]] = None,
        scope: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {"connection_id": connection_id}
        if operations is not None:
            flt["operation"] = {"$in": list(operations)}
        if scope is not None:
            flt["scope"] = scope
        # _id breaks ties between rows written within the same millisecond
        cursor = self.col.find(flt).sort([("created_at", -1), ("_id", -1)]).limit(limit)
        return [_strip_id(doc) for doc in await cursor.to_list(length=limit)]

    async def health_window(
        self,
        connection_id: str,
        *,
        operations: Iterable[str],
        reset_operation: str,
        reset_outcome: str,
        limit: int,
    ) -> List[Dict[str, Any]]:
        """Newest connection-scope rows of `operations`, plus the
        `reset_operation` rows tagged `reset_outcome` that end a failure streak."""

        flt: Dict[str, Any] = {
            "connection_id": connection_id,
            "scope": SCOPE_CONNECTION,
            "$or": [
                {"operation": {"$in": list(operations)}},
                {"operation": reset_operation, "outcome": reset_outcome},
            ],
        }
        cursor = self.col.find(flt).sort([("created_at", -1), ("_id", -1)]).limit(limit)
        return [_strip_id(doc) for doc in await cursor.to_list(length=limit)]

    async def for_booking(self, connection_id: str, external_booking_id: str) -> List[Dict[str, Any]]:
        cursor = self.col.find(
            {"connection_id": connection_id, "external_booking_id": external_booking_id}
        ).sort([("created_at", 1), ("_id", 1)])
        return [_strip_id(doc) for doc in await cursor.to_list(length=None)]


def _strip_id(doc: Dict[str, Any]) -> Dict[str, Any]:
    doc.pop("_id", None)
    return doc
