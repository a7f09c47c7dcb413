from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from channel_hub.services.channels.types import ConnectionStatus
from channel_hub.utils import now_utc

logger = logging.getLogger(__name__)


class ConnectionRepository:
    """channel_connections: one document per (hotel, channel type)."""

    def __init__(self, db):
        self.col = db.channel_connections

    async def get(self, connection_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one({"_id": connection_id})

    async def upsert(
        self,
        *,
        hotel_id: str,
        channel_type: str,
        credentials: Dict[str, Any],
        external_property_id: Optional[str],
        status: ConnectionStatus,
        last_error: Optional[str] = None,
    ) -> Dict[str, Any]:
        now = now_utc()
        flt = {"hotel_id": hotel_id, "channel_type": channel_type}
        update = {
            "$set": {
                "api_credentials": credentials,
                "external_property_id": external_property_id,
                "status": status.value,
                "last_error": last_error,
                "unlinked_at": None,
                "updated_at": now,
            },
            "$setOnInsert": {
                "_id": str(uuid4()),
                "last_sync_at": None,
                "last_pull_at": None,
                "created_at": now,
            },
        }
        try:
            doc = await self.col.find_one_and_update(
                flt, update, upsert=True, return_document=ReturnDocument.AFTER
            )
        except DuplicateKeyError:
            # race: another request linked the same channel first
            doc = await self.col.find_one_and_update(
                flt, {"$set": update["$set"]}, return_document=ReturnDocument.AFTER
            )
        return doc

    async def list_for_hotel(
        self,
        hotel_id: str,
        statuses: Optional[Iterable[ConnectionStatus]] = None,
    ) -> List[Dict[str, Any]]:
        flt: Dict[str, Any] = {"hotel_id": hotel_id}
        if statuses is not None:
            flt["status"] = {"$in": [s.value for s in statuses]}
        cursor = self.col.find(flt).sort("created_at", 1)
        return await cursor.to_list(length=None)

    async def list_by_status(self, statuses: Iterable[ConnectionStatus]) -> List[Dict[str, Any]]:
        cursor = self.col.find({"status": {"$in": [s.value for s in statuses]}}).sort("created_at", 1)
        return await cursor.to_list(length=None)

    async def find_by_property(self, channel_type: str, external_property_id: str) -> Optional[Dict[str, Any]]:
        """Resolve the connection a webhook delivery belongs to.

        Unlinked connections are only returned when nothing live matches, so
        the caller can still log the delivery against them.
        """

        cursor = self.col.find(
            {"channel_type": channel_type, "external_property_id": external_property_id}
        ).sort("updated_at", -1)
        docs = await cursor.to_list(length=None)
        for doc in docs:
            if doc.get("status") != ConnectionStatus.INACTIVE.value:
                return doc
        return docs[0] if docs else None

    async def transition(
        self,
        connection_id: str,
        to_status: ConnectionStatus,
        *,
        from_statuses: Optional[Iterable[ConnectionStatus]] = None,
        last_error: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a connection to `to_status`, optionally only from given states.

        Returns True when this call performed the transition.
        """

        flt: Dict[str, Any] = {"_id": connection_id}
        if from_statuses is not None:
            flt["status"] = {"$in": [s.value for s in from_statuses]}
        fields: Dict[str, Any] = {
            "status": to_status.value,
            "last_error": last_error,
            "updated_at": now_utc(),
        }
        if extra:
            fields.update(extra)
        res = await self.col.update_one(flt, {"$set": fields})
        if res.modified_count:
            logger.info("Connection %s -> %s", connection_id, to_status.value)
        return bool(res.modified_count)

    async def mark_synced(self, connection_id: str, at: datetime) -> None:
        await self.col.update_one({"_id": connection_id}, {"$set": {"last_sync_at": at, "updated_at": at}})

    async def mark_pulled(self, connection_id: str, at: datetime) -> None:
        await self.col.update_one(
            {"_id": connection_id},
            {"$set": {"last_pull_at": at, "last_sync_at": at, "updated_at": at}},
        )
