from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

from channel_hub.utils import now_utc


class MappingRepository:
    """channel_room_mappings: local room <-> external room type / rate plan.

    Unique per connection in both directions: pushes key off the local room
    id, pulls and webhooks key off the external room type id.
    """

    def __init__(self, db):
        self.col = db.channel_room_mappings

    async def list_for_connection(self, connection_id: str) -> List[Dict[str, Any]]:
        cursor = self.col.find({"connection_id": connection_id}).sort("local_room_id", 1)
        return await cursor.to_list(length=None)

    async def for_rooms(self, connection_id: str, room_ids: Iterable[str]) -> List[Dict[str, Any]]:
        cursor = self.col.find(
            {"connection_id": connection_id, "local_room_id": {"$in": sorted(set(room_ids))}}
        )
        return await cursor.to_list(length=None)

    async def by_external_room_type(self, connection_id: str, external_room_type_id: str) -> Optional[Dict[str, Any]]:
        return await self.col.find_one(
            {"connection_id": connection_id, "external_room_type_id": external_room_type_id}
        )

    async def replace(self, connection_id: str, mappings: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Upsert the given mappings and drop the rest for this connection.

        Callers validate uniqueness beforehand; removals run first so that a
        swapped external room type does not trip the reverse unique index.
        """

        keep_rooms = [m["local_room_id"] for m in mappings]
        await self.col.delete_many({"connection_id": connection_id, "local_room_id": {"$nin": keep_rooms}})

        existing = {m["local_room_id"]: m for m in await self.list_for_connection(connection_id)}
        changed = [
            m for m in mappings
            if m["local_room_id"] in existing
            and existing[m["local_room_id"]]["external_room_type_id"] != m["external_room_type_id"]
        ]
        if changed:
            # Free the reverse keys before re-inserting the swapped rows.
            await self.col.delete_many(
                {"connection_id": connection_id, "local_room_id": {"$in": [m["local_room_id"] for m in changed]}}
            )

        now = now_utc()
        for m in mappings:
            await self.col.update_one(
                {"connection_id": connection_id, "local_room_id": m["local_room_id"]},
                {
                    "$set": {
                        "external_room_type_id": m["external_room_type_id"],
                        "external_rate_plan_id": m.get("external_rate_plan_id"),
                        "updated_at": now,
                    },
                    "$setOnInsert": {"_id": str(uuid4()), "created_at": now},
                },
                upsert=True,
            )
        return await self.list_for_connection(connection_id)
