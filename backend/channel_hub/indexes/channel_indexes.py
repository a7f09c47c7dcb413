from __future__ import annotations

"""Indexes for the channel manager collections.

The unique indexes here are load-bearing: `bookings.idempotency_key` and
`room_night_locks (room_id, date)` are what make duplicate deliveries and
double-sold nights impossible across processes.
"""

import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)


async def ensure_channel_indexes(db):
    """Ensure indexes for channel connections, mappings, logs, ledger and queues."""

    async def _safe_create(collection, *args, **kwargs):
        try:
            await collection.create_index(*args, **kwargs)
        except OperationFailure as e:  # pragma: no cover - depends on deployed indexes
            msg = str(e).lower()
            if (
                "indexoptionsconflict" in msg
                or "indexkeyspecsconflict" in msg
                or "already exists" in msg
            ):
                logger.warning(
                    "[channel_indexes] Keeping existing index for %s (name=%s): %s",
                    collection.name,
                    kwargs.get("name"),
                    msg,
                )
                return
            raise

    # Connections: one per (hotel, channel); webhook routing by property id
    await _safe_create(
        db.channel_connections,
        [("hotel_id", ASCENDING), ("channel_type", ASCENDING)],
        unique=True,
        name="uniq_channel_connections_hotel_type",
    )
    await _safe_create(
        db.channel_connections,
        [("channel_type", ASCENDING), ("external_property_id", ASCENDING)],
        name="idx_channel_connections_type_property",
    )
    await _safe_create(
        db.channel_connections,
        [("hotel_id", ASCENDING), ("status", ASCENDING)],
        name="idx_channel_connections_hotel_status",
    )

    # Mappings: unique in both directions per connection
    await _safe_create(
        db.channel_room_mappings,
        [("connection_id", ASCENDING), ("local_room_id", ASCENDING)],
        unique=True,
        name="uniq_channel_mappings_conn_room",
    )
    await _safe_create(
        db.channel_room_mappings,
        [("connection_id", ASCENDING), ("external_room_type_id", ASCENDING)],
        unique=True,
        name="uniq_channel_mappings_conn_ext_room",
    )

    # Sync logs
    await _safe_create(
        db.channel_sync_logs,
        [("connection_id", ASCENDING), ("created_at", DESCENDING)],
        name="idx_channel_sync_logs_conn_created",
    )
    await _safe_create(
        db.channel_sync_logs,
        [("connection_id", ASCENDING), ("scope", ASCENDING), ("operation", ASCENDING)],
        name="idx_channel_sync_logs_conn_scope_op",
    )

    # Booking ledger + room-night locks
    await _safe_create(
        db.bookings,
        [("idempotency_key", ASCENDING)],
        unique=True,
        name="uniq_bookings_idempotency_key",
    )
    await _safe_create(
        db.bookings,
        [("room_id", ASCENDING), ("status", ASCENDING)],
        name="idx_bookings_room_status",
    )
    await _safe_create(
        db.room_night_locks,
        [("room_id", ASCENDING), ("date", ASCENDING)],
        unique=True,
        name="uniq_room_night_locks_room_date",
    )
    await _safe_create(
        db.room_night_locks,
        [("booking_id", ASCENDING)],
        name="idx_room_night_locks_booking",
    )

    # Outbox + webhook inbox
    await _safe_create(
        db.channel_sync_outbox,
        [("status", ASCENDING), ("next_retry_at", ASCENDING)],
        name="idx_channel_outbox_status_next_retry",
    )
    await _safe_create(
        db.channel_sync_outbox,
        [("connection_id", ASCENDING), ("kind", ASCENDING), ("status", ASCENDING)],
        name="idx_channel_outbox_conn_kind_status",
    )
    await _safe_create(
        db.channel_webhook_inbox,
        [("status", ASCENDING), ("created_at", ASCENDING)],
        name="idx_channel_webhook_inbox_status_created",
    )

    logger.info("Channel indexes ensured")
