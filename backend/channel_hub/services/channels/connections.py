"""Connection lifecycle: link, re-check, unlink and room mappings."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from channel_hub.errors import AppError
from channel_hub.repositories.booking_repository import BookingRepository
from channel_hub.services.channels.health import RECOVERED
from channel_hub.services.channels.types import ConnectionStatus, CredentialCheck, ResultCode, SyncOperation
from channel_hub.utils import mask_credentials, now_utc, serialize_doc

if TYPE_CHECKING:
  from channel_hub.services.channels.orchestrator import ChannelOrchestrator

logger = logging.getLogger(__name__)


def public_connection(doc: Dict[str, Any]) -> Dict[str, Any]:
  """Serialize a connection for API output with credentials masked."""

  out = serialize_doc(doc)
  out["api_credentials"] = mask_credentials(doc.get("api_credentials"))
  return out


async def _require_connection(orch: "ChannelOrchestrator", connection_id: str) -> Dict[str, Any]:
  doc = await orch.connections.get(connection_id)
  if doc is None:
    raise AppError(404, "connection_not_found", "Channel connection not found", details={"connection_id": connection_id})
  return doc


async def _log_validation(
  orch: "ChannelOrchestrator",
  connection_id: str,
  check: CredentialCheck,
  duration_ms: int,
  outcome: Optional[str] = None,
) -> None:
  await orch.sync_logs.append(
    connection_id=connection_id,
    operation=SyncOperation.VALIDATE_CREDENTIALS.value,
    success=check.valid,
    code=check.code,
    error_message=check.error_message,
    outcome=outcome,
    duration_ms=duration_ms,
  )


async def connect_channel(
  orch: "ChannelOrchestrator",
  hotel_id: str,
  channel_type: str,
  credentials: Dict[str, Any],
) -> Tuple[Dict[str, Any], CredentialCheck]:
  """Validate credentials and create/replace the hotel's link to a channel.

  Valid credentials activate the connection straight away. Invalid ones
  still store the link as PENDING with the provider's error so the partner
  can fix credentials and re-check without re-entering everything.
  """

  adapter = orch.registry.get(channel_type)
  channel_type = adapter.channel_type
  check, duration_ms = await orch.validate_credentials(
    channel_type, credentials, gate_key=f"{hotel_id}:{channel_type}"
  )

  external_property_id = check.external_property_id or (credentials or {}).get("property_id")
  doc = await orch.connections.upsert(
    hotel_id=hotel_id,
    channel_type=channel_type,
    credentials=dict(credentials or {}),
    external_property_id=str(external_property_id) if external_property_id else None,
    status=ConnectionStatus.ACTIVE if check.valid else ConnectionStatus.PENDING,
    last_error=None if check.valid else check.error_message,
  )
  await _log_validation(orch, doc["_id"], check, duration_ms)
  if check.valid:
    await orch.outbox.requeue_suspended(doc["_id"])
  logger.info("Hotel %s linked %s (%s)", hotel_id, channel_type, doc["status"])
  return doc, check


async def revalidate_connection(
  orch: "ChannelOrchestrator",
  connection_id: str,
) -> Tuple[Dict[str, Any], CredentialCheck]:
  """Re-check stored credentials and move the connection accordingly.

  - valid: PENDING/DEGRADED -> ACTIVE, suspended retries resume
  - AUTH_FAILED: -> INACTIVE
  - anything else (timeouts, outages): status unchanged
  """

  conn = await _require_connection(orch, connection_id)
  check, duration_ms = await orch.validate_credentials(
    conn["channel_type"], conn.get("api_credentials") or {}, gate_key=connection_id
  )
  status = conn.get("status")
  recovered = False
  if check.valid:
    extra = {"external_property_id": check.external_property_id} if check.external_property_id else None
    recovered = await orch.connections.transition(
      connection_id,
      ConnectionStatus.ACTIVE,
      from_statuses=[ConnectionStatus.PENDING, ConnectionStatus.DEGRADED],
      extra=extra,
    )
    if not recovered:
      await orch.connections.transition(
        connection_id,
        ConnectionStatus.ACTIVE,
        from_statuses=[ConnectionStatus.ACTIVE],
        extra=extra,
      )
    requeued = await orch.outbox.requeue_suspended(connection_id)
    if requeued:
      logger.info("Resumed %s suspended retries for connection %s", requeued, connection_id)
  elif check.code == ResultCode.AUTH_FAILED.value and status != ConnectionStatus.INACTIVE.value:
    await orch.connections.transition(
      connection_id,
      ConnectionStatus.INACTIVE,
      last_error=check.error_message,
    )
    logger.warning("Connection %s credentials rejected; marked INACTIVE", connection_id)

  # written after the transition so a recovery ends the failure streak
  await _log_validation(orch, connection_id, check, duration_ms, RECOVERED if recovered else None)
  return await orch.connections.get(connection_id), check


async def disconnect_channel(orch: "ChannelOrchestrator", connection_id: str) -> Dict[str, Any]:
  """Soft unlink: history and ledger rows stay, the channel stops syncing."""

  await _require_connection(orch, connection_id)
  await orch.connections.transition(
    connection_id,
    ConnectionStatus.INACTIVE,
    extra={"unlinked_at": now_utc()},
  )
  return await orch.connections.get(connection_id)


async def replace_room_mappings(
  orch: "ChannelOrchestrator",
  connection_id: str,
  mappings: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
  await _require_connection(orch, connection_id)

  seen_rooms: Dict[str, str] = {}
  seen_external: Dict[str, str] = {}
  for m in mappings:
    room_id = m["local_room_id"]
    external_id = m["external_room_type_id"]
    if room_id in seen_rooms:
      raise AppError(
        409,
        "mapping_conflict",
        "Local room mapped more than once",
        details={"local_room_id": room_id},
      )
    if external_id in seen_external:
      raise AppError(
        409,
        "mapping_conflict",
        "External room type mapped to more than one local room",
        details={"external_room_type_id": external_id, "local_room_ids": [seen_external[external_id], room_id]},
      )
    seen_rooms[room_id] = external_id
    seen_external[external_id] = room_id

  bookings = BookingRepository(orch.db)
  for existing in await orch.mappings.list_for_connection(connection_id):
    room_id = existing["local_room_id"]
    if seen_rooms.get(room_id) == existing["external_room_type_id"]:
      continue
    if await bookings.count_confirmed_for_room(connection_id, room_id):
      raise AppError(
        409,
        "mapping_in_use",
        "Room has confirmed bookings from this channel",
        details={"local_room_id": room_id, "external_room_type_id": existing["external_room_type_id"]},
      )

  return await orch.mappings.replace(connection_id, mappings)


async def list_connections(orch: "ChannelOrchestrator", hotel_id: str) -> List[Dict[str, Any]]:
  return await orch.connections.list_for_hotel(hotel_id)


async def get_connection(orch: "ChannelOrchestrator", connection_id: str) -> Dict[str, Any]:
  return await _require_connection(orch, connection_id)


async def get_room_mappings(orch: "ChannelOrchestrator", connection_id: str) -> List[Dict[str, Any]]:
  await _require_connection(orch, connection_id)
  return await orch.mappings.list_for_connection(connection_id)


async def recent_sync_logs(orch: "ChannelOrchestrator", connection_id: str, *, limit: int = 50) -> List[Dict[str, Any]]:
  await _require_connection(orch, connection_id)
  return await orch.sync_logs.recent(connection_id, limit=limit)
