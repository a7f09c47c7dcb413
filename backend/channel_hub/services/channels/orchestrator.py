from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from channel_hub.config import (
  CHANNEL_CALL_TIMEOUT_SECONDS,
  CHANNEL_DEGRADE_THRESHOLD,
  CHANNEL_PROPAGATE_BOOKINGS,
  CHANNEL_PULL_LOOKBACK_HOURS,
  CHANNEL_PULL_OVERLAP_MINUTES,
  CHANNEL_PUSH_CONCURRENCY,
)
from channel_hub.errors import AppError, ChannelAdapterError
from channel_hub.repositories.connection_repository import ConnectionRepository
from channel_hub.repositories.mapping_repository import MappingRepository
from channel_hub.repositories.outbox_repository import (
  KIND_CANCEL_BOOKING,
  KIND_PUSH_INVENTORY,
  KIND_PUSH_RATES,
  OutboxRepository,
  compute_backoff,
)
from channel_hub.repositories.sync_log_repository import SCOPE_BOOKING, SyncLogRepository
from channel_hub.services.channels.health import evaluate_degradation
from channel_hub.services.channels.reconciliation import Outcome, ReconcileResult, ReconciliationEngine
from channel_hub.services.channels.registry import AdapterRegistry
from channel_hub.services.channels.providers.base import BaseChannelProvider
from channel_hub.services.channels.types import (
  ConnectionStatus,
  CredentialCheck,
  ExternalBooking,
  InventoryUpdate,
  PullResult,
  RateUpdate,
  ResultCode,
  SyncOperation,
  SyncResult,
)
from channel_hub.utils import night_dates, now_utc

logger = logging.getLogger(__name__)

T = TypeVar("T")
Update = Union[InventoryUpdate, RateUpdate]

UNMAPPED_ROOM_TYPE = "UNMAPPED_ROOM_TYPE"
CONNECTION_INACTIVE = "CONNECTION_INACTIVE"

# Longest window one manual inventory sync may push.
MAX_SYNC_NIGHTS = 366

# Failures worth another try later; everything else is permanent.
RETRYABLE_CODES = {
  ResultCode.TIMEOUT.value,
  ResultCode.PROVIDER_UNAVAILABLE.value,
  ResultCode.UNKNOWN_ERROR.value,
}

_PUSH_KIND = {
  SyncOperation.PUSH_INVENTORY: KIND_PUSH_INVENTORY,
  SyncOperation.PUSH_RATES: KIND_PUSH_RATES,
}


@dataclass
class ConnectionSyncOutcome:
  connection_id: str
  channel_type: str
  result: SyncResult

  def to_dict(self) -> Dict[str, Any]:
    return {
      "connection_id": self.connection_id,
      "channel_type": self.channel_type,
      "success": self.result.success,
      "code": self.result.code,
      "affected_rooms": list(self.result.affected_rooms),
      "error_message": self.result.error_message,
    }


@dataclass
class PullSummary:
  connection_id: str
  channel_type: str
  success: bool
  code: str = ResultCode.OK.value
  skipped: bool = False
  fetched: int = 0
  outcomes: Dict[str, int] = field(default_factory=dict)
  error_message: Optional[str] = None

  def to_dict(self) -> Dict[str, Any]:
    return {
      "connection_id": self.connection_id,
      "channel_type": self.channel_type,
      "success": self.success,
      "code": self.code,
      "skipped": self.skipped,
      "fetched": self.fetched,
      "outcomes": dict(self.outcomes),
      "error_message": self.error_message,
    }


@dataclass
class IngestResult:
  status: str  # processed | discarded
  outcome: Optional[str] = None
  reason: Optional[str] = None
  connection_id: Optional[str] = None
  booking_id: Optional[str] = None
  external_booking_id: Optional[str] = None

  def to_dict(self) -> Dict[str, Any]:
    return {
      "status": self.status,
      "outcome": self.outcome,
      "reason": self.reason,
      "connection_id": self.connection_id,
      "booking_id": self.booking_id,
      "external_booking_id": self.external_booking_id,
    }


class ConnectionGate:
  """Bounded fan-out plus per-connection serialization for one process.

  The per-connection lock is taken before a semaphore slot; calls queued
  behind one connection hold no slot while they wait.
  """

  def __init__(self, concurrency: int) -> None:
    self._semaphore = asyncio.Semaphore(max(1, concurrency))
    self._locks: Dict[str, asyncio.Lock] = {}

  @asynccontextmanager
  async def hold(self, key: str) -> AsyncIterator[None]:
    lock = self._locks.setdefault(key, asyncio.Lock())
    async with lock:
      async with self._semaphore:
        yield


class ChannelOrchestrator:
  """Fans inventory/rate changes out to channels and pulls bookings in.

  Adapter calls are isolated from each other. Each one runs under
  `call_timeout` with unexpected exceptions turned into UNKNOWN_ERROR results.
  The call is written to the sync log whatever its outcome.
  """

  def __init__(
    self,
    db,
    registry: AdapterRegistry,
    *,
    degrade_threshold: int = CHANNEL_DEGRADE_THRESHOLD,
    concurrency: int = CHANNEL_PUSH_CONCURRENCY,
    call_timeout: float = CHANNEL_CALL_TIMEOUT_SECONDS,
    propagate_bookings: bool = CHANNEL_PROPAGATE_BOOKINGS,
  ) -> None:
    self.db = db
    self.registry = registry
    self.degrade_threshold = degrade_threshold
    self.call_timeout = call_timeout
    self.propagate_bookings = propagate_bookings

    self.connections = ConnectionRepository(db)
    self.mappings = MappingRepository(db)
    self.sync_logs = SyncLogRepository(db)
    self.outbox = OutboxRepository(db)
    self.reconciler = ReconciliationEngine(db, outbox=self.outbox)
    self.gate = ConnectionGate(concurrency)

  # ------------------------------------------------------------------
  # Adapter invocation
  # ------------------------------------------------------------------

  async def _call_adapter(
    self,
    key: str,
    label: str,
    call: Callable[[], Awaitable[T]],
    on_error: Callable[[str, str], T],
  ) -> Tuple[T, int]:
    async with self.gate.hold(key):
      started = time.perf_counter()
      try:
        result = await asyncio.wait_for(call(), timeout=self.call_timeout)
      except asyncio.TimeoutError:
        logger.warning("%s for %s timed out after %ss", label, key, self.call_timeout)
        result = on_error(ResultCode.TIMEOUT.value, f"{label} timed out after {self.call_timeout}s")
      except Exception as e:
        logger.error("%s for %s raised unexpectedly", label, key, exc_info=True)
        result = on_error(ResultCode.UNKNOWN_ERROR.value, str(e) or e.__class__.__name__)
    return result, int((time.perf_counter() - started) * 1000)

  def _adapter_for(self, connection: Dict[str, Any]) -> BaseChannelProvider:
    return self.registry.get(connection["channel_type"])

  async def validate_credentials(
    self,
    channel_type: str,
    credentials: Dict[str, Any],
    *,
    gate_key: Optional[str] = None,
  ) -> Tuple[CredentialCheck, int]:
    adapter = self.registry.get(channel_type)
    return await self._call_adapter(
      gate_key or f"validate:{channel_type}",
      "validate_credentials",
      lambda: adapter.validate_credentials(credentials),
      lambda code, msg: CredentialCheck(valid=False, error_message=msg, code=code),
    )

  # ------------------------------------------------------------------
  # Push path
  # ------------------------------------------------------------------

  async def push_inventory(
    self,
    hotel_id: str,
    updates: Sequence[InventoryUpdate],
    *,
    exclude_connection_ids: Iterable[str] = (),
  ) -> List[ConnectionSyncOutcome]:
    return await self._fan_out(hotel_id, SyncOperation.PUSH_INVENTORY, updates, exclude_connection_ids)

  async def push_rates(
    self,
    hotel_id: str,
    updates: Sequence[RateUpdate],
    *,
    exclude_connection_ids: Iterable[str] = (),
  ) -> List[ConnectionSyncOutcome]:
    return await self._fan_out(hotel_id, SyncOperation.PUSH_RATES, updates, exclude_connection_ids)

  async def _fan_out(
    self,
    hotel_id: str,
    operation: SyncOperation,
    updates: Sequence[Update],
    exclude_connection_ids: Iterable[str],
  ) -> List[ConnectionSyncOutcome]:
    if not updates:
      return []
    excluded = set(exclude_connection_ids)
    connections = [
      c for c in await self.connections.list_for_hotel(hotel_id, [ConnectionStatus.ACTIVE])
      if c["_id"] not in excluded
    ]
    results = await asyncio.gather(*(self._push_one(c, operation, updates) for c in connections))
    return [r for r in results if r is not None]

  async def _push_one(
    self,
    connection: Dict[str, Any],
    operation: SyncOperation,
    updates: Sequence[Update],
    *,
    attempt: int = 1,
    queue_retry: bool = True,
  ) -> Optional[ConnectionSyncOutcome]:
    connection_id = connection["_id"]
    channel_type = connection["channel_type"]

    try:
      adapter = self._adapter_for(connection)
    except ChannelAdapterError as e:
      logger.error("Skipping %s for connection %s: %s", operation.value, connection_id, e.message)
      result = SyncResult(False, operation, error_message=e.message, code=ResultCode.CONFIG_ERROR.value)
      await self.sync_logs.append(
        connection_id=connection_id,
        operation=operation.value,
        success=False,
        code=result.code,
        error_message=result.error_message,
        attempt=attempt,
      )
      return ConnectionSyncOutcome(connection_id, channel_type, result)

    mappings = await self.mappings.for_rooms(connection_id, {u.room_id for u in updates})
    if not mappings:
      return None
    by_room = {m["local_room_id"]: m for m in mappings}
    relevant: List[Update] = [u for u in updates if u.room_id in by_room]
    if operation == SyncOperation.PUSH_RATES:
      relevant = [
        u if u.external_rate_plan_id else replace(u, external_rate_plan_id=by_room[u.room_id].get("external_rate_plan_id"))
        for u in relevant
      ]

    push = adapter.push_inventory if operation == SyncOperation.PUSH_INVENTORY else adapter.push_rates

    result, duration_ms = await self._call_adapter(
      connection_id,
      operation.value,
      lambda: push(connection, mappings, relevant),
      lambda code, msg: SyncResult(False, operation, error_message=msg, code=code),
    )
    await self.sync_logs.append(
      connection_id=connection_id,
      operation=operation.value,
      success=result.success,
      code=result.code,
      affected_rooms=result.affected_rooms,
      error_message=result.error_message,
      raw_response=result.raw_response,
      attempt=attempt,
      duration_ms=duration_ms,
    )
    await self._after_push(connection, operation, relevant, result, queue_retry=queue_retry, attempt=attempt)
    return ConnectionSyncOutcome(connection_id, channel_type, result)

  async def _after_push(
    self,
    connection: Dict[str, Any],
    operation: SyncOperation,
    updates: Sequence[Update],
    result: SyncResult,
    *,
    queue_retry: bool,
    attempt: int,
  ) -> None:
    connection_id = connection["_id"]
    kind = _PUSH_KIND[operation]

    if result.success:
      await self.connections.mark_synced(connection_id, now_utc())
      await self.outbox.supersede(connection_id, kind, [(u.room_id, u.date.isoformat()) for u in updates])
      return

    retry = result.code in RETRYABLE_CODES
    if result.code == ResultCode.AUTH_FAILED.value:
      from channel_hub.services.channels.connections import revalidate_connection

      refreshed, _ = await revalidate_connection(self, connection_id)
      retry = refreshed.get("status") == ConnectionStatus.ACTIVE.value

    if retry and queue_retry:
      await self.outbox.enqueue(
        kind=kind,
        connection_id=connection_id,
        payload={"updates": [u.to_doc() for u in updates]},
        attempts=attempt,
        last_error=result.error_message,
        delay=compute_backoff(attempt),
      )

    if result.code != ResultCode.NOT_IMPLEMENTED.value:
      await evaluate_degradation(
        self.connections,
        self.sync_logs,
        connection_id,
        threshold=self.degrade_threshold,
        last_error=result.error_message,
      )

  async def sync_connection(self, connection_id: str, start: date, end: date) -> ConnectionSyncOutcome:
    """Push the ledger's availability for every mapped room over [start, end).

    Brings a newly linked or remapped channel in line with the room-night
    locks. Goes through the regular push path, so a failure is retried and
    counts towards degradation like any other push.
    """

    if end <= start:
      raise AppError(422, "invalid_date_range", "end must be after start")
    if (end - start).days > MAX_SYNC_NIGHTS:
      raise AppError(
        422,
        "date_range_too_long",
        f"A sync covers at most {MAX_SYNC_NIGHTS} nights",
        details={"nights": (end - start).days},
      )

    connection = await self.connections.get(connection_id)
    if connection is None:
      raise AppError(404, "connection_not_found", "Channel connection not found", details={"connection_id": connection_id})
    channel_type = connection["channel_type"]
    status = connection.get("status")
    if status != ConnectionStatus.ACTIVE.value:
      result = SyncResult(False, SyncOperation.PUSH_INVENTORY, error_message=f"connection is {status}", code=CONNECTION_INACTIVE)
      return ConnectionSyncOutcome(connection_id, channel_type, result)

    rooms = sorted({m["local_room_id"] for m in await self.mappings.list_for_connection(connection_id)})
    if not rooms:
      raise AppError(409, "no_room_mappings", "Connection has no room mappings", details={"connection_id": connection_id})

    nights = night_dates(start, end)
    updates: List[InventoryUpdate] = []
    for room_id in rooms:
      held = await self.reconciler.bookings.holders(room_id, nights)
      updates.extend(
        InventoryUpdate(room_id=room_id, date=date.fromisoformat(n), available=n not in held) for n in nights
      )

    logger.info("Syncing %s nights x %s rooms to connection %s", len(nights), len(rooms), connection_id)
    outcome = await self._push_one(connection, SyncOperation.PUSH_INVENTORY, updates)
    assert outcome is not None
    return outcome

  # ------------------------------------------------------------------
  # Pull path
  # ------------------------------------------------------------------

  def _default_since(self, connection: Dict[str, Any], now: datetime) -> datetime:
    last_pull_at = connection.get("last_pull_at")
    if isinstance(last_pull_at, datetime):
      if last_pull_at.tzinfo is None:
        last_pull_at = last_pull_at.replace(tzinfo=now.tzinfo)
      return last_pull_at - timedelta(minutes=CHANNEL_PULL_OVERLAP_MINUTES)
    return now - timedelta(hours=CHANNEL_PULL_LOOKBACK_HOURS)

  async def pull_connection(self, connection_id: str, since: Optional[datetime] = None) -> PullSummary:
    connection = await self.connections.get(connection_id)
    if connection is None:
      raise AppError(404, "connection_not_found", "Channel connection not found", details={"connection_id": connection_id})

    channel_type = connection["channel_type"]
    status = connection.get("status")
    if status not in (ConnectionStatus.ACTIVE.value, ConnectionStatus.DEGRADED.value):
      return PullSummary(
        connection_id,
        channel_type,
        success=False,
        skipped=True,
        code=CONNECTION_INACTIVE,
        error_message=f"connection is {status}",
      )

    try:
      adapter = self._adapter_for(connection)
    except ChannelAdapterError as e:
      logger.error("Skipping pull for connection %s: %s", connection_id, e.message)
      await self.sync_logs.append(
        connection_id=connection_id,
        operation=SyncOperation.PULL_BOOKINGS.value,
        success=False,
        code=ResultCode.CONFIG_ERROR.value,
        error_message=e.message,
      )
      return PullSummary(connection_id, channel_type, False, code=ResultCode.CONFIG_ERROR.value, error_message=e.message)

    started_at = now_utc()
    since = since or self._default_since(connection, started_at)
    result, duration_ms = await self._call_adapter(
      connection_id,
      SyncOperation.PULL_BOOKINGS.value,
      lambda: adapter.pull_bookings(connection, since),
      lambda code, msg: PullResult(False, error_message=msg, code=code),
    )
    await self.sync_logs.append(
      connection_id=connection_id,
      operation=SyncOperation.PULL_BOOKINGS.value,
      success=result.success,
      code=result.code,
      error_message=result.error_message,
      raw_response={"since": since.isoformat(), "count": len(result.bookings)},
      duration_ms=duration_ms,
    )

    if not result.success:
      if result.code == ResultCode.AUTH_FAILED.value:
        from channel_hub.services.channels.connections import revalidate_connection

        await revalidate_connection(self, connection_id)
      if result.code != ResultCode.NOT_IMPLEMENTED.value:
        await evaluate_degradation(
          self.connections,
          self.sync_logs,
          connection_id,
          threshold=self.degrade_threshold,
          last_error=result.error_message,
        )
      return PullSummary(connection_id, channel_type, False, code=result.code, error_message=result.error_message)

    await self.connections.mark_pulled(connection_id, started_at)

    # Overlapping windows return the same booking more than once; the latest
    # entry for an id wins.
    latest: Dict[str, ExternalBooking] = {}
    for booking in result.bookings:
      latest[booking.external_booking_id] = booking

    summary = PullSummary(connection_id, channel_type, True, fetched=len(latest))
    for booking in latest.values():
      ingested = await self.ingest_booking(connection, booking, SyncOperation.PULL_BOOKINGS)
      key = ingested.outcome or ingested.status
      summary.outcomes[key] = summary.outcomes.get(key, 0) + 1
    return summary

  async def pull_all(self) -> List[PullSummary]:
    connections = await self.connections.list_by_status([ConnectionStatus.ACTIVE, ConnectionStatus.DEGRADED])
    results = await asyncio.gather(
      *(self.pull_connection(c["_id"]) for c in connections),
      return_exceptions=True,
    )
    summaries: List[PullSummary] = []
    for connection, res in zip(connections, results):
      if isinstance(res, BaseException):
        logger.error("Pull for connection %s failed: %s", connection["_id"], res, exc_info=res)
        continue
      summaries.append(res)
    return summaries

  # ------------------------------------------------------------------
  # Inbound bookings
  # ------------------------------------------------------------------

  async def ingest_webhook(self, channel_type: str, payload: Any) -> IngestResult:
    adapter = self.registry.get(channel_type)
    booking = adapter.parse_webhook(payload)
    if booking is None:
      logger.warning("Discarding malformed %s webhook payload", adapter.channel_type)
      return IngestResult("discarded", reason="malformed_payload")

    connection = await self.connections.find_by_property(adapter.channel_type, booking.external_property_id)
    if connection is None:
      logger.warning(
        "Discarding %s webhook for unknown property %s (booking %s)",
        adapter.channel_type,
        booking.external_property_id,
        booking.external_booking_id,
      )
      return IngestResult("discarded", reason="unknown_property", external_booking_id=booking.external_booking_id)

    if connection.get("status") == ConnectionStatus.INACTIVE.value:
      await self.sync_logs.append(
        connection_id=connection["_id"],
        operation=SyncOperation.WEBHOOK.value,
        success=False,
        scope=SCOPE_BOOKING,
        code=CONNECTION_INACTIVE,
        outcome=Outcome.IGNORED.value,
        external_booking_id=booking.external_booking_id,
        error_message="webhook for unlinked connection",
      )
      return IngestResult(
        "discarded",
        reason="connection_inactive",
        connection_id=connection["_id"],
        external_booking_id=booking.external_booking_id,
      )

    return await self.ingest_booking(connection, booking, SyncOperation.WEBHOOK)

  async def ingest_booking(
    self,
    connection: Dict[str, Any],
    booking: ExternalBooking,
    operation: SyncOperation,
  ) -> IngestResult:
    connection_id = connection["_id"]
    mapping = await self.mappings.by_external_room_type(connection_id, booking.external_room_type_id)
    if mapping is None:
      logger.warning(
        "Booking %s on connection %s references unmapped room type %s",
        booking.external_booking_id,
        connection_id,
        booking.external_room_type_id,
      )
      await self.sync_logs.append(
        connection_id=connection_id,
        operation=operation.value,
        success=False,
        scope=SCOPE_BOOKING,
        code=UNMAPPED_ROOM_TYPE,
        outcome=Outcome.IGNORED.value,
        external_booking_id=booking.external_booking_id,
        error_message=f"no mapping for external room type {booking.external_room_type_id}",
      )
      return IngestResult(
        "discarded",
        outcome=Outcome.IGNORED.value,
        reason="unmapped_room_type",
        connection_id=connection_id,
        external_booking_id=booking.external_booking_id,
      )

    result = await self.reconciler.reconcile(connection["hotel_id"], connection, mapping["local_room_id"], booking)
    await self.sync_logs.append(
      connection_id=connection_id,
      operation=operation.value,
      success=result.outcome != Outcome.CONFLICTED,
      scope=SCOPE_BOOKING,
      code=result.code,
      outcome=result.outcome.value,
      external_booking_id=booking.external_booking_id,
      booking_id=result.booking_id,
      error_message=result.message,
      affected_rooms=[mapping["local_room_id"]],
      raw_response={
        "status": booking.status.value,
        "check_in": booking.check_in.isoformat(),
        "check_out": booking.check_out.isoformat(),
      },
    )
    await self._propagate(connection["hotel_id"], result, exclude=connection_id)
    return IngestResult(
      "processed",
      outcome=result.outcome.value,
      reason=result.message,
      connection_id=connection_id,
      booking_id=result.booking_id,
      external_booking_id=booking.external_booking_id,
    )

  async def _propagate(self, hotel_id: str, result: ReconcileResult, *, exclude: Optional[str] = None) -> None:
    """Push the availability a booking decision changed to the other channels."""

    if not self.propagate_bookings or not result.availability:
      return
    outcomes = await self.push_inventory(
      hotel_id,
      result.availability,
      exclude_connection_ids=[exclude] if exclude else (),
    )
    failed = [o.connection_id for o in outcomes if not o.result.success]
    if failed:
      logger.warning("Availability propagation for booking %s failed on %s", result.booking_id, failed)

  # ------------------------------------------------------------------
  # Direct sales
  # ------------------------------------------------------------------

  async def reserve_direct(self, hotel_id: str, room_id: str, check_in: date, check_out: date, **guest: Any) -> ReconcileResult:
    result = await self.reconciler.reserve_direct(hotel_id, room_id, check_in, check_out, **guest)
    await self._propagate(hotel_id, result)
    return result

  async def cancel_direct(self, booking_id: str) -> ReconcileResult:
    result = await self.reconciler.cancel_direct(booking_id)
    if result.booking is not None:
      await self._propagate(result.booking["hotel_id"], result)
    return result

  # ------------------------------------------------------------------
  # Outbox execution
  # ------------------------------------------------------------------

  async def run_outbox_item(self, item: Dict[str, Any]) -> str:
    """Execute one claimed outbox item; returns its resulting status."""

    item_id = item["_id"]
    connection = await self.connections.get(item["connection_id"])
    if connection is None:
      await self.outbox.mark_failed(item_id, "connection no longer exists")
      return "failed"

    kind = item["kind"]
    if kind == KIND_CANCEL_BOOKING:
      return await self._run_compensation(item, connection)

    operation = SyncOperation.PUSH_INVENTORY if kind == KIND_PUSH_INVENTORY else SyncOperation.PUSH_RATES
    if connection.get("status") != ConnectionStatus.ACTIVE.value:
      await self.outbox.suspend(item_id, f"connection is {connection.get('status')}")
      return "suspended"

    docs = (item.get("payload") or {}).get("updates") or []
    if operation == SyncOperation.PUSH_INVENTORY:
      updates: List[Update] = [InventoryUpdate.from_doc(d) for d in docs]
    else:
      updates = [RateUpdate.from_doc(d) for d in docs]
    attempt = int(item.get("attempts") or 0) + 1

    outcome = await self._push_one(connection, operation, updates, attempt=attempt, queue_retry=False) if updates else None
    if outcome is None or outcome.result.success:
      await self.outbox.mark_done(item_id)
      return "done"
    if outcome.result.code not in RETRYABLE_CODES:
      await self.outbox.mark_failed(item_id, outcome.result.error_message or outcome.result.code)
      return "failed"
    status = await self.outbox.record_failure(item, outcome.result.error_message or outcome.result.code)
    if status == "failed":
      logger.error("Giving up %s for connection %s after %s attempts", kind, connection["_id"], attempt)
    return status

  async def _run_compensation(self, item: Dict[str, Any], connection: Dict[str, Any]) -> str:
    item_id = item["_id"]
    if connection.get("status") == ConnectionStatus.INACTIVE.value:
      await self.outbox.suspend(item_id, "connection is INACTIVE")
      return "suspended"

    payload = item.get("payload") or {}
    external_booking_id = payload.get("external_booking_id")
    attempt = int(item.get("attempts") or 0) + 1

    try:
      adapter = self._adapter_for(connection)
    except ChannelAdapterError as e:
      await self.outbox.mark_failed(item_id, e.message)
      return "failed"

    result, duration_ms = await self._call_adapter(
      connection["_id"],
      SyncOperation.CANCEL_BOOKING.value,
      lambda: adapter.cancel_booking(connection, external_booking_id, payload.get("reason") or "room-night conflict"),
      lambda code, msg: SyncResult(False, SyncOperation.CANCEL_BOOKING, error_message=msg, code=code),
    )
    await self.sync_logs.append(
      connection_id=connection["_id"],
      operation=SyncOperation.CANCEL_BOOKING.value,
      success=result.success,
      scope=SCOPE_BOOKING,
      code=result.code,
      error_message=result.error_message,
      raw_response=result.raw_response,
      external_booking_id=external_booking_id,
      booking_id=payload.get("booking_id"),
      attempt=attempt,
      duration_ms=duration_ms,
    )

    if result.success:
      await self.outbox.mark_done(item_id)
      booking_id = payload.get("booking_id")
      if booking_id:
        # the channel no longer holds this booking; neither should the ledger
        local = await self.reconciler.cancel_booking(booking_id)
        if local.outcome == Outcome.CANCELLED:
          logger.info("Cancelled local booking %s after channel compensation", booking_id)
          await self._propagate(local.booking["hotel_id"], local, exclude=connection["_id"])
      return "done"
    if result.code in (ResultCode.NOT_IMPLEMENTED.value, ResultCode.CONFIG_ERROR.value):
      status = "failed"
      await self.outbox.mark_failed(item_id, result.error_message or result.code)
    else:
      status = await self.outbox.record_failure(item, result.error_message or result.code)
    if status == "failed":
      logger.error(
        "Compensating cancellation of %s booking %s failed permanently; manual follow-up required",
        connection["channel_type"],
        external_booking_id,
      )
    return status
