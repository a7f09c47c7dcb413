from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pymongo.errors import DuplicateKeyError

from channel_hub.errors import AppError
from channel_hub.repositories import booking_repository as ledger
from channel_hub.repositories.booking_repository import BookingRepository, ClaimResult
from channel_hub.repositories.outbox_repository import KIND_CANCEL_BOOKING, OutboxRepository
from channel_hub.services.channels.types import BookingStatus, ExternalBooking, InventoryUpdate
from channel_hub.utils import night_dates, now_utc

logger = logging.getLogger(__name__)

DIRECT_SOURCE = "DIRECT"
ROOM_NIGHT_CONFLICT = "ROOM_NIGHT_CONFLICT"

# A PENDING ledger row untouched for this long belongs to a crashed attempt.
STALE_PENDING_AFTER = timedelta(seconds=60)

MUTABLE_FIELDS = ("guest_name", "guest_email", "guest_phone", "guest_count", "total_amount", "currency")


class Outcome(str, Enum):
  COMMITTED = "COMMITTED"
  DUPLICATE = "DUPLICATE"
  CONFLICTED = "CONFLICTED"
  MODIFIED = "MODIFIED"
  CANCELLED = "CANCELLED"
  IGNORED = "IGNORED"


@dataclass
class ReconcileResult:
  outcome: Outcome
  booking_id: Optional[str] = None
  message: Optional[str] = None
  conflicting_booking_id: Optional[str] = None
  conflict_date: Optional[str] = None
  # Availability deltas caused by this decision (held -> False, freed -> True).
  availability: List[InventoryUpdate] = field(default_factory=list)
  booking: Optional[Dict[str, Any]] = None

  @property
  def code(self) -> Optional[str]:
    return ROOM_NIGHT_CONFLICT if self.outcome == Outcome.CONFLICTED else None


def idempotency_key(channel_type: str, external_booking_id: str) -> str:
  return f"{channel_type}:{external_booking_id}"


def _deltas(room_id: str, nights: List[str], available: bool) -> List[InventoryUpdate]:
  return [InventoryUpdate(room_id=room_id, date=date.fromisoformat(n), available=available) for n in nights]


class ReconciliationEngine:
  """Decides what an inbound booking means for the local ledger.

  The ledger row is keyed by (channel_type, external_booking_id) and is
  inserted as PENDING before any room-night is claimed, so two concurrent
  deliveries of the same booking can never both reach the claim step.
  Room-nights are claimed through the `room_night_locks` unique index,
  which is the only arbiter of who owns a night.
  """

  def __init__(self, db, *, outbox: Optional[OutboxRepository] = None):
    self.bookings = BookingRepository(db)
    self.outbox = outbox or OutboxRepository(db)

  async def reconcile(
    self,
    hotel_id: str,
    connection: Dict[str, Any],
    local_room_id: str,
    booking: ExternalBooking,
  ) -> ReconcileResult:
    key = idempotency_key(booking.channel_type, booking.external_booking_id)
    if booking.status == BookingStatus.CANCELLED:
      return await self._cancel(key)
    if booking.status == BookingStatus.MODIFIED:
      return await self._modify(hotel_id, connection, local_room_id, booking, key)
    return await self._create(hotel_id, connection, local_room_id, booking, key)

  # ------------------------------------------------------------------
  # New / redelivered bookings
  # ------------------------------------------------------------------

  async def _create(
    self,
    hotel_id: str,
    connection: Dict[str, Any],
    local_room_id: str,
    booking: ExternalBooking,
    key: str,
  ) -> ReconcileResult:
    doc = self._ledger_doc(hotel_id, connection, local_room_id, booking, key)
    try:
      await self.bookings.insert(doc)
    except DuplicateKeyError:
      existing = await self.bookings.get_by_key(key)
      if existing is None:
        # the other writer rolled back between our insert and read
        return ReconcileResult(Outcome.IGNORED, message="concurrent delivery rolled back; retry")
      return await self._redelivered(existing, connection, booking)

    return await self._commit(doc, connection, booking)

  async def _redelivered(
    self,
    existing: Dict[str, Any],
    connection: Dict[str, Any],
    booking: ExternalBooking,
  ) -> ReconcileResult:
    status = existing.get("status")
    if status == ledger.PENDING:
      taken = await self._take_over_stale(existing)
      if taken is not None:
        return await self._commit(taken, connection, booking)
      return ReconcileResult(Outcome.DUPLICATE, booking_id=existing["_id"], message="delivery already in flight")

    if status == ledger.CONFIRMED:
      changes = {f: getattr(booking, f) for f in MUTABLE_FIELDS if existing.get(f) != getattr(booking, f)}
      if changes:
        await self.bookings.update_fields(existing["_id"], changes)
    return ReconcileResult(Outcome.DUPLICATE, booking_id=existing["_id"])

  async def _take_over_stale(self, existing: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    updated_at = existing.get("updated_at")
    if isinstance(updated_at, datetime) and updated_at.tzinfo is None:
      updated_at = updated_at.replace(tzinfo=now_utc().tzinfo)
    if updated_at is not None and now_utc() - updated_at < STALE_PENDING_AFTER:
      return None
    return await self.bookings.take_over_pending(existing["_id"], existing.get("updated_at"))

  async def _commit(
    self,
    doc: Dict[str, Any],
    connection: Optional[Dict[str, Any]],
    booking: Optional[ExternalBooking],
  ) -> ReconcileResult:
    booking_id = doc["_id"]
    room_id = doc["room_id"]
    nights = list(doc["nights"])

    claim = await self.bookings.claim_nights(booking_id, room_id, nights)
    if not claim.ok:
      return await self._reject(doc, claim, connection, booking)

    confirmed = await self.bookings.set_status(booking_id, ledger.CONFIRMED, from_statuses=[ledger.PENDING])
    if confirmed is None:
      # Cancelled (or resumed elsewhere) while we were claiming.
      current = await self.bookings.get(booking_id)
      if not current or current.get("status") != ledger.CONFIRMED:
        await self.bookings.release_nights(booking_id, room_id, claim.claimed)
      return ReconcileResult(Outcome.DUPLICATE, booking_id=booking_id, booking=current)

    logger.info("Committed booking %s (%s) for room %s, %s nights", booking_id, doc["source"], room_id, len(nights))
    return ReconcileResult(
      Outcome.COMMITTED,
      booking_id=booking_id,
      availability=_deltas(room_id, nights, False),
      booking=confirmed,
    )

  async def _reject(
    self,
    doc: Dict[str, Any],
    claim: ClaimResult,
    connection: Optional[Dict[str, Any]],
    booking: Optional[ExternalBooking],
  ) -> ReconcileResult:
    booking_id = doc["_id"]
    message = f"room {doc['room_id']} already sold for {claim.conflict_date} (booking {claim.conflicting_booking_id})"
    rejected = await self.bookings.set_status(
      booking_id,
      ledger.REJECTED,
      from_statuses=[ledger.PENDING],
      extra={
        "rejected_reason": ROOM_NIGHT_CONFLICT,
        "conflict_date": claim.conflict_date,
        "conflicting_booking_id": claim.conflicting_booking_id,
      },
    )
    logger.warning("Booking %s conflicted: %s", booking_id, message)
    if connection is not None and booking is not None:
      await self._queue_compensation(connection, booking, booking_id, message)
    return ReconcileResult(
      Outcome.CONFLICTED,
      booking_id=booking_id,
      message=message,
      conflicting_booking_id=claim.conflicting_booking_id,
      conflict_date=claim.conflict_date,
      booking=rejected,
    )

  async def _queue_compensation(
    self,
    connection: Dict[str, Any],
    booking: ExternalBooking,
    booking_id: str,
    reason: str,
  ) -> None:
    await self.outbox.enqueue(
      kind=KIND_CANCEL_BOOKING,
      connection_id=connection["_id"],
      payload={
        "external_booking_id": booking.external_booking_id,
        "booking_id": booking_id,
        "reason": reason,
      },
      delay=timedelta(0),
    )

  # ------------------------------------------------------------------
  # Cancellations and modifications
  # ------------------------------------------------------------------

  async def _cancel(self, key: str) -> ReconcileResult:
    existing = await self.bookings.get_by_key(key)
    if existing is None:
      return ReconcileResult(Outcome.IGNORED, message="cancellation for unknown booking")
    return await self._cancel_row(existing)

  async def _cancel_row(self, existing: Dict[str, Any]) -> ReconcileResult:
    booking_id = existing["_id"]
    status = existing.get("status")
    if status == ledger.CANCELLED:
      return ReconcileResult(Outcome.DUPLICATE, booking_id=booking_id, booking=existing)
    if status == ledger.REJECTED:
      return ReconcileResult(Outcome.IGNORED, booking_id=booking_id, message="booking was rejected", booking=existing)

    cancelled = await self.bookings.set_status(
      booking_id,
      ledger.CANCELLED,
      from_statuses=[ledger.CONFIRMED, ledger.PENDING],
      extra={"cancelled_at": now_utc()},
    )
    if cancelled is None:
      return ReconcileResult(Outcome.DUPLICATE, booking_id=booking_id)

    # the row may have moved rooms since `existing` was read
    nights = list(cancelled.get("nights") or [])
    await self.bookings.release_nights(booking_id)
    logger.info("Cancelled booking %s, released %s nights", booking_id, len(nights))
    freed = _deltas(cancelled["room_id"], nights, True) if status == ledger.CONFIRMED else []
    return ReconcileResult(Outcome.CANCELLED, booking_id=booking_id, availability=freed, booking=cancelled)

  async def _modify(
    self,
    hotel_id: str,
    connection: Dict[str, Any],
    local_room_id: str,
    booking: ExternalBooking,
    key: str,
  ) -> ReconcileResult:
    existing = await self.bookings.get_by_key(key)
    if existing is None:
      # First sight of a modified booking: treat it as a new confirmation.
      return await self._create(hotel_id, connection, local_room_id, booking, key)

    booking_id = existing["_id"]
    status = existing.get("status")
    if status != ledger.CONFIRMED:
      return ReconcileResult(
        Outcome.IGNORED,
        booking_id=booking_id,
        message=f"modification of {status.lower()} booking",
      )

    old_room = existing["room_id"]
    old_nights = list(existing.get("nights") or [])
    new_nights = night_dates(booking.check_in, booking.check_out)

    claim = await self.bookings.claim_nights(booking_id, local_room_id, new_nights)
    if not claim.ok:
      message = (
        f"modification needs room {local_room_id} on {claim.conflict_date}, "
        f"held by booking {claim.conflicting_booking_id}"
      )
      logger.warning("Booking %s modification conflicted: %s", booking_id, message)
      await self._queue_compensation(connection, booking, booking_id, message)
      return ReconcileResult(
        Outcome.CONFLICTED,
        booking_id=booking_id,
        message=message,
        conflicting_booking_id=claim.conflicting_booking_id,
        conflict_date=claim.conflict_date,
        booking=existing,
      )

    fields = {f: getattr(booking, f) for f in MUTABLE_FIELDS}
    fields.update(
      {
        "room_id": local_room_id,
        "external_room_type_id": booking.external_room_type_id,
        "check_in": booking.check_in.isoformat(),
        "check_out": booking.check_out.isoformat(),
        "nights": new_nights,
        "modified_at": now_utc(),
      }
    )
    updated = await self.bookings.update_fields(booking_id, fields, expect_status=ledger.CONFIRMED)
    if updated is None:
      # cancelled while we were claiming; give back what this call took
      await self.bookings.release_nights(booking_id, local_room_id, claim.claimed)
      current = await self.bookings.get(booking_id)
      logger.info("Booking %s changed status during modification; dropped new claims", booking_id)
      return ReconcileResult(
        Outcome.IGNORED,
        booking_id=booking_id,
        message="booking changed status during modification",
        booking=current,
      )

    if old_room == local_room_id:
      keep = set(new_nights)
      to_release = [n for n in old_nights if n not in keep]
    else:
      to_release = old_nights
    await self.bookings.release_nights(booking_id, old_room, to_release)

    return ReconcileResult(
      Outcome.MODIFIED,
      booking_id=booking_id,
      availability=_deltas(local_room_id, claim.claimed, False) + _deltas(old_room, to_release, True),
      booking=updated,
    )

  # ------------------------------------------------------------------
  # Direct sales
  # ------------------------------------------------------------------

  async def reserve_direct(
    self,
    hotel_id: str,
    room_id: str,
    check_in: date,
    check_out: date,
    *,
    guest_name: str,
    guest_email: Optional[str] = None,
    guest_phone: Optional[str] = None,
    guest_count: int = 1,
    total_amount: float = 0.0,
    currency: Optional[str] = None,
  ) -> ReconcileResult:
    """Sell a room directly through the same room-night guard as channels."""

    if check_out <= check_in:
      raise AppError(422, "invalid_date_range", "check_out must be after check_in")

    booking_id = str(uuid4())
    doc = {
      "_id": booking_id,
      "hotel_id": hotel_id,
      "room_id": room_id,
      "source": DIRECT_SOURCE,
      "connection_id": None,
      "channel_type": None,
      "external_booking_id": None,
      "external_room_type_id": None,
      "idempotency_key": idempotency_key(DIRECT_SOURCE, booking_id),
      "check_in": check_in.isoformat(),
      "check_out": check_out.isoformat(),
      "nights": night_dates(check_in, check_out),
      "guest_name": guest_name,
      "guest_email": guest_email,
      "guest_phone": guest_phone,
      "guest_count": guest_count,
      "total_amount": total_amount,
      "currency": currency,
      "status": ledger.PENDING,
    }
    await self.bookings.insert(doc)
    result = await self._commit(doc, None, None)
    if result.outcome == Outcome.CONFLICTED:
      raise AppError(
        409,
        "room_night_conflict",
        "Room is not available for the requested nights",
        details={
          "room_id": room_id,
          "conflict_date": result.conflict_date,
          "conflicting_booking_id": result.conflicting_booking_id,
        },
      )
    return result

  async def cancel_direct(self, booking_id: str) -> ReconcileResult:
    existing = await self.bookings.get(booking_id)
    if existing is None:
      raise AppError(404, "booking_not_found", "Booking not found", details={"booking_id": booking_id})
    if existing.get("source") != DIRECT_SOURCE:
      raise AppError(
        409,
        "not_direct_booking",
        "Channel bookings are cancelled by their channel",
        details={"booking_id": booking_id, "source": existing.get("source")},
      )
    return await self._cancel_row(existing)

  async def cancel_booking(self, booking_id: str) -> ReconcileResult:
    """Cancel a ledger row whatever its source, e.g. after the channel
    accepted a compensating cancellation."""

    existing = await self.bookings.get(booking_id)
    if existing is None:
      return ReconcileResult(Outcome.IGNORED, booking_id=booking_id, message="unknown booking")
    return await self._cancel_row(existing)

  async def check_availability(self, room_id: str, check_in: date, check_out: date) -> Dict[str, Any]:
    if check_out <= check_in:
      raise AppError(422, "invalid_date_range", "check_out must be after check_in")
    nights = night_dates(check_in, check_out)
    held = await self.bookings.holders(room_id, nights)
    return {
      "room_id": room_id,
      "available": not held,
      "nights": nights,
      "conflicts": [{"date": n, "booking_id": held[n]} for n in nights if n in held],
    }

  @staticmethod
  def _ledger_doc(
    hotel_id: str,
    connection: Dict[str, Any],
    local_room_id: str,
    booking: ExternalBooking,
    key: str,
  ) -> Dict[str, Any]:
    return {
      "_id": str(uuid4()),
      "hotel_id": hotel_id,
      "room_id": local_room_id,
      "source": booking.channel_type,
      "connection_id": connection["_id"],
      "channel_type": booking.channel_type,
      "external_booking_id": booking.external_booking_id,
      "external_room_type_id": booking.external_room_type_id,
      "idempotency_key": key,
      "check_in": booking.check_in.isoformat(),
      "check_out": booking.check_out.isoformat(),
      "nights": night_dates(booking.check_in, booking.check_out),
      "guest_name": booking.guest_name,
      "guest_email": booking.guest_email,
      "guest_phone": booking.guest_phone,
      "guest_count": booking.guest_count,
      "total_amount": booking.total_amount,
      "currency": booking.currency,
      "status": ledger.PENDING,
    }
