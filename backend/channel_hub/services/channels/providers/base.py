from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, TypeVar

from channel_hub.services.channels.types import (
  BookingStatus,
  CredentialCheck,
  ExternalBooking,
  InventoryUpdate,
  PullResult,
  RateUpdate,
  SyncResult,
)

_U = TypeVar("_U", InventoryUpdate, RateUpdate)


class BaseChannelProvider(ABC):
  """Base interface for OTA channel adapters (Agoda, Booking.com, ...).

  Each implementation encapsulates one provider's authentication, wire format
  and status vocabulary. Implementations must *not* raise for expected
  validation failures or transport faults: every method returns a result
  object carrying success/failure plus a stable code (AUTH_FAILED, TIMEOUT,
  PROVIDER_UNAVAILABLE, NOT_IMPLEMENTED, CONFIG_ERROR, UNKNOWN_ERROR).
  """

  channel_type: str = "BASE"

  # Provider status string (upper-cased) -> canonical status.
  status_map: Dict[str, BookingStatus] = {}

  @abstractmethod
  async def validate_credentials(self, credentials: Dict[str, Any]) -> CredentialCheck:
    """Validate credentials with a cheap authenticated provider call."""

    raise NotImplementedError

  @abstractmethod
  async def push_inventory(
    self,
    connection: Dict[str, Any],
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[InventoryUpdate],
  ) -> SyncResult:
    raise NotImplementedError

  @abstractmethod
  async def push_rates(
    self,
    connection: Dict[str, Any],
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[RateUpdate],
  ) -> SyncResult:
    raise NotImplementedError

  @abstractmethod
  async def pull_bookings(self, connection: Dict[str, Any], since: datetime) -> PullResult:
    """Poll bookings created/modified since `since`.

    Must be safe to call with overlapping windows; callers de-duplicate by
    external booking id.
    """

    raise NotImplementedError

  @abstractmethod
  def parse_webhook(self, payload: Any) -> Optional[ExternalBooking]:
    """Translate a webhook payload; None for malformed/irrelevant payloads."""

    raise NotImplementedError

  @abstractmethod
  async def cancel_booking(
    self,
    connection: Dict[str, Any],
    external_booking_id: str,
    reason: str,
  ) -> SyncResult:
    raise NotImplementedError

  def map_status(self, raw: Any) -> Optional[BookingStatus]:
    if raw is None:
      return None
    return self.status_map.get(str(raw).strip().upper())

  @staticmethod
  def group_by_room_type(
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[_U],
  ) -> Dict[str, List[_U]]:
    """Group updates under their external room type.

    One provider call per room type covering many dates is far cheaper than
    a call per date. Updates for rooms without a mapping are dropped.
    """

    by_room = {m["local_room_id"]: m["external_room_type_id"] for m in room_mappings}
    grouped: Dict[str, List[_U]] = {}
    for u in updates:
      room_type_id = by_room.get(u.room_id)
      if room_type_id is None:
        continue
      grouped.setdefault(room_type_id, []).append(u)
    return grouped
