from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

from channel_hub.services.channels.providers.base import BaseChannelProvider
from channel_hub.services.channels.types import (
  BookingStatus,
  ChannelType,
  CredentialCheck,
  ExternalBooking,
  InventoryUpdate,
  PullResult,
  RateUpdate,
  ResultCode,
  SyncOperation,
  SyncResult,
)

logger = logging.getLogger(__name__)


class NotImplementedChannelProvider(BaseChannelProvider):
  """Typed placeholder for channels still waiting on partner certification.

  Every call reports NOT_IMPLEMENTED so connections can be created, logged
  and shown to partners without pretending that a sync happened.
  """

  display_name = "Channel"
  onboarding_hint = ""

  def _not_implemented(self, operation: SyncOperation) -> SyncResult:
    return SyncResult(
      success=False,
      operation=operation,
      error_message=f"{self.display_name} adapter not yet implemented",
      code=ResultCode.NOT_IMPLEMENTED.value,
    )

  async def validate_credentials(self, credentials: Dict[str, Any]) -> CredentialCheck:
    return CredentialCheck(
      valid=False,
      error_message=f"{self.display_name} integration requires partner approval. {self.onboarding_hint}".strip(),
      code=ResultCode.NOT_IMPLEMENTED.value,
    )

  async def push_inventory(
    self,
    connection: Dict[str, Any],
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[InventoryUpdate],
  ) -> SyncResult:
    return self._not_implemented(SyncOperation.PUSH_INVENTORY)

  async def push_rates(
    self,
    connection: Dict[str, Any],
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[RateUpdate],
  ) -> SyncResult:
    return self._not_implemented(SyncOperation.PUSH_RATES)

  async def pull_bookings(self, connection: Dict[str, Any], since: datetime) -> PullResult:
    logger.warning("%s adapter not yet implemented", self.display_name)
    return PullResult(
      success=False,
      error_message=f"{self.display_name} adapter not yet implemented",
      code=ResultCode.NOT_IMPLEMENTED.value,
    )

  def parse_webhook(self, payload: Any) -> Optional[ExternalBooking]:
    logger.warning("%s webhook parsing not yet implemented", self.display_name)
    return None

  async def cancel_booking(
    self,
    connection: Dict[str, Any],
    external_booking_id: str,
    reason: str,
  ) -> SyncResult:
    return self._not_implemented(SyncOperation.CANCEL_BOOKING)


class BookingComChannelProvider(NotImplementedChannelProvider):
  # OTA XML (OpenTravel 2003B) over supply-xml.booking.com once certified.
  channel_type = ChannelType.BOOKING_COM.value
  display_name = "Booking.com"
  onboarding_hint = "Please apply at https://connect.booking.com/"
  status_map = {
    "BOOKED": BookingStatus.CONFIRMED,
    "NEW": BookingStatus.CONFIRMED,
    "MODIFIED": BookingStatus.MODIFIED,
    "CANCELLED": BookingStatus.CANCELLED,
  }


class ExpediaChannelProvider(NotImplementedChannelProvider):
  channel_type = ChannelType.EXPEDIA.value
  display_name = "Expedia"
  onboarding_hint = "Please apply at https://developers.expediagroup.com/"
  status_map = {
    "BOOKED": BookingStatus.CONFIRMED,
    "PENDING": BookingStatus.CONFIRMED,
    "MODIFIED": BookingStatus.MODIFIED,
    "CANCELED": BookingStatus.CANCELLED,
    "CANCELLED": BookingStatus.CANCELLED,
  }


class ShareTripChannelProvider(NotImplementedChannelProvider):
  channel_type = ChannelType.SHARETRIP.value
  display_name = "ShareTrip"
  status_map = {
    "CONFIRMED": BookingStatus.CONFIRMED,
    "UPDATED": BookingStatus.MODIFIED,
    "CANCELLED": BookingStatus.CANCELLED,
  }


class GoZayaanChannelProvider(NotImplementedChannelProvider):
  channel_type = ChannelType.GOZAYAAN.value
  display_name = "GoZayaan"
  status_map = {
    "CONFIRMED": BookingStatus.CONFIRMED,
    "ISSUED": BookingStatus.CONFIRMED,
    "AMENDED": BookingStatus.MODIFIED,
    "VOID": BookingStatus.CANCELLED,
    "CANCELLED": BookingStatus.CANCELLED,
  }
