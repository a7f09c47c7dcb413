from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Sequence

import httpx

from channel_hub.config import AGODA_API_BASE, AGODA_DEFAULT_CURRENCY, AGODA_TIMEOUT_SECONDS
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
from channel_hub.utils import parse_iso_date

logger = logging.getLogger(__name__)


@dataclass
class _CallOutcome:
  ok: bool
  code: str
  status_code: Optional[int]
  payload: Dict[str, Any]
  message: str
  latency_ms: int


class AgodaChannelProvider(BaseChannelProvider):
  """Agoda YCS adapter.

  Credentials (stored opaque on the connection):
    - api_key (required)
    - property_id (required for validation; becomes external_property_id)
    - base_url (optional override of AGODA_API_BASE, e.g. production)

  Endpoints used: GetProduct (credential check), SetAriV2 (availability and
  rates), GetBookingList (polling) and CancelBooking (compensation).
  """

  channel_type = ChannelType.AGODA.value

  status_map = {
    "CONFIRMED": BookingStatus.CONFIRMED,
    "NEW": BookingStatus.CONFIRMED,
    "PENDING": BookingStatus.CONFIRMED,
    "BOOKED": BookingStatus.CONFIRMED,
    "CANCELLED": BookingStatus.CANCELLED,
    "CANCELED": BookingStatus.CANCELLED,
    "MODIFIED": BookingStatus.MODIFIED,
    "AMENDED": BookingStatus.MODIFIED,
  }

  def __init__(self, *, base_url: Optional[str] = None, timeout_s: Optional[float] = None) -> None:
    self._base_url = base_url or AGODA_API_BASE
    self._timeout_s = timeout_s if timeout_s is not None else AGODA_TIMEOUT_SECONDS

  def _get_base_url(self, credentials: Dict[str, Any]) -> str:
    base_url = (isinstance(credentials, dict) and credentials.get("base_url")) or self._base_url
    return str(base_url).strip().rstrip("/")

  def _get_api_key(self, credentials: Dict[str, Any]) -> str:
    api_key = (isinstance(credentials, dict) and credentials.get("api_key")) or ""
    return str(api_key).strip()

  async def _post(self, credentials: Dict[str, Any], path: str, body: Dict[str, Any]) -> _CallOutcome:
    url = f"{self._get_base_url(credentials)}/{path}"
    headers = {
      "Accept": "application/json",
      "Content-Type": "application/json",
      "User-Agent": "ChannelHub/1.0",
      "Authorization": f"Bearer {self._get_api_key(credentials)}",
    }

    started = time.perf_counter()
    try:
      async with httpx.AsyncClient(timeout=httpx.Timeout(self._timeout_s)) as client:
        resp = await client.post(url, headers=headers, json=body)
    except httpx.TimeoutException:
      latency_ms = int((time.perf_counter() - started) * 1000)
      logger.warning("Agoda %s timed out after %sms", path, latency_ms)
      return _CallOutcome(False, ResultCode.TIMEOUT.value, None, {}, f"Agoda {path} timed out", latency_ms)
    except httpx.RequestError as e:
      latency_ms = int((time.perf_counter() - started) * 1000)
      logger.warning("Agoda %s request error: %s", path, e)
      return _CallOutcome(
        False,
        ResultCode.PROVIDER_UNAVAILABLE.value,
        None,
        {},
        f"Agoda unreachable: {str(e) or 'request error'}",
        latency_ms,
      )

    latency_ms = int((time.perf_counter() - started) * 1000)
    status = resp.status_code
    try:
      payload = resp.json()
    except ValueError:
      payload = {"raw": resp.text}
    if not isinstance(payload, dict):
      payload = {"data": payload}

    if 200 <= status <= 299:
      return _CallOutcome(True, ResultCode.OK.value, status, payload, "", latency_ms)

    message = payload.get("message") or f"API error: {status}"
    if status in (401, 403):
      code = ResultCode.AUTH_FAILED.value
    elif status == 429 or 500 <= status <= 599:
      code = ResultCode.PROVIDER_UNAVAILABLE.value
    else:
      code = ResultCode.UNKNOWN_ERROR.value
    logger.warning("Agoda %s failed with HTTP %s (%s)", path, status, code)
    return _CallOutcome(False, code, status, payload, str(message), latency_ms)

  async def validate_credentials(self, credentials: Dict[str, Any]) -> CredentialCheck:
    api_key = self._get_api_key(credentials)
    property_id = str((credentials or {}).get("property_id") or "").strip()
    if not api_key or not property_id:
      return CredentialCheck(
        valid=False,
        error_message="API key and property id are required",
        code=ResultCode.AUTH_FAILED.value,
      )

    outcome = await self._post(credentials, "GetProduct", {"propertyId": property_id})
    if outcome.ok:
      return CredentialCheck(valid=True, external_property_id=property_id)
    return CredentialCheck(
      valid=False,
      error_message=outcome.message or f"Validation failed with status {outcome.status_code}",
      code=outcome.code,
    )

  def _missing_credentials(self, connection: Dict[str, Any], operation: SyncOperation) -> Optional[SyncResult]:
    if not self._get_api_key(connection.get("api_credentials") or {}):
      return SyncResult(
        success=False,
        operation=operation,
        error_message="Missing API credentials",
        code=ResultCode.AUTH_FAILED.value,
      )
    return None

  async def push_inventory(
    self,
    connection: Dict[str, Any],
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[InventoryUpdate],
  ) -> SyncResult:
    missing = self._missing_credentials(connection, SyncOperation.PUSH_INVENTORY)
    if missing is not None:
      return missing

    grouped = self.group_by_room_type(room_mappings, updates)
    ari_updates = [
      {
        "roomTypeId": room_type_id,
        "dateRanges": [
          {
            "date": u.date.isoformat(),
            "availability": 1 if u.available else 0,
            "price": u.price,
          }
          for u in room_updates
        ],
      }
      for room_type_id, room_updates in grouped.items()
    ]
    body = {"propertyId": connection.get("external_property_id"), "ariUpdates": ari_updates}

    outcome = await self._post(connection.get("api_credentials") or {}, "SetAriV2", body)
    return self._to_sync_result(SyncOperation.PUSH_INVENTORY, outcome, grouped)

  async def push_rates(
    self,
    connection: Dict[str, Any],
    room_mappings: Sequence[Dict[str, Any]],
    updates: Sequence[RateUpdate],
  ) -> SyncResult:
    missing = self._missing_credentials(connection, SyncOperation.PUSH_RATES)
    if missing is not None:
      return missing

    grouped = self.group_by_room_type(room_mappings, updates)
    rate_updates = [
      {
        "roomTypeId": room_type_id,
        "rates": [
          {
            "date": u.date.isoformat(),
            "price": u.price,
            "currency": u.currency or AGODA_DEFAULT_CURRENCY,
            "ratePlanId": u.external_rate_plan_id,
          }
          for u in room_updates
        ],
      }
      for room_type_id, room_updates in grouped.items()
    ]
    body = {"propertyId": connection.get("external_property_id"), "rateUpdates": rate_updates}

    outcome = await self._post(connection.get("api_credentials") or {}, "SetAriV2", body)
    return self._to_sync_result(SyncOperation.PUSH_RATES, outcome, grouped)

  def _to_sync_result(self, operation: SyncOperation, outcome: _CallOutcome, grouped: Dict[str, list]) -> SyncResult:
    if not outcome.ok:
      return SyncResult(
        success=False,
        operation=operation,
        error_message=outcome.message,
        raw_response=outcome.payload or None,
        code=outcome.code,
      )

    affected: list[str] = []
    for room_updates in grouped.values():
      for u in room_updates:
        if u.room_id not in affected:
          affected.append(u.room_id)
    return SyncResult(
      success=True,
      operation=operation,
      affected_rooms=affected,
      raw_response=outcome.payload,
    )

  async def pull_bookings(self, connection: Dict[str, Any], since: datetime) -> PullResult:
    credentials = connection.get("api_credentials") or {}
    if not self._get_api_key(credentials):
      return PullResult(success=False, error_message="Missing API credentials", code=ResultCode.AUTH_FAILED.value)

    body = {
      "propertyId": connection.get("external_property_id"),
      "modifiedSince": since.isoformat(),
    }
    outcome = await self._post(credentials, "GetBookingList", body)
    if not outcome.ok:
      return PullResult(
        success=False,
        error_message=outcome.message,
        raw_response=outcome.payload or None,
        code=outcome.code,
      )

    bookings: list[ExternalBooking] = []
    for item in outcome.payload.get("bookings") or []:
      if not isinstance(item, dict):
        continue
      parsed = self._parse_booking(item, fallback_property_id=connection.get("external_property_id"))
      if parsed is None:
        logger.warning("Skipping unparseable Agoda booking %s", item.get("bookingId"))
        continue
      bookings.append(parsed)

    return PullResult(
      success=True,
      bookings=bookings,
      raw_response={"count": len(outcome.payload.get("bookings") or [])},
    )

  def parse_webhook(self, payload: Any) -> Optional[ExternalBooking]:
    if not isinstance(payload, dict):
      return None
    if not payload.get("bookingId") or not payload.get("propertyId"):
      return None
    return self._parse_booking(payload)

  def _parse_booking(
    self,
    data: Dict[str, Any],
    *,
    fallback_property_id: Optional[str] = None,
  ) -> Optional[ExternalBooking]:
    status = self.map_status(data.get("status") or "CONFIRMED")
    property_id = data.get("propertyId") or fallback_property_id
    if status is None or not data.get("bookingId") or not property_id or not data.get("roomTypeId"):
      return None

    try:
      check_in = parse_iso_date(data.get("checkInDate"))
      check_out = parse_iso_date(data.get("checkOutDate"))
      guest_count = int(data.get("numberOfGuests") or 1)
      total_amount = float(data.get("totalAmount") or 0)
    except (TypeError, ValueError):
      return None
    if check_out <= check_in:
      return None

    return ExternalBooking(
      external_booking_id=str(data["bookingId"]),
      channel_type=self.channel_type,
      external_property_id=str(property_id),
      external_room_type_id=str(data["roomTypeId"]),
      check_in=check_in,
      check_out=check_out,
      guest_name=str(data.get("guestName") or "Guest"),
      guest_email=str(data["guestEmail"]) if data.get("guestEmail") else None,
      guest_phone=str(data["guestPhone"]) if data.get("guestPhone") else None,
      guest_count=guest_count,
      total_amount=total_amount,
      currency=str(data.get("currency") or AGODA_DEFAULT_CURRENCY),
      status=status,
      raw_payload=dict(data),
    )

  async def cancel_booking(
    self,
    connection: Dict[str, Any],
    external_booking_id: str,
    reason: str,
  ) -> SyncResult:
    missing = self._missing_credentials(connection, SyncOperation.CANCEL_BOOKING)
    if missing is not None:
      return missing

    body = {
      "propertyId": connection.get("external_property_id"),
      "bookingId": external_booking_id,
      "reason": reason,
    }
    outcome = await self._post(connection.get("api_credentials") or {}, "CancelBooking", body)
    if outcome.ok:
      return SyncResult(success=True, operation=SyncOperation.CANCEL_BOOKING, raw_response=outcome.payload)
    return SyncResult(
      success=False,
      operation=SyncOperation.CANCEL_BOOKING,
      error_message=outcome.message,
      raw_response=outcome.payload or None,
      code=outcome.code,
    )
