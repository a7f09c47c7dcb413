from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional


class ChannelType(str, Enum):
  AGODA = "AGODA"
  BOOKING_COM = "BOOKING_COM"
  EXPEDIA = "EXPEDIA"
  SHARETRIP = "SHARETRIP"
  GOZAYAAN = "GOZAYAAN"


class ConnectionStatus(str, Enum):
  PENDING = "PENDING"
  ACTIVE = "ACTIVE"
  DEGRADED = "DEGRADED"
  INACTIVE = "INACTIVE"


class BookingStatus(str, Enum):
  CONFIRMED = "CONFIRMED"
  CANCELLED = "CANCELLED"
  MODIFIED = "MODIFIED"


class SyncOperation(str, Enum):
  PUSH_INVENTORY = "PUSH_INVENTORY"
  PUSH_RATES = "PUSH_RATES"
  PULL_BOOKINGS = "PULL_BOOKINGS"
  WEBHOOK = "WEBHOOK"
  CANCEL_BOOKING = "CANCEL_BOOKING"
  VALIDATE_CREDENTIALS = "VALIDATE_CREDENTIALS"


class ResultCode(str, Enum):
  OK = "OK"
  AUTH_FAILED = "AUTH_FAILED"
  TIMEOUT = "TIMEOUT"
  PROVIDER_UNAVAILABLE = "PROVIDER_UNAVAILABLE"
  NOT_IMPLEMENTED = "NOT_IMPLEMENTED"
  CONFIG_ERROR = "CONFIG_ERROR"
  UNKNOWN_ERROR = "UNKNOWN_ERROR"


@dataclass
class InventoryUpdate:
  """Availability change for one local room on one night."""

  room_id: str
  date: date
  available: bool
  price: Optional[float] = None

  def to_doc(self) -> Dict[str, Any]:
    return {
      "room_id": self.room_id,
      "date": self.date.isoformat(),
      "available": self.available,
      "price": self.price,
    }

  @classmethod
  def from_doc(cls, doc: Dict[str, Any]) -> "InventoryUpdate":
    return cls(
      room_id=str(doc["room_id"]),
      date=date.fromisoformat(doc["date"]),
      available=bool(doc["available"]),
      price=doc.get("price"),
    )


@dataclass
class RateUpdate:
  room_id: str
  date: date
  price: float
  currency: str
  external_rate_plan_id: Optional[str] = None

  def to_doc(self) -> Dict[str, Any]:
    return {
      "room_id": self.room_id,
      "date": self.date.isoformat(),
      "price": self.price,
      "currency": self.currency,
      "external_rate_plan_id": self.external_rate_plan_id,
    }

  @classmethod
  def from_doc(cls, doc: Dict[str, Any]) -> "RateUpdate":
    return cls(
      room_id=str(doc["room_id"]),
      date=date.fromisoformat(doc["date"]),
      price=float(doc["price"]),
      currency=str(doc["currency"]),
      external_rate_plan_id=doc.get("external_rate_plan_id"),
    )


@dataclass
class ExternalBooking:
  """Adapter-agnostic booking shape produced by every channel adapter.

  Both polled booking lists and webhook deliveries are normalized into this
  object at the adapter boundary; nothing downstream ever sees a provider
  specific status string or field name.
  """

  external_booking_id: str
  channel_type: str
  external_property_id: str
  external_room_type_id: str
  check_in: date
  check_out: date
  guest_name: str
  guest_count: int
  total_amount: float
  currency: str
  status: BookingStatus
  guest_email: Optional[str] = None
  guest_phone: Optional[str] = None
  raw_payload: Dict[str, Any] = field(default_factory=dict)

  def to_doc(self) -> Dict[str, Any]:
    return {
      "external_booking_id": self.external_booking_id,
      "channel_type": self.channel_type,
      "external_property_id": self.external_property_id,
      "external_room_type_id": self.external_room_type_id,
      "check_in": self.check_in.isoformat(),
      "check_out": self.check_out.isoformat(),
      "guest_name": self.guest_name,
      "guest_email": self.guest_email,
      "guest_phone": self.guest_phone,
      "guest_count": self.guest_count,
      "total_amount": self.total_amount,
      "currency": self.currency,
      "status": self.status.value,
      "raw_payload": self.raw_payload,
    }

  @classmethod
  def from_doc(cls, doc: Dict[str, Any]) -> "ExternalBooking":
    return cls(
      external_booking_id=str(doc["external_booking_id"]),
      channel_type=str(doc["channel_type"]),
      external_property_id=str(doc["external_property_id"]),
      external_room_type_id=str(doc["external_room_type_id"]),
      check_in=date.fromisoformat(doc["check_in"]),
      check_out=date.fromisoformat(doc["check_out"]),
      guest_name=str(doc.get("guest_name") or "Guest"),
      guest_email=doc.get("guest_email"),
      guest_phone=doc.get("guest_phone"),
      guest_count=int(doc.get("guest_count") or 1),
      total_amount=float(doc.get("total_amount") or 0),
      currency=str(doc.get("currency") or ""),
      status=BookingStatus(doc["status"]),
      raw_payload=doc.get("raw_payload") or {},
    )


@dataclass
class SyncResult:
  """Outcome of a single push/cancel call against a provider.

  Adapters only report what the remote side claims to have changed; they
  never write local sync state themselves.
  """

  success: bool
  operation: SyncOperation
  affected_rooms: List[str] = field(default_factory=list)
  error_message: Optional[str] = None
  raw_response: Optional[Dict[str, Any]] = None
  code: str = ResultCode.OK.value


@dataclass
class PullResult:
  success: bool
  bookings: List[ExternalBooking] = field(default_factory=list)
  error_message: Optional[str] = None
  raw_response: Optional[Dict[str, Any]] = None
  code: str = ResultCode.OK.value


@dataclass
class CredentialCheck:
  valid: bool
  external_property_id: Optional[str] = None
  error_message: Optional[str] = None
  code: str = ResultCode.OK.value
