from __future__ import annotations

import datetime as dt
from typing import Any, Optional

from pydantic import BaseModel, EmailStr, Field, model_validator

from channel_hub.services.channels.types import InventoryUpdate, RateUpdate


# ---- Connections ----


class ConnectionCreateRequest(BaseModel):
    hotel_id: str = Field(min_length=1, max_length=128)
    channel_type: str = Field(min_length=2, max_length=32)
    api_credentials: dict[str, Any] = Field(default_factory=dict)


# ---- Room mappings ----


class RoomMappingItem(BaseModel):
    local_room_id: str = Field(min_length=1, max_length=128)
    external_room_type_id: str = Field(min_length=1, max_length=128)
    external_rate_plan_id: Optional[str] = Field(default=None, max_length=128)


class RoomMappingsReplaceRequest(BaseModel):
    mappings: list[RoomMappingItem] = Field(default_factory=list)


# ---- Inventory / rates ----


class InventoryUpdateIn(BaseModel):
    room_id: str = Field(min_length=1)
    date: dt.date
    available: bool
    price: Optional[float] = Field(default=None, ge=0)

    def to_update(self) -> InventoryUpdate:
        return InventoryUpdate(room_id=self.room_id, date=self.date, available=self.available, price=self.price)


class RateUpdateIn(BaseModel):
    room_id: str = Field(min_length=1)
    date: dt.date
    price: float = Field(ge=0)
    currency: str = Field(min_length=3, max_length=3)
    external_rate_plan_id: Optional[str] = None

    def to_update(self) -> RateUpdate:
        return RateUpdate(
            room_id=self.room_id,
            date=self.date,
            price=self.price,
            currency=self.currency.upper(),
            external_rate_plan_id=self.external_rate_plan_id,
        )


class InventoryPushRequest(BaseModel):
    updates: list[InventoryUpdateIn] = Field(min_length=1)


class RatePushRequest(BaseModel):
    updates: list[RateUpdateIn] = Field(min_length=1)


class ConnectionSyncRequest(BaseModel):
    """Night range [start, end) whose availability is pushed again."""

    start: dt.date
    end: dt.date

    @model_validator(mode="after")
    def _check_range(self) -> "ConnectionSyncRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


# ---- Direct bookings ----


class _StayRange(BaseModel):
    room_id: str = Field(min_length=1)
    check_in: dt.date
    check_out: dt.date

    @model_validator(mode="after")
    def _check_range(self) -> "_StayRange":
        if self.check_out <= self.check_in:
            raise ValueError("check_out must be after check_in")
        return self


class AvailabilityRequest(_StayRange):
    pass


class DirectBookingRequest(_StayRange):
    hotel_id: str = Field(min_length=1)
    guest_name: str = Field(min_length=1, max_length=200)
    guest_email: Optional[EmailStr] = None
    guest_phone: Optional[str] = Field(default=None, max_length=40)
    guest_count: int = Field(default=1, ge=1, le=20)
    total_amount: float = Field(default=0.0, ge=0)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
