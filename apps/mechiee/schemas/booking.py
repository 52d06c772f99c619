"""Booking schemas shared by the dispatcher and the booking routes."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class BookingStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    assigned = "assigned"
    completed = "completed"
    cancelled = "cancelled"
    billed = "billed"


# Statuses in which a garage/mechanic is attached and the booking chat is open.
ESTABLISHED_STATUSES = frozenset(
    {
        BookingStatus.accepted,
        BookingStatus.assigned,
        BookingStatus.completed,
        BookingStatus.billed,
    }
)


class GeoPoint(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)


class BookingDraft(BaseModel):
    """Customer booking submission, validated before anything is persisted.

    Accepts both snake_case and the camelCase keys the booking form posts.
    """

    model_config = ConfigDict(
        str_strip_whitespace=True,
        extra="ignore",
        alias_generator=to_camel,
        validate_by_name=True,
    )

    customer_id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    mobile: str = Field(min_length=1)
    brand: str = Field(min_length=1)
    model: str = Field(min_length=1)
    bike_number: str = Field(min_length=1)
    service_type: str = Field(min_length=1)
    slot: str = Field(min_length=1)
    address: str = Field(min_length=1)
    lat: float = Field(ge=-90, le=90)
    lon: float = Field(ge=-180, le=180)
    description: Optional[str] = None
    scheduled_date: Optional[str] = None

    @property
    def point(self) -> GeoPoint:
        return GeoPoint(lat=self.lat, lon=self.lon)


class BookingRecord(BaseModel):
    id: str
    customer_id: str
    garage_id: Optional[str] = None
    mechanic_id: Optional[str] = None
    status: BookingStatus = BookingStatus.pending
    name: str
    mobile: str
    brand: str
    model: str
    bike_number: str
    service_type: str
    slot: Optional[str] = None
    address: str
    description: Optional[str] = None
    scheduled_date: Optional[str] = None
    lat: Optional[float] = None
    lon: Optional[float] = None
    rejected_by: List[str] = Field(default_factory=list)
    notified_garages: List[str] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime
    accepted_at: Optional[datetime] = None

    @classmethod
    def from_doc(cls, doc: Mapping[str, Any]) -> "BookingRecord":
        out = dict(doc)
        out["id"] = str(out.pop("_id"))
        return cls.model_validate(out)

    @property
    def is_established(self) -> bool:
        return self.status in ESTABLISHED_STATUSES


class DispatchResult(BaseModel):
    booking_id: str
    notified_garage_ids: List[str]
    booking: BookingRecord


class AcceptRequest(BaseModel):
    model_config = ConfigDict(validate_by_name=True)

    mechanic_id: str = Field(min_length=1, alias="mechanicId")


class RejectRequest(BaseModel):
    reason: Optional[str] = None
