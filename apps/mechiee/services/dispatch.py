"""Booking dispatch: fan a new booking out to nearby garages and settle the race.

`accept` is the only code path that attaches a garage and mechanic to a
booking. It is a single conditional ``find_one_and_update`` keyed on
``status == "pending"``, so of N concurrent accepts exactly one matches.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Mapping

from pydantic import ValidationError as PydanticValidationError
from pymongo import DESCENDING, ReturnDocument

from mechiee.core.exceptions import (
    AlreadyResolvedError,
    NoCoverageError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mechiee.db.memory import new_id
from mechiee.db.mongo import Collections
from mechiee.schemas.booking import BookingDraft, BookingRecord, BookingStatus, DispatchResult
from mechiee.schemas.chat import RoomId, RoomKind, UserRole
from mechiee.schemas.notification import NotificationEvent
from mechiee.services.directory import Directory
from mechiee.services.geo import coordinates_of, estimate_eta_minutes, nearby
from mechiee.services.notifier import Notifier
from mechiee.services.presence import PresenceHub
from mechiee.services.rooms import RoomRegistry

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def offer_payload(booking: BookingRecord) -> dict[str, Any]:
    """Body of the `newBookingRequest` event shown on garage dashboards."""
    return {
        "bookingId": booking.id,
        "customerId": booking.customer_id,
        "customerName": booking.name,
        "brand": booking.brand,
        "model": booking.model,
        "bikeNumber": booking.bike_number,
        "serviceType": booking.service_type,
        "scheduledDate": booking.scheduled_date,
        "slot": booking.slot,
        "address": booking.address,
        "description": booking.description,
        "location": {"lat": booking.lat, "lon": booking.lon},
    }


@dataclass
class BookingDispatcher:
    database: Any
    presence: PresenceHub
    notifier: Notifier
    registry: RoomRegistry
    directory: Directory
    radius_km: float = 5.0

    def __post_init__(self) -> None:
        self._bookings = self.database.get_collection(Collections.BOOKINGS)

    async def create_and_dispatch(self, draft: BookingDraft | Mapping[str, Any]) -> DispatchResult:
        """Persist a pending booking and offer it to every garage in range.

        Nothing is written when the draft is invalid or no garage is in range.
        """
        if not isinstance(draft, BookingDraft):
            try:
                draft = BookingDraft.model_validate(draft)
            except PydanticValidationError as exc:
                raise ValidationError(
                    "Missing required fields", details=exc.errors(include_url=False)
                ) from exc

        garages = await self.directory.list_garages()
        matches = nearby(draft.point, garages, self.radius_km)
        if not matches:
            raise NoCoverageError(f"No garages found within {self.radius_km:g} km.")

        notified = [str(garage["_id"]) for garage, _ in matches]
        now = _now()
        doc = draft.model_dump()
        doc.update(
            {
                "_id": new_id(),
                "status": BookingStatus.pending.value,
                "garage_id": None,
                "mechanic_id": None,
                "rejected_by": [],
                "notified_garages": notified,
                "created_at": now,
                "updated_at": now,
            }
        )
        await self._bookings.insert_one(doc)
        booking = BookingRecord.from_doc(doc)
        logger.info("Booking %s dispatched to %d garage(s)", booking.id, len(notified))

        # Messaging works before acceptance, so the room exists from the start.
        await self.registry.ensure_booking_room(booking)

        offer = offer_payload(booking)
        for garage, distance in matches:
            garage_id = str(garage["_id"])
            await self.presence.send_to_user(
                garage_id,
                "newBookingRequest",
                {**offer, "distanceKm": round(distance, 2), "etaMinutes": estimate_eta_minutes(distance)},
            )
            await self.notifier.notify(
                NotificationEvent(
                    type="booking:new",
                    message=f"New booking request from {booking.name}",
                    payload={
                        "bookingId": booking.id,
                        "customerName": booking.name,
                        "serviceType": booking.service_type,
                        "scheduledDate": booking.scheduled_date,
                        "slot": booking.slot,
                    },
                    user_id=garage_id,
                )
            )
        await self.presence.send_to_role(UserRole.garage.value, "newBookingRequest", offer)

        await self.notifier.notify(
            NotificationEvent(
                type="booking:created",
                message="Your booking request has been sent to nearby garages.",
                payload={"bookingId": booking.id},
                user_id=booking.customer_id,
            )
        )
        await self.notifier.notify(
            NotificationEvent(
                type="booking:created",
                message=f"A new booking was created by {booking.name}",
                payload={"bookingId": booking.id, "customerName": booking.name},
                role=UserRole.admin,
            )
        )
        return DispatchResult(booking_id=booking.id, notified_garage_ids=notified, booking=booking)

    async def accept(self, booking_id: str, garage_id: str, mechanic_id: str) -> BookingRecord:
        """Claim a pending booking for a garage and assign its mechanic.

        Raises `AlreadyResolvedError` when the booking is no longer pending,
        whether another garage won, it was cancelled, or it never existed.
        """
        if not booking_id or not mechanic_id:
            raise ValidationError("Booking ID and Mechanic ID are required")
        garage = await self.directory.garage(garage_id)
        if garage is None:
            raise NotFoundError("Garage not found", details={"garageId": garage_id})
        mechanic = await self.directory.mechanic(mechanic_id)
        if mechanic is None:
            raise NotFoundError("Mechanic not found", details={"mechanicId": mechanic_id})
        if mechanic.get("garage_id") and mechanic["garage_id"] != garage_id:
            raise ValidationError("Mechanic does not belong to this garage")

        now = _now()
        doc = await self._bookings.find_one_and_update(
            {"_id": booking_id, "status": BookingStatus.pending.value, "rejected_by": {"$ne": garage_id}},
            {
                "$set": {
                    "status": BookingStatus.accepted.value,
                    "garage_id": garage_id,
                    "mechanic_id": mechanic_id,
                    "accepted_at": now,
                    "updated_at": now,
                }
            },
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            current = await self._bookings.find_one({"_id": booking_id})
            if current is not None and current.get("status") == BookingStatus.pending.value:
                raise PermissionDeniedError("You already rejected this booking")
            logger.info("Accept of booking %s by garage %s lost the race", booking_id, garage_id)
            raise AlreadyResolvedError(
                "This booking was just taken by another garage.",
                details={"bookingId": booking_id, "status": current.get("status") if current else None},
            )

        booking = BookingRecord.from_doc(doc)
        garage_name = await self.directory.garage_name(garage_id, garage)
        logger.info("Booking %s accepted by garage %s", booking.id, garage_id)

        await self.presence.send_to_role(
            UserRole.garage.value,
            "bookingAccepted",
            {
                "bookingId": booking.id,
                "acceptedBy": garage_id,
                "garageName": garage_name,
                "mechanicId": mechanic_id,
            },
        )

        room = RoomId(kind=RoomKind.booking, target_id=booking.id)
        await self.registry.resync_participants(room)
        await self.presence.send_to_room(
            room.channel,
            "bookingAccepted",
            {
                "bookingId": booking.id,
                "garageId": garage_id,
                "mechanicId": mechanic_id,
                "roomId": str(room),
            },
        )

        payload = {"bookingId": booking.id, "garageName": garage_name}
        await self.notifier.notify(
            NotificationEvent(
                type="booking:accepted",
                message=f"Your booking was accepted by {garage_name}",
                payload=payload,
                user_id=booking.customer_id,
            )
        )
        await self.notifier.notify(
            NotificationEvent(
                type="booking:assigned",
                message="You have been assigned a new job.",
                payload=payload,
                user_id=mechanic_id,
            )
        )
        await self.notifier.notify(
            NotificationEvent(
                type="booking:accepted",
                message=f"You accepted booking {booking.id}",
                payload={"bookingId": booking.id},
                user_id=garage_id,
            )
        )
        await self.notifier.notify(
            NotificationEvent(
                type="booking:accepted",
                message=f"Booking {booking.id} was accepted by {garage_name}",
                payload=payload,
                role=UserRole.admin,
            )
        )
        return booking

    async def reject(self, booking_id: str, garage_id: str, reason: str | None = None) -> BookingRecord:
        """Record that a garage declined a pending booking. Status is untouched."""
        garage = await self.directory.garage(garage_id)
        if garage is None:
            raise NotFoundError("Garage not found", details={"garageId": garage_id})

        doc = await self._bookings.find_one_and_update(
            {"_id": booking_id, "status": BookingStatus.pending.value},
            {"$addToSet": {"rejected_by": garage_id}, "$set": {"updated_at": _now()}},
            return_document=ReturnDocument.AFTER,
        )
        if doc is None:
            if await self._bookings.find_one({"_id": booking_id}) is None:
                raise NotFoundError("Booking not found", details={"bookingId": booking_id})
            raise AlreadyResolvedError(
                "This booking is no longer pending.", details={"bookingId": booking_id}
            )

        booking = BookingRecord.from_doc(doc)
        garage_name = await self.directory.garage_name(garage_id, garage)
        logger.info("Booking %s rejected by garage %s", booking.id, garage_id)

        await self.notifier.notify(
            NotificationEvent(
                type="booking:rejected",
                message=f"Your booking was rejected by {garage_name}",
                payload={"bookingId": booking.id, "garageName": garage_name, "reason": reason},
                user_id=booking.customer_id,
            )
        )
        await self.presence.send_to_role(
            UserRole.garage.value,
            "bookingRejected",
            {
                "bookingId": booking.id,
                "rejectedBy": garage_id,
                "garageName": garage_name,
                "reason": reason,
            },
        )
        return booking

    async def pending_for_garage(self, garage_id: str) -> list[BookingRecord]:
        """Pending bookings in range of a garage that it has not declined, newest first."""
        garage = await self.directory.garage(garage_id)
        if garage is None:
            raise NotFoundError("Garage not found", details={"garageId": garage_id})
        if coordinates_of(garage) is None:
            raise ValidationError("Garage location not set")

        docs = (
            await self._bookings.find(
                {"status": BookingStatus.pending.value, "rejected_by": {"$ne": garage_id}}
            )
            .sort([("created_at", DESCENDING)])
            .to_list(None)
        )
        return [BookingRecord.from_doc(d) for d, _ in nearby(garage, docs, self.radius_km)]
