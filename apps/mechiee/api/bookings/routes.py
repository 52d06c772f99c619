from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends, status

from mechiee.api.dependencies import require_role
from mechiee.core.dependencies import get_dispatcher
from mechiee.schemas.booking import AcceptRequest, RejectRequest
from mechiee.schemas.chat import Caller, UserRole
from mechiee.services.dispatch import BookingDispatcher

router = APIRouter(prefix="/api/bookings", tags=["bookings"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_booking(
    payload: dict[str, Any] = Body(...),
    caller: Caller = Depends(require_role(UserRole.customer)),
    dispatcher: BookingDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    draft = {**payload, "customer_id": caller.user_id}
    draft.pop("customerId", None)
    result = await dispatcher.create_and_dispatch(draft)
    return {
        "message": "Booking request sent to nearby garages.",
        "bookingId": result.booking_id,
        "notifiedGarageIds": result.notified_garage_ids,
        "booking": result.booking.model_dump(mode="json"),
    }


@router.get("/pending")
async def pending_bookings(
    caller: Caller = Depends(require_role(UserRole.garage)),
    dispatcher: BookingDispatcher = Depends(get_dispatcher),
) -> list[dict[str, Any]]:
    bookings = await dispatcher.pending_for_garage(caller.user_id)
    return [b.model_dump(mode="json") for b in bookings]


@router.post("/{booking_id}/accept")
async def accept_booking(
    booking_id: str,
    payload: AcceptRequest,
    caller: Caller = Depends(require_role(UserRole.garage)),
    dispatcher: BookingDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    booking = await dispatcher.accept(booking_id, caller.user_id, payload.mechanic_id)
    return {"success": True, "booking": booking.model_dump(mode="json")}


@router.post("/{booking_id}/reject")
async def reject_booking(
    booking_id: str,
    payload: RejectRequest | None = None,
    caller: Caller = Depends(require_role(UserRole.garage)),
    dispatcher: BookingDispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    reason = payload.reason if payload else None
    booking = await dispatcher.reject(booking_id, caller.user_id, reason)
    return {"success": True, "booking": booking.model_dump(mode="json")}
