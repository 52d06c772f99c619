from __future__ import annotations

import asyncio

import pytest
from mechiee.core.exceptions import (
    DuplicateTicketError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from mechiee.db.mongo import Collections
from mechiee.schemas.chat import Caller, RoomKind, SupportStatus, TicketCreate, TicketUpdate

CUSTOMER = Caller(user_id="c-1", role="customer")
OTHER_CUSTOMER = Caller(user_id="c-2", role="customer")
GARAGE = Caller(user_id="g-1", role="garage")
OTHER_GARAGE = Caller(user_id="g-2", role="garage")
MECHANIC = Caller(user_id="m-1", role="mechanic")
ADMIN = Caller(user_id="a-1", role="admin")


async def _accepted_booking(seed, booking_id: str = "b-acc") -> dict:
    return await seed.booking(
        booking_id, "c-1", status="accepted", garage_id="g-1", mechanic_id="m-1"
    )


@pytest.mark.asyncio
async def test_concurrent_first_resolves_converge_on_one_session(graph, seed) -> None:
    await seed.booking("b1", "c-1")

    rooms = await asyncio.gather(*(graph.registry.resolve("support_b1") for _ in range(8)))

    assert len({r.session.id for r in rooms}) == 1
    sessions = graph.database.get_collection(Collections.CHAT_SESSIONS)
    assert await sessions.count_documents({"booking_id": "b1"}) == 1


@pytest.mark.asyncio
async def test_resolve_returns_tag_for_current_booking_status(graph, seed) -> None:
    await seed.booking("b1", "c-1")
    await _accepted_booking(seed, "b2")

    pending = await graph.registry.resolve("booking_b1")
    accepted = await graph.registry.resolve("support_b2")

    assert (pending.room_id, pending.kind) == ("support_b1", RoomKind.support)
    assert (accepted.room_id, accepted.kind) == ("booking_b2", RoomKind.booking)
    # Both tags of one booking share a delivery channel.
    assert pending.channel == "booking_b1"
    assert accepted.session.is_admin_chat is False
    assert accepted.session.participants.garage_id == "g-1"


@pytest.mark.asyncio
async def test_resolve_rejects_bad_tags_and_unknown_bookings(graph) -> None:
    with pytest.raises(ValidationError):
        await graph.registry.resolve("lobby_42")
    with pytest.raises(ValidationError):
        await graph.registry.resolve("booking_")
    with pytest.raises(NotFoundError):
        await graph.registry.resolve("booking_missing")
    with pytest.raises(NotFoundError):
        await graph.registry.resolve("admin_support_missing")


@pytest.mark.asyncio
async def test_support_room_access_before_acceptance(graph, seed) -> None:
    await seed.booking("b1", "c-1")

    assert (await graph.registry.resolve("support_b1", CUSTOMER)).room_id == "support_b1"
    assert (await graph.registry.resolve("support_b1", ADMIN)).room_id == "support_b1"
    with pytest.raises(PermissionDeniedError):
        await graph.registry.resolve("support_b1", OTHER_CUSTOMER)
    with pytest.raises(PermissionDeniedError):
        await graph.registry.resolve("support_b1", GARAGE)
    with pytest.raises(PermissionDeniedError) as exc_info:
        await graph.registry.resolve("booking_b1", CUSTOMER)
    assert exc_info.value.message == "Booking chat available after acceptance"


@pytest.mark.asyncio
async def test_booking_room_access_after_acceptance(graph, seed) -> None:
    await _accepted_booking(seed, "b2")

    for caller in (CUSTOMER, GARAGE, MECHANIC, ADMIN):
        room = await graph.registry.resolve("booking_b2", caller)
        assert room.room_id == "booking_b2"
    with pytest.raises(PermissionDeniedError):
        await graph.registry.resolve("booking_b2", OTHER_GARAGE)
    with pytest.raises(PermissionDeniedError) as exc_info:
        await graph.registry.resolve("support_b2", CUSTOMER)
    assert exc_info.value.message == "Support chat closed after acceptance"


@pytest.mark.asyncio
async def test_open_support_ticket_seeds_first_message(graph, seed) -> None:
    await seed.user("c-1", "Asha", "customer")

    session = await graph.registry.open_support_ticket(
        CUSTOMER, TicketCreate(category="payment_issue", description="Refund pending")
    )

    assert session.is_ticket
    assert session.title == "Asha - PAYMENT_ISSUE Support"
    assert session.created_by == "c-1"
    assert session.participants.customer_id == "c-1"
    assert session.permissions.can_send_location is False

    log = await graph.chat.fetch_log(f"admin_support_{session.id}", CUSTOMER)
    [first] = log.messages
    assert first.seq == 1
    assert first.content == "Refund pending"
    assert first.is_system_message and first.is_support_message
    assert log.unread_count == 0


@pytest.mark.asyncio
async def test_second_open_ticket_reports_the_existing_one(graph) -> None:
    first = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other"))

    with pytest.raises(DuplicateTicketError) as exc_info:
        await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="technical_issue"))

    assert exc_info.value.ticket_id == first.id
    assert exc_info.value.details["roomId"] == f"admin_support_{first.id}"
    sessions = graph.database.get_collection(Collections.CHAT_SESSIONS)
    assert await sessions.count_documents({"created_by": "c-1"}) == 1


@pytest.mark.asyncio
async def test_concurrent_ticket_opens_create_exactly_one(graph) -> None:
    outcomes = await asyncio.gather(
        *(graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other")) for _ in range(4)),
        return_exceptions=True,
    )

    created = [o for o in outcomes if not isinstance(o, BaseException)]
    assert len(created) == 1
    assert all(isinstance(o, DuplicateTicketError) for o in outcomes if o not in created)


@pytest.mark.asyncio
async def test_ticket_status_cycle_frees_and_reclaims_the_open_slot(graph) -> None:
    first = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other"))

    resolved = await graph.registry.update_ticket_status(
        first.id, TicketUpdate(support_status="resolved", assigned_admin="a-1"), ADMIN
    )
    assert resolved.support_status == SupportStatus.resolved
    assert resolved.assigned_admin == "a-1"
    assert resolved.participants.admin_id == "a-1"

    second = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="booking_issue"))

    # Reopening the old ticket would give the customer two open tickets.
    with pytest.raises(DuplicateTicketError) as exc_info:
        await graph.registry.update_ticket_status(first.id, TicketUpdate(support_status="open"), ADMIN)
    assert exc_info.value.ticket_id == second.id

    await graph.registry.update_ticket_status(second.id, TicketUpdate(support_status="closed"), ADMIN)
    reopened = await graph.registry.update_ticket_status(
        first.id, TicketUpdate(support_status="in_progress"), ADMIN
    )
    assert reopened.support_status == SupportStatus.in_progress


@pytest.mark.asyncio
async def test_ticket_rules_for_admins_and_strangers(graph) -> None:
    ticket = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other"))

    with pytest.raises(ValidationError):
        await graph.registry.open_support_ticket(ADMIN, TicketCreate(category="other"))
    with pytest.raises(PermissionDeniedError):
        await graph.registry.update_ticket_status(ticket.id, TicketUpdate(priority="high"), CUSTOMER)
    with pytest.raises(ValidationError):
        await graph.registry.update_ticket_status(ticket.id, TicketUpdate(), ADMIN)
    with pytest.raises(NotFoundError):
        await graph.registry.update_ticket_status("nope", TicketUpdate(priority="high"), ADMIN)
    with pytest.raises(PermissionDeniedError):
        await graph.registry.resolve(f"admin_support_{ticket.id}", OTHER_CUSTOMER)
    assert (await graph.registry.resolve(f"admin_support_{ticket.id}", ADMIN)).session.id == ticket.id


@pytest.mark.asyncio
async def test_resync_is_only_for_booking_rooms(graph) -> None:
    ticket = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other"))

    with pytest.raises(ValidationError):
        await graph.registry.resync_participants(f"admin_support_{ticket.id}")


@pytest.mark.asyncio
async def test_list_rooms_per_role_with_unread_counts(graph, seed) -> None:
    await seed.booking("b1", "c-1")
    await _accepted_booking(seed, "b2")
    await graph.registry.resolve("support_b1")
    await graph.registry.resolve("booking_b2")
    ticket = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other"))
    await graph.chat.post_message("booking_b2", GARAGE, "On our way")

    customer_rooms = {r.id: r for r in await graph.registry.list_rooms(CUSTOMER)}
    assert set(customer_rooms) == {"support_b1", "booking_b2", f"admin_support_{ticket.id}"}
    assert customer_rooms["booking_b2"].unread_count == 1
    assert customer_rooms["booking_b2"].last_message.content == "On our way"
    assert customer_rooms["booking_b2"].support_status is None
    assert customer_rooms[f"admin_support_{ticket.id}"].support_status == SupportStatus.open

    assert [r.id for r in await graph.registry.list_rooms(GARAGE)] == ["booking_b2"]
    assert [r.unread_count for r in await graph.registry.list_rooms(GARAGE)] == [0]
    assert await graph.registry.list_rooms(OTHER_GARAGE) == []

    admin_rooms = {r.id for r in await graph.registry.list_rooms(ADMIN)}
    assert admin_rooms == {"support_b1", f"admin_support_{ticket.id}"}


@pytest.mark.asyncio
async def test_support_stats_and_my_support_chats(graph) -> None:
    first = await graph.registry.open_support_ticket(CUSTOMER, TicketCreate(category="other"))
    await graph.registry.open_support_ticket(MECHANIC, TicketCreate(category="technical_issue"))
    await graph.registry.update_ticket_status(first.id, TicketUpdate(support_status="in_progress"), ADMIN)

    stats = await graph.registry.support_stats()

    assert stats.total_chats == 2
    assert stats.open_chats == 1
    assert stats.in_progress_chats == 1
    assert stats.status_breakdown["closed"] == 0
    assert [s.id for s in await graph.registry.my_support_chats(CUSTOMER)] == [first.id]
