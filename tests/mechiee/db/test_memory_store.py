from __future__ import annotations

import asyncio

import pytest
from mechiee.db.memory import MemoryDatabase, match_filter
from mechiee.db.mongo import Collections, ensure_indexes
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError


@pytest.mark.asyncio
async def test_unique_sparse_index_ignores_missing_keys() -> None:
    db = MemoryDatabase()
    coll = db.get_collection("sessions")
    await coll.create_index([("booking_id", 1)], name="booking_id_unique", unique=True, sparse=True)

    await coll.insert_one({"_id": "t1"})
    await coll.insert_one({"_id": "t2"})
    await coll.insert_one({"_id": "b1", "booking_id": "B"})
    with pytest.raises(DuplicateKeyError):
        await coll.insert_one({"_id": "b2", "booking_id": "B"})
    assert await coll.count_documents({}) == 3


@pytest.mark.asyncio
async def test_conditional_update_matches_exactly_once_under_gather() -> None:
    coll = MemoryDatabase().get_collection("bookings")
    await coll.insert_one({"_id": "b", "status": "pending"})

    async def claim(owner: str):
        return await coll.find_one_and_update(
            {"_id": "b", "status": "pending"},
            {"$set": {"status": "accepted", "owner": owner}},
            return_document=ReturnDocument.AFTER,
        )

    results = await asyncio.gather(*(claim(f"g{i}") for i in range(10)))
    winners = [r for r in results if r is not None]
    assert len(winners) == 1
    stored = await coll.find_one({"_id": "b"})
    assert stored["owner"] == winners[0]["owner"]


@pytest.mark.asyncio
async def test_upsert_seeds_from_filter_and_set_on_insert() -> None:
    coll = MemoryDatabase().get_collection("sessions")
    first = await coll.find_one_and_update(
        {"booking_id": "B"},
        {"$setOnInsert": {"_id": "s1", "message_seq": 0}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    second = await coll.find_one_and_update(
        {"booking_id": "B"},
        {"$setOnInsert": {"_id": "s2", "message_seq": 0}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    assert first == {"_id": "s1", "booking_id": "B", "message_seq": 0}
    assert second["_id"] == "s1"


def test_ne_on_array_of_subdocuments() -> None:
    doc = {"read_by": [{"user_id": "u1"}, {"user_id": "u2"}]}

    assert not match_filter(doc, {"read_by.user_id": {"$ne": "u1"}})
    assert match_filter(doc, {"read_by.user_id": {"$ne": "u3"}})
    assert match_filter({"read_by": []}, {"read_by.user_id": {"$ne": "u1"}})


@pytest.mark.asyncio
async def test_add_to_set_push_and_unset() -> None:
    coll = MemoryDatabase().get_collection("bookings")
    await coll.insert_one({"_id": "b", "rejected_by": [], "flag": 1})

    await coll.update_one({"_id": "b"}, {"$addToSet": {"rejected_by": "g1"}})
    await coll.update_one({"_id": "b"}, {"$addToSet": {"rejected_by": "g1"}})
    await coll.update_one({"_id": "b"}, {"$push": {"log": "x"}, "$unset": {"flag": ""}})

    doc = await coll.find_one({"_id": "b"})
    assert doc == {"_id": "b", "rejected_by": ["g1"], "log": ["x"]}


@pytest.mark.asyncio
async def test_cursor_sort_skip_limit() -> None:
    coll = MemoryDatabase().get_collection("messages")
    for seq in (3, 1, 2, 5, 4):
        await coll.insert_one({"_id": f"m{seq}", "seq": seq})

    rows = await coll.find({"seq": {"$gte": 2}}).sort([("seq", -1)]).skip(1).limit(2).to_list(None)
    assert [r["seq"] for r in rows] == [4, 3]


@pytest.mark.asyncio
async def test_returned_documents_are_copies() -> None:
    coll = MemoryDatabase().get_collection("users")
    await coll.insert_one({"_id": "u", "tags": ["a"]})

    doc = await coll.find_one({"_id": "u"})
    doc["tags"].append("b")
    assert (await coll.find_one({"_id": "u"}))["tags"] == ["a"]


@pytest.mark.asyncio
async def test_ensure_indexes_declares_load_bearing_unique_indexes() -> None:
    db = MemoryDatabase()
    await ensure_indexes(db)

    sessions = db.get_collection(Collections.CHAT_SESSIONS).index_information()
    assert sessions["booking_id_unique"]["unique"] is True
    assert sessions["open_ticket_owner_unique"]["sparse"] is True
    messages = db.get_collection(Collections.CHAT_MESSAGES).index_information()
    assert messages["session_seq_unique"]["unique"] is True
    ttl = db.get_collection(Collections.NOTIFICATIONS).index_information()["created_at_ttl"]
    assert ttl["expireAfterSeconds"] == 600
