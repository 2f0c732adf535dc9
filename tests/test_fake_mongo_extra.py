import asyncio
import json
from datetime import datetime, timezone

import pytest

from bookstore import FakeMongoDB, LocalStorageBackend
from bookstore.fake_mongo import index_name


async def _seeded(tmp_path):
    backend = LocalStorageBackend(str(tmp_path / "base"))
    db = FakeMongoDB(backend, "shop")
    coll = await db.get_collection("books")
    await coll.insert_many(
        [
            {"_id": 1, "title": "Dune", "author": "Frank Herbert", "price": 15.5, "stock": 3},
            {"_id": 2, "title": "Emma", "author": "Jane Austen", "price": 7.25, "stock": 0},
            {"_id": 3, "title": "Persuasion", "author": "Jane Austen", "price": 8.0, "stock": 2},
        ]
    )
    return db, coll


@pytest.mark.asyncio
async def test_update_one_sets_first_match_only(tmp_path):
    _, coll = await _seeded(tmp_path)
    result = await coll.update_one({"author": "Jane Austen"}, {"$set": {"price": 5.0}})
    assert (result.matched_count, result.modified_count) == (1, 1)
    prices = {doc["title"]: doc["price"] async for doc in coll.find()}
    assert prices == {"Dune": 15.5, "Emma": 5.0, "Persuasion": 8.0}


@pytest.mark.asyncio
async def test_update_without_match_is_noop(tmp_path):
    _, coll = await _seeded(tmp_path)
    result = await coll.update_one({"title": "Moby Dick"}, {"$set": {"price": 1.0}})
    assert (result.matched_count, result.modified_count) == (0, 0)


@pytest.mark.asyncio
async def test_update_same_value_is_not_modified(tmp_path):
    _, coll = await _seeded(tmp_path)
    result = await coll.update_one({"title": "Dune"}, {"$set": {"price": 15.5}})
    assert (result.matched_count, result.modified_count) == (1, 0)


@pytest.mark.asyncio
async def test_update_many_inc_and_unset(tmp_path):
    _, coll = await _seeded(tmp_path)
    result = await coll.update_many(
        {"author": "Jane Austen"}, {"$inc": {"stock": 5}, "$unset": {"price": ""}}
    )
    assert result.modified_count == 2
    austen = await coll.find({"author": "Jane Austen"}).to_list()
    assert [doc["stock"] for doc in austen] == [5, 7]
    assert all("price" not in doc for doc in austen)


@pytest.mark.asyncio
async def test_update_rejects_bad_documents(tmp_path):
    _, coll = await _seeded(tmp_path)
    with pytest.raises(ValueError):
        await coll.update_one({"_id": 1}, {"price": 3.0})
    with pytest.raises(ValueError):
        await coll.update_one({"_id": 1}, {"$set": {"_id": 9}})
    with pytest.raises(ValueError):
        await coll.update_one({"_id": 1}, {"$inc": {"title": 1}})


@pytest.mark.asyncio
async def test_delete_one_and_many(tmp_path):
    _, coll = await _seeded(tmp_path)
    missing = await coll.delete_one({"title": "Moby Dick"})
    assert missing.deleted_count == 0
    assert await coll.count_documents({}) == 3

    one = await coll.delete_one({"author": "Jane Austen"})
    assert one.deleted_count == 1
    assert await coll.find_one({"title": "Emma"}) is None

    many = await coll.delete_many({})
    assert many.deleted_count == 2
    assert await coll.count_documents({}) == 0


@pytest.mark.asyncio
async def test_aggregate_returns_cursor(tmp_path):
    _, coll = await _seeded(tmp_path)
    cursor = await coll.aggregate(
        [
            {"$group": {"_id": "$author", "count": {"$sum": 1}}},
            {"$sort": {"count": -1}},
        ]
    )
    rows = await cursor.to_list()
    assert rows[0] == {"_id": "Jane Austen", "count": 2}
    assert await cursor.to_list(1) == [rows[0]]


@pytest.mark.asyncio
async def test_create_index_is_idempotent(tmp_path):
    _, coll = await _seeded(tmp_path)
    first = await coll.create_index([("title", 1)])
    second = await coll.create_index([("title", 1)])
    assert first == second == "title_1"
    info = await coll.index_information()
    assert sorted(info) == ["_id_", "title_1"]
    assert info["title_1"]["key"] == [("title", 1)]


@pytest.mark.asyncio
async def test_create_index_accepts_string_and_compound(tmp_path):
    _, coll = await _seeded(tmp_path)
    assert await coll.create_index("author") == "author_1"
    assert (
        await coll.create_index([("author", 1), ("price", -1)])
        == "author_1_price_-1"
    )
    assert index_name([("a", 1), ("b", -1)]) == "a_1_b_-1"


@pytest.mark.asyncio
async def test_create_index_conflicting_name(tmp_path):
    _, coll = await _seeded(tmp_path)
    await coll.create_index([("title", 1)], name="by_title")
    with pytest.raises(ValueError):
        await coll.create_index([("author", 1)], name="by_title")


@pytest.mark.asyncio
async def test_drop_index(tmp_path):
    _, coll = await _seeded(tmp_path)
    await coll.create_index([("title", 1)])
    await coll.drop_index("title_1")
    assert list(await coll.index_information()) == ["_id_"]
    with pytest.raises(ValueError):
        await coll.drop_index("title_1")
    with pytest.raises(ValueError):
        await coll.drop_index("_id_")


@pytest.mark.asyncio
async def test_explain_collscan_without_index(tmp_path):
    _, coll = await _seeded(tmp_path)
    plan = await coll.find({"title": "Dune"}).explain()
    assert plan["queryPlanner"]["namespace"] == "shop.books"
    assert plan["queryPlanner"]["winningPlan"]["stage"] == "COLLSCAN"
    stats = plan["executionStats"]
    assert stats["nReturned"] == 1
    assert stats["totalDocsExamined"] == 3
    assert stats["totalKeysExamined"] == 0


@pytest.mark.asyncio
async def test_explain_uses_matching_index(tmp_path):
    _, coll = await _seeded(tmp_path)
    await coll.create_index([("title", 1)])
    await coll.create_index([("author", 1), ("title", 1)])
    plan = await coll.find({"title": "Dune"}).explain("executionStats")
    winning = plan["queryPlanner"]["winningPlan"]
    assert winning["stage"] == "FETCH"
    assert winning["inputStage"]["stage"] == "IXSCAN"
    assert winning["inputStage"]["indexName"] == "title_1"
    assert plan["executionStats"]["totalKeysExamined"] == 1
    assert plan["executionStats"]["totalDocsExamined"] == 1


@pytest.mark.asyncio
async def test_explain_query_planner_only(tmp_path):
    _, coll = await _seeded(tmp_path)
    plan = await coll.find({}).explain("queryPlanner")
    assert "executionStats" not in plan
    with pytest.raises(ValueError):
        await coll.find({}).explain("everything")


@pytest.mark.asyncio
async def test_database_command_ping_and_explain(tmp_path):
    db, coll = await _seeded(tmp_path)
    assert await db.command("ping") == {"ok": 1.0}
    await coll.create_index([("title", 1)])
    plan = await db.command(
        {"explain": {"find": "books", "filter": {"title": "Emma"}}, "verbosity": "executionStats"}
    )
    assert plan["executionStats"]["nReturned"] == 1
    assert plan["queryPlanner"]["winningPlan"]["inputStage"]["indexName"] == "title_1"
    with pytest.raises(ValueError):
        await db.command("shutdown")


@pytest.mark.asyncio
async def test_cursor_argument_validation(tmp_path):
    _, coll = await _seeded(tmp_path)
    with pytest.raises(ValueError):
        coll.find().skip(-1)
    with pytest.raises(TypeError):
        coll.find().limit("5")
    with pytest.raises(ValueError):
        coll.find().sort("price", 2)
    with pytest.raises(TypeError):
        coll.find(["title"])


async def _plant_operations(backend, operations):
    path = "shop/__METADATA__.json"
    meta = json.loads((await backend.read_bytes(path)).decode("utf-8"))
    meta["operations"] = operations
    await backend.write_bytes(path, json.dumps(meta).encode("utf-8"))


@pytest.mark.asyncio
async def test_reads_drop_operations_left_by_crashed_writers(tmp_path):
    db, _ = await _seeded(tmp_path)
    await _plant_operations(
        db.backend,
        [
            "dead-op",
            {"id": "crashed", "timestamp": "2000-01-01T00:00:00+00:00", "ttl": 1},
            {"id": "garbled", "timestamp": "yesterday", "ttl": 30},
        ],
    )
    reopened = FakeMongoDB(db.backend, "shop")
    coll = await reopened.get_collection("books")
    assert await asyncio.wait_for(coll.count_documents({}), timeout=3) == 3
    meta = json.loads((await db.backend.read_bytes("shop/__METADATA__.json")).decode("utf-8"))
    assert meta["operations"] == []


@pytest.mark.asyncio
async def test_reads_wait_for_live_operations(tmp_path):
    db, coll = await _seeded(tmp_path)
    await _plant_operations(
        db.backend,
        [{"id": "busy", "timestamp": datetime.now(timezone.utc).isoformat(), "ttl": 30}],
    )
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(coll.count_documents({}), timeout=0.3)


@pytest.mark.asyncio
async def test_live_operation_expires_after_its_ttl(tmp_path):
    db, coll = await _seeded(tmp_path)
    await _plant_operations(
        db.backend,
        [{"id": "slow", "timestamp": datetime.now(timezone.utc).isoformat(), "ttl": 0.1}],
    )
    assert await asyncio.wait_for(coll.count_documents({}), timeout=3) == 3


@pytest.mark.asyncio
async def test_writes_clear_their_operation_record(tmp_path):
    db, coll = await _seeded(tmp_path)
    await coll.insert_one({"_id": 4, "title": "Ulysses"})
    meta = json.loads((await db.backend.read_bytes("shop/__METADATA__.json")).decode("utf-8"))
    assert meta["operations"] == []
