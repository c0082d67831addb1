import math
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest
from sqlalchemy.exc import IntegrityError

from db.sqlite_client import Memory, SQLiteClient
from engine.errors import InvalidInput, StoreUnavailable


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


def _unit(values: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in values))
    return [v / norm for v in values]


def _utc_now_naive() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


async def _open_client(tmp_path: Path, name: str) -> SQLiteClient:
    client = SQLiteClient(_sqlite_url(tmp_path / name), embedding_dim=4)
    await client.init_db()
    return client


async def _insert(client: SQLiteClient, owner: str, content: str, vector=None, **kwargs):
    memory, _ = await client.insert_memory(
        owner, content, vector or _unit([1.0, 0.0, 0.0, 0.0]), **kwargs
    )
    return memory


@pytest.mark.asyncio
async def test_insert_memory_returns_dict_and_clamps_importance(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "insert.db")

    memory = await _insert(
        client,
        "alice",
        "Alice likes tea",
        importance=1.7,
        category="PREFERENCE",
        metadata={"source": "chat"},
    )
    loaded = await client.get_memory("alice", memory["id"])
    await client.close()

    assert memory["importance"] == 1.0
    assert loaded is not None
    assert loaded["content"] == "Alice likes tea"
    assert loaded["category"] == "PREFERENCE"
    assert loaded["metadata"] == {"source": "chat"}
    assert loaded["access_count"] == 0
    assert loaded["last_accessed_at"] is None
    assert "embedding" not in loaded


@pytest.mark.asyncio
async def test_insert_rejects_vector_with_wrong_dimension(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "dim.db")
    with pytest.raises(InvalidInput):
        await client.insert_memory("alice", "bad vector", [1.0, 0.0])
    count = await client.count_memories("alice")
    await client.close()
    assert count == 0


@pytest.mark.asyncio
async def test_operations_never_cross_owners(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "partition.db")
    alice = await _insert(client, "alice", "green tea in the morning")
    await _insert(client, "bob", "green tea in the evening")

    ranked = await client.rank_by_vector(
        "alice", _unit([1.0, 0.0, 0.0, 0.0]), limit=10, threshold=0.0
    )
    matched = await client.match_substring("alice", "tea", limit=10)
    cross_get = await client.get_memory("bob", alice["id"])
    deleted = await client.forget_memories("alice")
    bob_count = await client.count_memories("bob")
    await client.close()

    assert [memory["owner_id"] for memory, _ in ranked] == ["alice"]
    assert [memory["owner_id"] for memory in matched] == ["alice"]
    assert cross_get is None
    assert deleted == 1
    assert bob_count == 1


@pytest.mark.asyncio
async def test_rank_by_vector_applies_threshold_and_orders_ties_by_id(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "rank.db")
    exact_a = await _insert(client, "alice", "a", _unit([1.0, 0.0, 0.0, 0.0]))
    close = await _insert(client, "alice", "b", _unit([0.8, 0.6, 0.0, 0.0]))
    await _insert(client, "alice", "c", _unit([0.0, 1.0, 0.0, 0.0]))
    exact_b = await _insert(client, "alice", "d", _unit([1.0, 0.0, 0.0, 0.0]))
    query = _unit([1.0, 0.0, 0.0, 0.0])

    loose = await client.rank_by_vector("alice", query, limit=10, threshold=0.5)
    strict = await client.rank_by_vector("alice", query, limit=10, threshold=0.9)
    capped = await client.rank_by_vector("alice", query, limit=1, threshold=0.0)
    await client.close()

    assert [memory["id"] for memory, _ in loose] == [exact_a["id"], exact_b["id"], close["id"]]
    assert loose[2][1] == pytest.approx(0.8)
    assert [memory["id"] for memory, _ in strict] == [exact_a["id"], exact_b["id"]]
    assert len(strict) <= len(loose)
    assert [memory["id"] for memory, _ in capped] == [exact_a["id"]]


@pytest.mark.asyncio
async def test_match_substring_is_unicode_case_insensitive_and_ordered(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "lexical.db")
    low = await _insert(client, "alice", "Straße nach Hause", importance=0.2)
    high = await _insert(client, "alice", "Die STRASSE ist lang", importance=0.9)
    await _insert(client, "alice", "Kaffee am Morgen", importance=1.0)

    matches = await client.match_substring("alice", "  strasse ", limit=10)
    limited = await client.match_substring("alice", "STRASSE", limit=1)
    blank = await client.match_substring("alice", "   ", limit=10)
    await client.close()

    assert [memory["id"] for memory in matches] == [high["id"], low["id"]]
    assert [memory["id"] for memory in limited] == [high["id"]]
    assert blank == []


@pytest.mark.asyncio
async def test_evict_lowest_orders_by_importance_then_access_then_age(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "evict.db")
    keep_high = await _insert(client, "alice", "high", importance=0.9)
    low_busy = await _insert(client, "alice", "low busy", importance=0.2)
    low_idle = await _insert(client, "alice", "low idle", importance=0.2)
    mid = await _insert(client, "alice", "mid", importance=0.5)
    other_owner = await _insert(client, "bob", "bob lowest", importance=0.0)

    async with client.session() as session:
        row = await session.get(Memory, low_busy["id"])
        row.access_count = 3
        session.add(row)

    evicted = await client.evict_lowest("alice", 2)
    remaining = await client.count_memories("alice")
    bob_remaining = await client.get_memory("bob", other_owner["id"])
    survivors = {
        memory_id
        for memory_id in (keep_high["id"], mid["id"])
        if await client.get_memory("alice", memory_id) is not None
    }
    await client.close()

    assert evicted == sorted([low_idle["id"], low_busy["id"]])
    assert remaining == 2
    assert bob_remaining is not None
    assert survivors == {keep_high["id"], mid["id"]}


@pytest.mark.asyncio
async def test_evict_lowest_breaks_ties_by_oldest(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "evict-tie.db")
    first = await _insert(client, "alice", "first", importance=0.3)
    second = await _insert(client, "alice", "second", importance=0.3)

    async with client.session() as session:
        row = await session.get(Memory, second["id"])
        row.created_at = _utc_now_naive() - timedelta(days=2)
        session.add(row)

    evicted = await client.evict_lowest("alice", 1)
    await client.close()

    assert evicted == [second["id"]]
    assert first["id"] != second["id"]


@pytest.mark.asyncio
async def test_failed_insert_rolls_back_its_eviction(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "rollback.db")
    victim = await _insert(client, "alice", "victim", importance=0.0)

    with pytest.raises(IntegrityError):
        await client.insert_memory(
            "alice", None, _unit([1.0, 0.0, 0.0, 0.0]), evict_count=1
        )

    still_there = await client.get_memory("alice", victim["id"])
    count = await client.count_memories("alice")
    await client.close()

    assert still_there is not None
    assert count == 1


@pytest.mark.asyncio
async def test_insert_with_eviction_is_reported_and_ids_are_not_reused(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "autoinc.db")
    first = await _insert(client, "alice", "first", importance=0.1)
    second = await _insert(client, "alice", "second", importance=0.9)

    third, evicted = await client.insert_memory(
        "alice", "third", _unit([0.0, 1.0, 0.0, 0.0]), evict_count=1
    )
    await client.forget_memories("alice", "third")
    fourth = await _insert(client, "alice", "fourth")
    await client.close()

    assert evicted == [first["id"]]
    assert third["id"] > second["id"]
    assert fourth["id"] > third["id"]


@pytest.mark.asyncio
async def test_forget_memories_by_query_and_all(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "forget.db")
    await _insert(client, "alice", "Alice likes TEA")
    await _insert(client, "alice", "Alice drinks tea daily")
    await _insert(client, "alice", "Alice likes coffee")
    await _insert(client, "bob", "Bob likes tea")

    by_query = await client.forget_memories("alice", "tea")
    none_left = await client.forget_memories("alice", "tea")
    with pytest.raises(InvalidInput):
        await client.forget_memories("alice", "   ")
    remaining = await client.count_memories("alice")
    everything = await client.forget_memories("alice")
    bob_count = await client.count_memories("bob")
    await client.close()

    assert by_query == 2
    assert none_left == 0
    assert remaining == 1
    assert everything == 1
    assert bob_count == 1


@pytest.mark.asyncio
async def test_touch_access_increments_only_owner_rows(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "touch.db")
    alice = await _insert(client, "alice", "alice fact")
    bob = await _insert(client, "bob", "bob fact")

    touched = await client.touch_access("alice", [alice["id"], bob["id"], alice["id"], "x"])
    await client.touch_access("alice", [alice["id"]])
    alice_row = await client.get_memory("alice", alice["id"])
    bob_row = await client.get_memory("bob", bob["id"])
    await client.close()

    assert touched == 1
    assert alice_row["access_count"] == 2
    assert alice_row["last_accessed_at"] is not None
    assert alice_row["updated_at"] == alice["updated_at"]
    assert bob_row["access_count"] == 0
    assert bob_row["last_accessed_at"] is None


@pytest.mark.asyncio
async def test_apply_importance_decay_floors_and_skips_fresh_entries(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "decay.db")
    now_value = _utc_now_naive()
    stale = await _insert(client, "alice", "stale", importance=0.2)
    near_floor = await _insert(client, "alice", "near floor", importance=0.1001)
    fresh = await _insert(client, "alice", "fresh", importance=0.2)
    never_accessed = await _insert(client, "bob", "never accessed", importance=0.5)
    below_floor = await _insert(client, "bob", "below floor", importance=0.05)

    async with client.session() as session:
        for memory_id in (stale["id"], near_floor["id"], below_floor["id"]):
            row = await session.get(Memory, memory_id)
            row.last_accessed_at = now_value - timedelta(days=10)
            session.add(row)
        row = await session.get(Memory, fresh["id"])
        row.last_accessed_at = now_value - timedelta(days=1)
        row.created_at = now_value - timedelta(days=30)
        session.add(row)
        row = await session.get(Memory, never_accessed["id"])
        row.created_at = now_value - timedelta(days=10)
        session.add(row)

    result = await client.apply_importance_decay(
        age_threshold_days=7,
        decay_factor=0.95,
        importance_floor=0.1,
        reference_time=now_value,
    )

    rows = {
        memory_id: await client.get_memory(owner, memory_id)
        for owner, memory_id in (
            ("alice", stale["id"]),
            ("alice", near_floor["id"]),
            ("alice", fresh["id"]),
            ("bob", never_accessed["id"]),
            ("bob", below_floor["id"]),
        )
    }
    await client.close()

    assert result["updated_memories"] == 3
    assert rows[stale["id"]]["importance"] == pytest.approx(0.19)
    assert rows[near_floor["id"]]["importance"] == pytest.approx(0.1)
    assert rows[fresh["id"]]["importance"] == pytest.approx(0.2)
    assert rows[never_accessed["id"]]["importance"] == pytest.approx(0.475)
    assert rows[below_floor["id"]]["importance"] == pytest.approx(0.05)
    assert rows[stale["id"]]["last_accessed_at"] == (now_value - timedelta(days=10)).isoformat()


@pytest.mark.asyncio
async def test_runtime_meta_upsert(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "meta.db")
    assert await client.get_runtime_meta("decay.last_run_at.v1") is None
    await client.set_runtime_meta("decay.last_run_at.v1", "first")
    await client.set_runtime_meta("decay.last_run_at.v1", "second")
    value = await client.get_runtime_meta("decay.last_run_at.v1")
    with pytest.raises(ValueError):
        await client.set_runtime_meta("  ", "x")
    await client.close()
    assert value == "second"


@pytest.mark.asyncio
async def test_backend_failures_surface_as_store_unavailable(tmp_path: Path) -> None:
    missing_dir = tmp_path / "missing" / "nested" / "memory.db"
    broken = SQLiteClient(_sqlite_url(missing_dir), embedding_dim=4)
    with pytest.raises(StoreUnavailable):
        await broken.init_db()
    await broken.close()

    client = await _open_client(tmp_path, "closed.db")
    await client.close()
    with pytest.raises(StoreUnavailable):
        await client.count_memories("alice")


@pytest.mark.asyncio
async def test_list_memories_is_owner_scoped_and_ordered(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "list.db")
    low = await _insert(client, "alice", "low priority note", importance=0.2)
    older = await _insert(client, "alice", "older important note", importance=0.8)
    newer = await _insert(client, "alice", "newer important note", importance=0.8)
    await _insert(client, "bob", "bob's only note", importance=0.9)

    listed = await client.list_memories("alice")
    limited = await client.list_memories("alice", limit=1)
    nobody = await client.list_memories("carol")
    await client.close()

    assert [memory["id"] for memory in listed] == [newer["id"], older["id"], low["id"]]
    assert {memory["owner_id"] for memory in listed} == {"alice"}
    assert [memory["id"] for memory in limited] == [newer["id"]]
    assert nobody == []


@pytest.mark.asyncio
async def test_delete_memory_only_removes_the_owners_row(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "delete.db")
    alice = await _insert(client, "alice", "green tea")

    cross_owner = await client.delete_memory("bob", alice["id"])
    still_there = await client.get_memory("alice", alice["id"])
    deleted = await client.delete_memory("alice", alice["id"])
    again = await client.delete_memory("alice", alice["id"])
    await client.close()

    assert cross_owner is False
    assert still_there is not None
    assert deleted is True
    assert again is False


@pytest.mark.asyncio
async def test_decay_records_last_run_in_the_same_transaction(tmp_path: Path) -> None:
    client = await _open_client(tmp_path, "decay-meta.db")
    now_value = _utc_now_naive()
    stale = await _insert(client, "alice", "stale", importance=0.5)
    async with client.session() as session:
        row = await session.get(Memory, stale["id"])
        row.created_at = now_value - timedelta(days=10)
        session.add(row)

    with pytest.raises(ValueError):
        await client.apply_importance_decay(
            age_threshold_days=7,
            decay_factor=0.5,
            importance_floor=0.1,
            reference_time=now_value,
            last_run_key="  ",
        )
    untouched = await client.get_memory("alice", stale["id"])

    result = await client.apply_importance_decay(
        age_threshold_days=7,
        decay_factor=0.5,
        importance_floor=0.1,
        reference_time=now_value,
        last_run_key="decay.last_run_at.v1",
    )
    decayed = await client.get_memory("alice", stale["id"])
    last_run = await client.get_runtime_meta("decay.last_run_at.v1")
    await client.close()

    assert untouched["importance"] == pytest.approx(0.5)
    assert result["updated_memories"] == 1
    assert decayed["importance"] == pytest.approx(0.25)
    assert last_run == now_value.isoformat()
