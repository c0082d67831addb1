import asyncio
from typing import Any, Dict, List, Tuple

import pytest

from engine.decay import DecayScheduler
from runtime_state import AccessUpdateWorker, OwnerWriteLanes, RuntimeState


@pytest.mark.asyncio
async def test_write_lanes_serialize_same_owner() -> None:
    lanes = OwnerWriteLanes(global_concurrency=4)
    active = {"now": 0, "max": 0}
    order: List[int] = []

    async def _task(index: int):
        active["now"] += 1
        active["max"] = max(active["max"], active["now"])
        await asyncio.sleep(0.01)
        order.append(index)
        active["now"] -= 1
        return index

    results = await asyncio.gather(
        *(
            lanes.run_write(owner_id="alice", operation="store", task=lambda i=i: _task(i))
            for i in range(5)
        )
    )

    assert results == [0, 1, 2, 3, 4]
    assert active["max"] == 1
    assert sorted(order) == [0, 1, 2, 3, 4]


@pytest.mark.asyncio
async def test_write_lanes_run_different_owners_in_parallel() -> None:
    lanes = OwnerWriteLanes(global_concurrency=4)
    started = {"alice": asyncio.Event(), "bob": asyncio.Event()}

    async def _task(owner: str, other: str):
        started[owner].set()
        await asyncio.wait_for(started[other].wait(), timeout=2)
        return owner

    results = await asyncio.gather(
        lanes.run_write(owner_id="alice", operation="store", task=lambda: _task("alice", "bob")),
        lanes.run_write(owner_id="bob", operation="store", task=lambda: _task("bob", "alice")),
    )
    assert results == ["alice", "bob"]


@pytest.mark.asyncio
async def test_write_lanes_release_idle_owner_locks_and_propagate_errors() -> None:
    lanes = OwnerWriteLanes()

    async def _boom():
        raise RuntimeError("insert failed")

    with pytest.raises(RuntimeError, match="insert failed"):
        await lanes.run_write(owner_id="alice", operation="store", task=_boom)
    await lanes.run_write(owner_id="bob", operation="forget", task=lambda: asyncio.sleep(0))

    status = await lanes.status()
    assert status["owner_lanes"] == 0
    assert status["global_active"] == 0
    assert status["writes_total"] == 2


@pytest.mark.asyncio
async def test_write_lanes_log_slow_waits(caplog) -> None:
    lanes = OwnerWriteLanes(wait_warn_ms=1)
    release = asyncio.Event()

    async def _holder():
        await release.wait()

    holder = asyncio.create_task(
        lanes.run_write(owner_id="alice", operation="store", task=_holder)
    )
    await asyncio.sleep(0)
    waiter = asyncio.create_task(
        lanes.run_write(owner_id="alice", operation="forget", task=lambda: asyncio.sleep(0))
    )
    await asyncio.sleep(0.02)
    release.set()
    await asyncio.gather(holder, waiter)

    assert "write lane wait" in caplog.text
    assert (await lanes.status())["slow_waits_total"] >= 1


@pytest.mark.asyncio
async def test_access_worker_applies_updates_in_background() -> None:
    applied: List[Tuple[str, List[int]]] = []

    async def _updater(owner_id, memory_ids):
        applied.append((owner_id, list(memory_ids)))

    worker = AccessUpdateWorker(_updater)
    await worker.ensure_started()
    assert worker.submit("alice", [1, 2]) is True
    assert await worker.drain(timeout=2) is True
    status = await worker.status()
    await worker.shutdown()

    assert applied == [("alice", [1, 2])]
    assert status["stats"]["applied"] == 1
    assert status["running"] is True


@pytest.mark.asyncio
async def test_access_worker_retries_once_then_succeeds() -> None:
    attempts = {"count": 0}

    async def _flaky(owner_id, memory_ids):
        attempts["count"] += 1
        if attempts["count"] == 1:
            raise RuntimeError("database is locked")

    worker = AccessUpdateWorker(_flaky, retry_delay_ms=0)
    await worker.ensure_started()
    worker.submit("alice", [1])
    await worker.drain(timeout=2)
    status = await worker.status()
    await worker.shutdown()

    assert attempts["count"] == 2
    assert status["stats"]["retried"] == 1
    assert status["stats"]["applied"] == 1
    assert status["stats"]["dropped"] == 0


@pytest.mark.asyncio
async def test_access_worker_drops_after_single_retry(caplog) -> None:
    attempts = {"count": 0}

    async def _broken(owner_id, memory_ids):
        attempts["count"] += 1
        raise RuntimeError("disk I/O error")

    worker = AccessUpdateWorker(_broken, retry_delay_ms=0)
    await worker.ensure_started()
    worker.submit("alice", [7])
    await worker.drain(timeout=2)
    status = await worker.status()
    await worker.shutdown()

    assert attempts["count"] == 2
    assert status["stats"]["dropped"] == 1
    assert status["last_error"] == "disk I/O error"
    assert "dropped for owner=alice" in caplog.text


@pytest.mark.asyncio
async def test_access_worker_drops_when_queue_is_full(caplog) -> None:
    async def _updater(owner_id, memory_ids):
        return None

    worker = AccessUpdateWorker(_updater, queue_maxsize=1)
    assert worker.submit("alice", [1]) is True
    assert worker.submit("alice", [2]) is False
    assert worker.submit("alice", []) is False
    status = await worker.status()

    assert status["stats"]["dropped"] == 1
    assert status["queue_depth"] == 1
    assert "queue full" in caplog.text


class _NullDecayStore:
    async def apply_importance_decay(self, **kwargs) -> Dict[str, Any]:
        return {"updated_memories": 0}

    async def get_runtime_meta(self, key):
        return None

    async def set_runtime_meta(self, key, value):
        return None


@pytest.mark.asyncio
async def test_runtime_state_starts_and_stops_components() -> None:
    async def _updater(owner_id, memory_ids):
        return None

    runtime = RuntimeState(
        write_lanes=OwnerWriteLanes(),
        access_worker=AccessUpdateWorker(_updater),
        decay_scheduler=DecayScheduler(_NullDecayStore(), enabled=False),
    )
    await runtime.ensure_started()
    running = await runtime.status()
    await runtime.shutdown()
    stopped = await runtime.status()

    assert running["access_worker"]["running"] is True
    assert running["decay"]["enabled"] is False
    assert "write_lanes" in running
    assert stopped["access_worker"]["running"] is False
