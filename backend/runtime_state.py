"""
Runtime coordination for the memory engine.

This module provides:
1) Write-lane coordination (owner lane + global lane).
2) A best-effort background worker for search access accounting.
3) ``RuntimeState``, which owns the start/stop of both plus the decay
   scheduler. Instances are built by the composition root; nothing here is
   a module-level singleton.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from engine.decay import DecayScheduler

logger = logging.getLogger(__name__)

AccessUpdater = Callable[[str, List[int]], Awaitable[Any]]


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class OwnerWriteLanes:
    """
    Two-layer write coordination:
    - Owner lane: serial writes within the same owner.
    - Global lane: bounded write concurrency across all owners.
    """

    def __init__(self, *, global_concurrency: int = 4, wait_warn_ms: int = 2000) -> None:
        self._global_concurrency = max(1, int(global_concurrency))
        self._wait_warn_ms = max(1, int(wait_warn_ms))
        self._global_sem = asyncio.Semaphore(self._global_concurrency)
        self._owner_locks: Dict[str, asyncio.Lock] = {}
        self._owner_refs: Dict[str, int] = {}
        self._owner_waiting: Dict[str, int] = {}
        self._global_waiting = 0
        self._global_active = 0
        self._writes_total = 0
        self._slow_waits_total = 0
        self._guard = asyncio.Lock()

    async def _acquire_owner_lock(self, owner_id: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._owner_locks.get(owner_id)
            if lock is None:
                lock = asyncio.Lock()
                self._owner_locks[owner_id] = lock
            self._owner_refs[owner_id] = self._owner_refs.get(owner_id, 0) + 1
            self._owner_waiting[owner_id] = self._owner_waiting.get(owner_id, 0) + 1
            return lock

    async def _release_owner_lock(self, owner_id: str) -> None:
        async with self._guard:
            remaining = self._owner_refs.get(owner_id, 1) - 1
            if remaining <= 0:
                self._owner_refs.pop(owner_id, None)
                self._owner_locks.pop(owner_id, None)
                self._owner_waiting.pop(owner_id, None)
            else:
                self._owner_refs[owner_id] = remaining

    async def run_write(
        self,
        *,
        owner_id: str,
        operation: str,
        task: Callable[[], Awaitable[Any]],
    ) -> Any:
        owner_lock = await self._acquire_owner_lock(owner_id)
        try:
            owner_wait_start = time.monotonic()
            async with owner_lock:
                waited_owner_ms = int((time.monotonic() - owner_wait_start) * 1000)
                async with self._guard:
                    self._owner_waiting[owner_id] = max(
                        0, self._owner_waiting.get(owner_id, 1) - 1
                    )
                    self._global_waiting += 1

                global_wait_start = time.monotonic()
                await self._global_sem.acquire()
                waited_global_ms = int((time.monotonic() - global_wait_start) * 1000)
                async with self._guard:
                    self._global_waiting = max(0, self._global_waiting - 1)
                    self._global_active += 1
                    self._writes_total += 1

                waited_ms = waited_owner_ms + waited_global_ms
                if waited_ms >= self._wait_warn_ms:
                    self._slow_waits_total += 1
                    logger.warning(
                        "write lane wait %dms for %s (owner=%s, owner_wait=%dms, global_wait=%dms)",
                        waited_ms,
                        operation,
                        owner_id,
                        waited_owner_ms,
                        waited_global_ms,
                    )

                try:
                    return await task()
                finally:
                    async with self._guard:
                        self._global_active = max(0, self._global_active - 1)
                    self._global_sem.release()
        finally:
            await self._release_owner_lock(owner_id)

    async def status(self) -> Dict[str, Any]:
        async with self._guard:
            busy_owners = {
                owner: waiting
                for owner, waiting in self._owner_waiting.items()
                if waiting > 0
            }
            return {
                "global_concurrency": self._global_concurrency,
                "global_active": self._global_active,
                "global_waiting": self._global_waiting,
                "owner_lanes": len(self._owner_locks),
                "owner_waiting_count": sum(busy_owners.values()),
                "owner_waiting_owners": len(busy_owners),
                "max_owner_waiting": max(busy_owners.values(), default=0),
                "writes_total": self._writes_total,
                "slow_waits_total": self._slow_waits_total,
                "wait_warn_ms": self._wait_warn_ms,
            }


@dataclass
class AccessUpdate:
    owner_id: str
    memory_ids: List[int] = field(default_factory=list)
    requested_at: str = field(default_factory=_utc_iso_now)


class AccessUpdateWorker:
    """Background worker that applies access-count bumps for search hits.

    ``submit`` never blocks. Each update is tried once, retried once after
    ``retry_delay_ms``, then dropped with a warning. A full queue drops the
    update immediately.
    """

    def __init__(
        self,
        updater: AccessUpdater,
        *,
        queue_maxsize: int = 1024,
        retry_delay_ms: int = 50,
    ) -> None:
        self._updater = updater
        self._queue_maxsize = max(1, int(queue_maxsize))
        self._retry_delay_seconds = max(0, int(retry_delay_ms)) / 1000.0
        self._queue: asyncio.Queue[AccessUpdate] = asyncio.Queue(
            maxsize=self._queue_maxsize
        )
        self._runner: Optional[asyncio.Task] = None

        self._submitted_total = 0
        self._applied_total = 0
        self._retried_total = 0
        self._dropped_total = 0
        self._last_error: Optional[str] = None
        self._last_finished_at: Optional[str] = None

    @property
    def running(self) -> bool:
        return self._runner is not None and not self._runner.done()

    async def ensure_started(self) -> None:
        if not self.running:
            self._runner = asyncio.create_task(
                self._run_loop(), name="memory-access-worker"
            )

    def submit(self, owner_id: str, memory_ids: List[int]) -> bool:
        ids = [int(item) for item in memory_ids]
        if not ids:
            return False
        try:
            self._queue.put_nowait(AccessUpdate(owner_id=owner_id, memory_ids=ids))
        except asyncio.QueueFull:
            self._dropped_total += 1
            logger.warning(
                "access update queue full (%d); dropped owner=%s ids=%s",
                self._queue_maxsize,
                owner_id,
                ids,
            )
            return False
        self._submitted_total += 1
        return True

    async def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until every queued update has been applied or dropped."""
        if not self.running:
            return self._queue.empty()
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def shutdown(self, drain_timeout: float = 2.0) -> None:
        runner = self._runner
        if runner is None:
            return
        drained = await self.drain(timeout=drain_timeout)
        if not drained:
            logger.warning(
                "access worker stopped with %d pending updates", self._queue.qsize()
            )
        self._runner = None
        runner.cancel()
        try:
            await runner
        except asyncio.CancelledError:
            pass

    async def _run_loop(self) -> None:
        while True:
            update = await self._queue.get()
            try:
                await self._apply(update)
            finally:
                self._queue.task_done()

    async def _apply(self, update: AccessUpdate) -> None:
        try:
            await self._updater(update.owner_id, update.memory_ids)
        except Exception as first_exc:
            self._retried_total += 1
            logger.warning(
                "access update failed for owner=%s ids=%s, retrying once: %s",
                update.owner_id,
                update.memory_ids,
                first_exc,
            )
            await asyncio.sleep(self._retry_delay_seconds)
            try:
                await self._updater(update.owner_id, update.memory_ids)
            except Exception as exc:
                self._dropped_total += 1
                self._last_error = str(exc)
                logger.warning(
                    "access update dropped for owner=%s ids=%s after retry: %s",
                    update.owner_id,
                    update.memory_ids,
                    exc,
                )
                return
        self._applied_total += 1
        self._last_finished_at = _utc_iso_now()

    async def status(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "queue_depth": self._queue.qsize(),
            "queue_maxsize": self._queue_maxsize,
            "stats": {
                "submitted": self._submitted_total,
                "applied": self._applied_total,
                "retried": self._retried_total,
                "dropped": self._dropped_total,
            },
            "last_error": self._last_error,
            "last_finished_at": self._last_finished_at,
        }


class RuntimeState:
    def __init__(
        self,
        *,
        write_lanes: OwnerWriteLanes,
        access_worker: AccessUpdateWorker,
        decay_scheduler: DecayScheduler,
    ) -> None:
        self.write_lanes = write_lanes
        self.access_worker = access_worker
        self.decay_scheduler = decay_scheduler

    async def ensure_started(self) -> None:
        await self.access_worker.ensure_started()
        await self.decay_scheduler.ensure_started()

    async def shutdown(self) -> None:
        await self.decay_scheduler.shutdown()
        await self.access_worker.shutdown()

    async def status(self) -> Dict[str, Any]:
        return {
            "timestamp": _utc_iso_now(),
            "write_lanes": await self.write_lanes.status(),
            "access_worker": await self.access_worker.status(),
            "decay": await self.decay_scheduler.status(),
        }
