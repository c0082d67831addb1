"""
Per-owner capacity ceiling.

Callers hold the owner's write lane around ``insert`` so two inserts can
never observe the same pre-eviction count.
"""

import logging
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

logger = logging.getLogger(__name__)


class CapacityStore(Protocol):
    async def count_memories(self, owner_id: str) -> int: ...

    async def evict_lowest(self, owner_id: str, count: int) -> List[int]: ...

    async def insert_memory(
        self,
        owner_id: str,
        content: str,
        embedding: Sequence[float],
        *,
        importance: float = 0.5,
        category: str = "FACT",
        metadata: Optional[Dict[str, Any]] = None,
        evict_count: int = 0,
    ) -> Tuple[Dict[str, Any], List[int]]: ...


class CapacityEnforcer:
    def __init__(
        self,
        store: CapacityStore,
        *,
        max_per_owner: int = 1000,
        batch_size: int = 1,
    ) -> None:
        if max_per_owner < 1:
            raise ValueError("max_per_owner must be >= 1")
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self._store = store
        self.max_per_owner = int(max_per_owner)
        self.batch_size = int(batch_size)

    def required_evictions(self, current_count: int) -> int:
        """How many entries must go before one more insert fits."""
        if current_count < self.max_per_owner:
            return 0
        return max(self.batch_size, current_count - self.max_per_owner + 1)

    async def insert(
        self,
        owner_id: str,
        content: str,
        embedding: Sequence[float],
        *,
        importance: float,
        category: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Tuple[Dict[str, Any], List[int]]:
        """Evict as needed and insert, in a single store transaction."""
        current = await self._store.count_memories(owner_id)
        evict_count = self.required_evictions(current)
        memory, evicted_ids = await self._store.insert_memory(
            owner_id,
            content,
            embedding,
            importance=importance,
            category=category,
            metadata=metadata,
            evict_count=evict_count,
        )
        if evicted_ids:
            logger.info(
                "evicted %d memories for owner=%s at capacity %d: %s",
                len(evicted_ids),
                owner_id,
                self.max_per_owner,
                evicted_ids,
            )
        return memory, evicted_ids

    async def evict(self, owner_id: str, k: int) -> List[int]:
        """Atomically remove the ``k`` lowest-value entries of one owner."""
        if k < 1:
            raise ValueError("k must be >= 1")
        evicted_ids = await self._store.evict_lowest(owner_id, int(k))
        if evicted_ids:
            logger.info("evicted %d memories for owner=%s: %s", len(evicted_ids), owner_id, evicted_ids)
        return evicted_ids
