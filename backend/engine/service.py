"""
Memory engine facade.

``MemoryEngine`` wires the read path (ranker -> fallback -> coordinator ->
access worker) and the write path (dedup gate -> capacity enforcer -> store)
around injected store and embedding provider instances. The composition
root owns ``open()`` / ``close()``.
"""

import json
import logging
import math
from datetime import datetime
from typing import Any, Dict, List, Optional

from db.sqlite_client import SQLiteClient
from runtime_state import AccessUpdateWorker, OwnerWriteLanes, RuntimeState

from .capacity import CapacityEnforcer
from .config import EngineSettings
from .decay import DecayPolicy, DecayScheduler
from .embedding import EmbeddingProvider, create_embedding_provider
from .errors import InvalidInput
from .models import Category, SearchResult, StoreResult
from .retrieval import HybridRetrievalCoordinator, LexicalFallbackMatcher, SimilarityRanker
from .write_guard import DeduplicationGate

logger = logging.getLogger(__name__)


class MemoryEngine:
    def __init__(
        self,
        store: SQLiteClient,
        embedder: EmbeddingProvider,
        settings: EngineSettings,
    ) -> None:
        if embedder.dimension != store.embedding_dim:
            raise ValueError(
                f"embedding provider dimension {embedder.dimension} does not match "
                f"store dimension {store.embedding_dim}"
            )
        self.record_store = store
        self.embedder = embedder
        self.settings = settings

        self.ranker = SimilarityRanker(store)
        self.matcher = LexicalFallbackMatcher(
            store, neutral_similarity=settings.search_fallback_similarity
        )
        self.dedup_gate = DeduplicationGate(self.ranker, threshold=settings.dedup_threshold)
        self.capacity = CapacityEnforcer(
            store,
            max_per_owner=settings.max_memories_per_owner,
            batch_size=settings.eviction_batch_size,
        )
        self.runtime = RuntimeState(
            write_lanes=OwnerWriteLanes(
                global_concurrency=settings.write_global_concurrency,
                wait_warn_ms=settings.write_wait_warn_ms,
            ),
            access_worker=AccessUpdateWorker(
                store.touch_access,
                queue_maxsize=settings.access_queue_maxsize,
                retry_delay_ms=settings.access_retry_delay_ms,
            ),
            decay_scheduler=DecayScheduler(
                store,
                policy=DecayPolicy(
                    age_threshold_days=settings.decay_age_threshold_days,
                    decay_factor=settings.decay_factor,
                    importance_floor=settings.decay_importance_floor,
                ),
                interval_seconds=settings.decay_interval_seconds,
                check_interval_seconds=settings.decay_check_interval_seconds,
                enabled=settings.decay_enabled,
            ),
        )
        self.coordinator = HybridRetrievalCoordinator(
            self.ranker,
            self.matcher,
            min_results=settings.search_fallback_min_results,
            max_tokens=settings.search_fallback_max_tokens,
            access_recorder=self.runtime.access_worker.submit,
        )
        self._opened = False

    async def open(self) -> None:
        await self.record_store.init_db()
        await self.embedder.open()
        await self.runtime.ensure_started()
        self._opened = True
        logger.info(
            "memory engine opened (embedding=%s, dim=%d, max_per_owner=%d)",
            type(self.embedder).__name__,
            self.embedder.dimension,
            self.settings.max_memories_per_owner,
        )

    async def close(self) -> None:
        try:
            await self.runtime.shutdown()
            await self.embedder.close()
        finally:
            await self.record_store.close()
            self._opened = False
        logger.info("memory engine closed")

    # ------------------------------------------------------------------
    # validation
    # ------------------------------------------------------------------

    def _validate_owner_id(self, owner_id: Any) -> str:
        if not isinstance(owner_id, str):
            raise InvalidInput("owner_id must be a string")
        value = owner_id.strip()
        if not value:
            raise InvalidInput("owner_id must not be empty")
        if len(value) > self.settings.owner_id_max_length:
            raise InvalidInput(
                f"owner_id must be at most {self.settings.owner_id_max_length} characters"
            )
        return value

    @staticmethod
    def _validate_text(value: Any, name: str) -> str:
        if not isinstance(value, str) or not value.strip():
            raise InvalidInput(f"{name} must be a non-empty string")
        return value.strip()

    @staticmethod
    def _validate_unit_number(value: Any, name: str) -> float:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise InvalidInput(f"{name} must be a number")
        number = float(value)
        if not math.isfinite(number) or not 0.0 <= number <= 1.0:
            raise InvalidInput(f"{name} must be within [0, 1] (got {value!r})")
        return number

    @staticmethod
    def _validate_limit(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 1:
            raise InvalidInput(f"limit must be a positive integer (got {value!r})")
        return value

    @staticmethod
    def _validate_metadata(metadata: Any) -> Dict[str, Any]:
        if metadata is None:
            return {}
        if not isinstance(metadata, dict):
            raise InvalidInput("metadata must be an object")
        try:
            json.dumps(metadata)
        except (TypeError, ValueError) as exc:
            raise InvalidInput(f"metadata must be JSON-serializable: {exc}") from exc
        return dict(metadata)

    # ------------------------------------------------------------------
    # operations
    # ------------------------------------------------------------------

    async def search(
        self,
        owner_id: str,
        text: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> List[SearchResult]:
        owner = self._validate_owner_id(owner_id)
        query = self._validate_text(text, "query")
        limit_value = self._validate_limit(
            self.settings.search_default_limit if limit is None else limit
        )
        threshold_value = self._validate_unit_number(
            self.settings.search_default_threshold if threshold is None else threshold,
            "threshold",
        )

        vector = await self.embedder.embed(query)
        return await self.coordinator.search(
            owner, query, vector, limit=limit_value, threshold=threshold_value
        )

    async def store(
        self,
        owner_id: str,
        text: str,
        importance: float = 0.5,
        category: Any = Category.FACT,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StoreResult:
        owner = self._validate_owner_id(owner_id)
        content = self._validate_text(text, "content")
        importance_value = self._validate_unit_number(importance, "importance")
        category_value = Category.parse(category)
        metadata_value = self._validate_metadata(metadata)

        vector = await self.embedder.embed(content)

        async def _write() -> StoreResult:
            decision = await self.dedup_gate.check(owner, vector)
            if decision.is_duplicate:
                logger.info(
                    "duplicate write for owner=%s suppressed: %s", owner, decision.reason
                )
                return StoreResult(
                    id=int(decision.target_id),
                    created=False,
                    content=decision.target_content or "",
                    duplicate_of=decision.target_id,
                    similarity=decision.similarity,
                )
            memory, evicted_ids = await self.capacity.insert(
                owner,
                content,
                vector,
                importance=importance_value,
                category=category_value.value,
                metadata=metadata_value,
            )
            return StoreResult(
                id=int(memory["id"]),
                created=True,
                content=memory["content"],
                evicted_ids=evicted_ids,
            )

        return await self.runtime.write_lanes.run_write(
            owner_id=owner, operation="store", task=_write
        )

    async def forget(self, owner_id: str, query: Optional[str] = None) -> int:
        owner = self._validate_owner_id(owner_id)
        query_value: Optional[str] = None
        if query is not None:
            query_value = self._validate_text(query, "query")

        async def _delete() -> int:
            deleted = await self.record_store.forget_memories(owner, query_value)
            logger.info(
                "forgot %d memories for owner=%s (query=%r)", deleted, owner, query_value
            )
            return deleted

        return await self.runtime.write_lanes.run_write(
            owner_id=owner, operation="forget", task=_delete
        )

    async def evict(self, owner_id: str, k: int = 1) -> List[int]:
        owner = self._validate_owner_id(owner_id)
        count = self._validate_limit(k)
        return await self.runtime.write_lanes.run_write(
            owner_id=owner,
            operation="evict",
            task=lambda: self.capacity.evict(owner, count),
        )

    async def delete(self, owner_id: str, memory_id: int) -> bool:
        owner = self._validate_owner_id(owner_id)
        if isinstance(memory_id, bool) or not isinstance(memory_id, int) or memory_id < 1:
            raise InvalidInput(f"memory_id must be a positive integer (got {memory_id!r})")

        async def _delete() -> bool:
            deleted = await self.record_store.delete_memory(owner, memory_id)
            if deleted:
                logger.info("deleted memory %d for owner=%s", memory_id, owner)
            return deleted

        return await self.runtime.write_lanes.run_write(
            owner_id=owner, operation="delete", task=_delete
        )

    async def count(self, owner_id: str) -> int:
        owner = self._validate_owner_id(owner_id)
        return await self.record_store.count_memories(owner)

    async def list(self, owner_id: str, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        """Every memory of ``owner_id``, by importance then recency."""
        owner = self._validate_owner_id(owner_id)
        if limit is not None:
            limit = self._validate_limit(limit)
        return await self.record_store.list_memories(owner, limit=limit)

    async def decay(
        self,
        age_threshold_days: Optional[float] = None,
        decay_factor: Optional[float] = None,
        importance_floor: Optional[float] = None,
        reference_time: Optional[datetime] = None,
        *,
        force: bool = True,
        reason: str = "manual",
    ) -> Dict[str, Any]:
        scheduler = self.runtime.decay_scheduler
        policy = scheduler.policy.with_overrides(
            age_threshold_days=age_threshold_days,
            decay_factor=decay_factor,
            importance_floor=importance_floor,
        )
        return await scheduler.run_decay(
            force=force, reason=reason, policy=policy, reference_time=reference_time
        )

    async def drain_access_updates(self, timeout: Optional[float] = None) -> bool:
        return await self.runtime.access_worker.drain(timeout=timeout)

    async def status(self) -> Dict[str, Any]:
        payload = await self.runtime.status()
        payload["opened"] = self._opened
        payload["embedding"] = {
            "provider": type(self.embedder).__name__,
            "dimension": self.embedder.dimension,
        }
        payload["capacity"] = {
            "max_per_owner": self.capacity.max_per_owner,
            "eviction_batch_size": self.capacity.batch_size,
        }
        return payload


def build_engine(settings: EngineSettings) -> MemoryEngine:
    store = SQLiteClient(
        settings.database_url,
        embedding_dim=settings.embedding_dim,
        busy_timeout_seconds=settings.database_busy_timeout_seconds,
    )
    embedder = create_embedding_provider(settings)
    return MemoryEngine(store, embedder, settings)
