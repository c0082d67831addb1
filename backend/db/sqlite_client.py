"""
SQLite record store for the memory engine.

Every read and write is scoped to one ``owner_id``; no method returns,
mutates or deletes a row belonging to another owner. Vectors are stored as
JSON text and ranked in Python, which keeps the store dependency-free
beyond SQLAlchemy + aiosqlite.
"""

import json
import math
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    Index,
    Integer,
    String,
    Text,
    case,
    delete,
    func,
    select,
    text,
    update,
)
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from engine.errors import InvalidInput, StoreUnavailable

Base = declarative_base()


def _utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def _utc_now_naive() -> datetime:
    """Naive UTC datetime, the format stored in every DateTime column."""
    return _utc_now().replace(tzinfo=None)


def _normalize_db_datetime(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _clamp_unit(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


# =============================================================================
# ORM Models
# =============================================================================


class Memory(Base):
    """One remembered fact, owned by exactly one owner.

    ``content`` and ``embedding`` never change after insert. ``importance``
    only moves down (decay); ``access_count`` / ``last_accessed_at`` only
    move on search hits.
    """

    __tablename__ = "memories"
    __table_args__ = (
        Index(
            "idx_memories_owner_eviction",
            "owner_id",
            "importance",
            "access_count",
            "created_at",
        ),
        # AUTOINCREMENT keeps ids monotonic even after the max row is evicted.
        {"sqlite_autoincrement": True},
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    owner_id = Column(String(100), nullable=False, index=True)
    content = Column(Text, nullable=False)
    embedding = Column(Text, nullable=False)
    importance = Column(Float, nullable=False, default=0.5, server_default=text("0.5"))
    category = Column(String(32), nullable=False, default="FACT")
    metadata_json = Column("metadata", Text, nullable=False, default="{}")
    access_count = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_accessed_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now_naive)
    updated_at = Column(DateTime, nullable=False, default=_utc_now_naive)


class RuntimeMeta(Base):
    """Key/value bookkeeping persisted across restarts."""

    __tablename__ = "runtime_meta"

    key = Column(String(128), primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(DateTime, default=_utc_now_naive, onupdate=_utc_now_naive)


# =============================================================================
# Client
# =============================================================================


class SQLiteClient:
    """
    Async SQLite client for owner-partitioned memories.

    Core operations:
    - insert_memory: evict + insert in one transaction
    - evict_lowest: drop the lowest-value entries of one owner
    - rank_by_vector / match_substring: the two retrieval read shapes
    - forget_memories: bulk delete by predicate
    - touch_access: access accounting for search hits
    - apply_importance_decay: owner-agnostic decay sweep
    """

    def __init__(
        self,
        database_url: str,
        *,
        embedding_dim: int = 384,
        busy_timeout_seconds: float = 15.0,
    ):
        """
        Initialize the SQLite client.

        Args:
            database_url: SQLAlchemy async URL, e.g.
                         "sqlite+aiosqlite:///memory.db"
            embedding_dim: Length every stored and query vector must have.
            busy_timeout_seconds: How long sqlite waits on a locked database.
        """
        if embedding_dim <= 0:
            raise ValueError("embedding_dim must be a positive integer")
        self.database_url = database_url
        self.embedding_dim = embedding_dim
        self.engine = create_async_engine(
            database_url,
            echo=False,
            connect_args={"timeout": max(0.0, float(busy_timeout_seconds))},
        )
        self.async_session = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )
        self._closed = False

    async def init_db(self) -> None:
        """Create tables if they don't exist."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"database init failed: {exc}") from exc
        self._closed = False

    async def close(self) -> None:
        """Close the database connection."""
        self._closed = True
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self):
        """Transactional session; commits on success, rolls back on any error."""
        if self._closed:
            raise StoreUnavailable("record store is closed")
        try:
            async with self.async_session() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise
        except (OperationalError, InterfaceError) as exc:
            raise StoreUnavailable(f"record store unavailable: {exc}") from exc

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _memory_to_dict(memory: Memory) -> Dict[str, Any]:
        try:
            metadata = json.loads(memory.metadata_json or "{}")
        except (TypeError, ValueError):
            metadata = {}
        return {
            "id": memory.id,
            "owner_id": memory.owner_id,
            "content": memory.content,
            "importance": float(memory.importance),
            "category": memory.category,
            "metadata": metadata,
            "access_count": int(memory.access_count or 0),
            "last_accessed_at": _isoformat(memory.last_accessed_at),
            "created_at": _isoformat(memory.created_at),
            "updated_at": _isoformat(memory.updated_at),
        }

    def _check_vector(self, vector: Sequence[float]) -> List[float]:
        values = [float(v) for v in vector]
        if len(values) != self.embedding_dim:
            raise InvalidInput(
                f"embedding must have {self.embedding_dim} dimensions, got {len(values)}"
            )
        return values

    @staticmethod
    def _decode_vector(raw: Optional[str]) -> List[float]:
        try:
            parsed = json.loads(raw or "[]")
        except (TypeError, ValueError):
            return []
        if not isinstance(parsed, list):
            return []
        return [float(v) for v in parsed]

    @staticmethod
    def _cosine_similarity(v1: List[float], v2: List[float]) -> float:
        if not v1 or not v2 or len(v1) != len(v2):
            return 0.0
        dot = sum(a * b for a, b in zip(v1, v2))
        norm1 = math.sqrt(sum(a * a for a in v1))
        norm2 = math.sqrt(sum(b * b for b in v2))
        if norm1 <= 0 or norm2 <= 0:
            return 0.0
        return _clamp_unit(dot / (norm1 * norm2))

    @staticmethod
    def _normalize_positive_int_ids(raw_ids: Optional[Sequence[Any]]) -> List[int]:
        normalized_ids: List[int] = []
        seen_ids = set()
        if not raw_ids:
            return normalized_ids
        for item in raw_ids:
            try:
                parsed = int(item)
            except (TypeError, ValueError):
                continue
            if parsed <= 0 or parsed in seen_ids:
                continue
            seen_ids.add(parsed)
            normalized_ids.append(parsed)
        return normalized_ids

    @staticmethod
    def _contains_casefold(content: str, needle: str) -> bool:
        return needle in (content or "").casefold()

    # ------------------------------------------------------------------
    # writes
    # ------------------------------------------------------------------

    async def _evict_in_session(
        self, session: AsyncSession, owner_id: str, count: int
    ) -> List[int]:
        if count <= 0:
            return []
        victims = (
            select(Memory.id)
            .where(Memory.owner_id == owner_id)
            .order_by(
                Memory.importance.asc(),
                Memory.access_count.asc(),
                Memory.created_at.asc(),
                Memory.id.asc(),
            )
            .limit(count)
        )
        result = await session.execute(
            delete(Memory)
            .where(Memory.owner_id == owner_id)
            .where(Memory.id.in_(victims))
            .returning(Memory.id)
            .execution_options(synchronize_session=False)
        )
        return sorted(int(row_id) for row_id in result.scalars().all())

    async def evict_lowest(self, owner_id: str, count: int) -> List[int]:
        """Delete the ``count`` lowest-value entries of one owner.

        Order is importance, then access count, then age, then id; all
        ascending. Returns the evicted ids.
        """
        async with self.session() as session:
            return await self._evict_in_session(session, owner_id, count)

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
    ) -> Tuple[Dict[str, Any], List[int]]:
        """
        Insert a new memory, evicting ``evict_count`` entries first.

        Both steps share one transaction: if the insert fails nothing is
        evicted, and if the eviction fails nothing is inserted.

        Returns:
            (memory dict, evicted ids)
        """
        vector = self._check_vector(embedding)
        metadata_json = json.dumps(metadata or {}, ensure_ascii=False)
        now_value = _utc_now_naive()

        async with self.session() as session:
            evicted_ids = await self._evict_in_session(session, owner_id, evict_count)
            memory = Memory(
                owner_id=owner_id,
                content=content,
                embedding=json.dumps(vector),
                importance=_clamp_unit(importance),
                category=category,
                metadata_json=metadata_json,
                access_count=0,
                last_accessed_at=None,
                created_at=now_value,
                updated_at=now_value,
            )
            session.add(memory)
            await session.flush()
            return self._memory_to_dict(memory), evicted_ids

    async def forget_memories(self, owner_id: str, query: Optional[str] = None) -> int:
        """Delete entries containing ``query`` (or all entries when it is None).

        Returns the exact number of rows removed.
        """
        async with self.session() as session:
            if query is None:
                result = await session.execute(
                    delete(Memory)
                    .where(Memory.owner_id == owner_id)
                    .execution_options(synchronize_session=False)
                )
                return int(result.rowcount or 0)

            needle = query.strip().casefold()
            if not needle:
                raise InvalidInput("forget query must not be blank")
            rows = await session.execute(
                select(Memory.id, Memory.content).where(Memory.owner_id == owner_id)
            )
            matched_ids = [
                row.id for row in rows if self._contains_casefold(row.content, needle)
            ]
            if not matched_ids:
                return 0
            result = await session.execute(
                delete(Memory)
                .where(Memory.owner_id == owner_id)
                .where(Memory.id.in_(matched_ids))
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    async def delete_memory(self, owner_id: str, memory_id: int) -> bool:
        async with self.session() as session:
            result = await session.execute(
                delete(Memory)
                .where(Memory.owner_id == owner_id)
                .where(Memory.id == int(memory_id))
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)

    async def touch_access(self, owner_id: str, memory_ids: Sequence[Any]) -> int:
        """Bump ``access_count`` and ``last_accessed_at`` for search hits."""
        normalized_ids = self._normalize_positive_int_ids(memory_ids)
        if not normalized_ids:
            return 0
        async with self.session() as session:
            result = await session.execute(
                update(Memory)
                .where(Memory.owner_id == owner_id)
                .where(Memory.id.in_(normalized_ids))
                .values(
                    access_count=Memory.access_count + 1,
                    last_accessed_at=_utc_now_naive(),
                )
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)

    async def apply_importance_decay(
        self,
        *,
        age_threshold_days: float,
        decay_factor: float,
        importance_floor: float,
        reference_time: Optional[datetime] = None,
        last_run_key: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Lower importance of stale entries across all owners in one UPDATE.

        An entry is stale when its last access (or creation, if never
        accessed) is strictly older than ``age_threshold_days``. New
        importance is ``max(floor, importance * factor)``; entries already at
        or below the floor are left as they are.

        When ``last_run_key`` is given, the reference time is written to that
        runtime meta key in the same transaction as the update.
        """
        now_value = _normalize_db_datetime(reference_time) or _utc_now_naive()
        cutoff = now_value - timedelta(days=float(age_threshold_days))
        floor = float(importance_floor)
        factor = float(decay_factor)
        reference_column = func.coalesce(Memory.last_accessed_at, Memory.created_at)
        decayed = Memory.importance * factor

        async with self.session() as session:
            result = await session.execute(
                update(Memory)
                .where(reference_column < cutoff)
                .where(Memory.importance > floor)
                .values(
                    importance=case((decayed < floor, floor), else_=decayed),
                    updated_at=now_value,
                )
                .execution_options(synchronize_session=False)
            )
            updated = int(result.rowcount or 0)
            if last_run_key is not None:
                await self._upsert_runtime_meta(
                    session, last_run_key, now_value.isoformat()
                )

        return {
            "updated_memories": updated,
            "cutoff": cutoff.isoformat(),
            "reference_time": now_value.isoformat(),
        }

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------

    async def count_memories(self, owner_id: str) -> int:
        async with self.session() as session:
            result = await session.execute(
                select(func.count(Memory.id)).where(Memory.owner_id == owner_id)
            )
            return int(result.scalar_one() or 0)

    async def get_memory(self, owner_id: str, memory_id: int) -> Optional[Dict[str, Any]]:
        async with self.session() as session:
            result = await session.execute(
                select(Memory)
                .where(Memory.owner_id == owner_id)
                .where(Memory.id == int(memory_id))
            )
            memory = result.scalar_one_or_none()
            return self._memory_to_dict(memory) if memory is not None else None

    async def list_memories(
        self, owner_id: str, *, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """All entries of one owner, most important and newest first."""
        stmt = (
            select(Memory)
            .where(Memory.owner_id == owner_id)
            .order_by(
                Memory.importance.desc(),
                Memory.created_at.desc(),
                Memory.id.desc(),
            )
        )
        if limit is not None:
            stmt = stmt.limit(max(0, int(limit)))
        async with self.session() as session:
            result = await session.execute(stmt)
            return [self._memory_to_dict(memory) for memory in result.scalars()]

    async def rank_by_vector(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        *,
        limit: int,
        threshold: float,
    ) -> List[Tuple[Dict[str, Any], float]]:
        """
        Top-``limit`` entries of one owner by cosine similarity.

        Only entries with similarity >= ``threshold`` are returned, ordered by
        similarity descending and id ascending.
        """
        vector = self._check_vector(query_vector)
        if limit <= 0:
            return []
        async with self.session() as session:
            result = await session.execute(
                select(Memory).where(Memory.owner_id == owner_id)
            )
            memories = list(result.scalars().all())

        scored: List[Tuple[Memory, float]] = []
        for memory in memories:
            stored = self._decode_vector(memory.embedding)
            if len(stored) != len(vector):
                continue
            similarity = self._cosine_similarity(vector, stored)
            if similarity >= threshold:
                scored.append((memory, similarity))

        scored.sort(key=lambda item: (-item[1], item[0].id))
        return [(self._memory_to_dict(memory), score) for memory, score in scored[:limit]]

    async def match_substring(
        self, owner_id: str, query: str, *, limit: int
    ) -> List[Dict[str, Any]]:
        """
        Entries whose content contains ``query``, ignoring case.

        Matching uses ``str.casefold`` so it is Unicode-aware. Results are
        ordered by importance desc, updated_at desc, id desc.
        """
        needle = (query or "").strip().casefold()
        if not needle or limit <= 0:
            return []
        async with self.session() as session:
            result = await session.execute(
                select(Memory)
                .where(Memory.owner_id == owner_id)
                .order_by(
                    Memory.importance.desc(),
                    Memory.updated_at.desc(),
                    Memory.id.desc(),
                )
            )
            matches: List[Dict[str, Any]] = []
            for memory in result.scalars():
                if self._contains_casefold(memory.content, needle):
                    matches.append(self._memory_to_dict(memory))
                    if len(matches) >= limit:
                        break
            return matches

    # ------------------------------------------------------------------
    # runtime meta
    # ------------------------------------------------------------------

    async def get_runtime_meta(self, key: str) -> Optional[str]:
        """Read a runtime metadata value."""
        key_value = (key or "").strip()
        if not key_value:
            return None
        async with self.session() as session:
            result = await session.execute(
                select(RuntimeMeta.value).where(RuntimeMeta.key == key_value)
            )
            value = result.scalar_one_or_none()
            return str(value) if value is not None else None

    async def set_runtime_meta(self, key: str, value: str) -> None:
        """Persist a runtime metadata value."""
        async with self.session() as session:
            await self._upsert_runtime_meta(session, key, value)

    @staticmethod
    async def _upsert_runtime_meta(session: AsyncSession, key: str, value: str) -> None:
        key_value = (key or "").strip()
        if not key_value:
            raise ValueError("key must not be empty")
        await session.execute(
            text(
                "INSERT INTO runtime_meta(key, value, updated_at) "
                "VALUES (:key, :value, :updated_at) "
                "ON CONFLICT(key) DO UPDATE SET "
                "value = excluded.value, "
                "updated_at = excluded.updated_at"
            ),
            {
                "key": key_value,
                "value": str(value),
                "updated_at": _utc_now_naive().isoformat(sep=" "),
            },
        )
