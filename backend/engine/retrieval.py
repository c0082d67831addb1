"""
Read path: vector ranking, lexical fallback and the coordinator that merges
them.

The coordinator never lets access accounting fail a search; an empty list
always means "no matches" and errors propagate as exceptions.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import MATCH_LEXICAL, MATCH_VECTOR, SearchResult

logger = logging.getLogger(__name__)

AccessRecorder = Callable[[str, List[int]], Any]


class RecordStore(Protocol):
    async def rank_by_vector(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        *,
        limit: int,
        threshold: float,
    ) -> List[Tuple[Dict[str, Any], float]]: ...

    async def match_substring(
        self, owner_id: str, query: str, *, limit: int
    ) -> List[Dict[str, Any]]: ...


class SimilarityRanker:
    """Owner-scoped cosine ranking with a similarity floor. No side effects."""

    def __init__(self, store: RecordStore) -> None:
        self._store = store

    async def rank(
        self,
        owner_id: str,
        query_vector: Sequence[float],
        *,
        limit: int,
        threshold: float,
    ) -> List[SearchResult]:
        if limit <= 0:
            return []
        rows = await self._store.rank_by_vector(
            owner_id, query_vector, limit=limit, threshold=threshold
        )
        results = [
            SearchResult(memory=memory, similarity=float(score), match=MATCH_VECTOR)
            for memory, score in rows
            if float(score) >= threshold
        ]
        results.sort(key=lambda item: (-item.similarity, item.id))
        return results[:limit]


class LexicalFallbackMatcher:
    """Case-insensitive substring search, stamped with a neutral score."""

    def __init__(self, store: RecordStore, *, neutral_similarity: float = 0.5) -> None:
        self._store = store
        self.neutral_similarity = min(1.0, max(0.0, float(neutral_similarity)))

    async def match(self, owner_id: str, query_text: str, *, limit: int) -> List[SearchResult]:
        if limit <= 0 or not (query_text or "").strip():
            return []
        rows = await self._store.match_substring(owner_id, query_text, limit=limit)
        return [
            SearchResult(
                memory=memory,
                similarity=self.neutral_similarity,
                match=MATCH_LEXICAL,
            )
            for memory in rows[:limit]
        ]


class HybridRetrievalCoordinator:
    """
    Vector search first; lexical fallback for short queries with few hits.

    Steps:
    1. rank by vector
    2. when fewer than ``min_results`` came back and the query has at most
       ``max_tokens`` whitespace tokens, run the lexical matcher
    3. append fallback hits not already present (vector hits stay first)
    4. truncate to ``limit``
    5. hand the returned ids to the access recorder without waiting on it
    """

    def __init__(
        self,
        ranker: SimilarityRanker,
        matcher: LexicalFallbackMatcher,
        *,
        min_results: int = 3,
        max_tokens: int = 3,
        access_recorder: Optional[AccessRecorder] = None,
    ) -> None:
        self._ranker = ranker
        self._matcher = matcher
        self.min_results = max(0, int(min_results))
        self.max_tokens = max(0, int(max_tokens))
        self._access_recorder = access_recorder

    @staticmethod
    def token_count(query_text: str) -> int:
        return len((query_text or "").split())

    def should_fallback(self, vector_hits: int, query_text: str) -> bool:
        return (
            vector_hits < self.min_results
            and self.token_count(query_text) <= self.max_tokens
        )

    @staticmethod
    def merge(
        ranked: List[SearchResult], fallback: List[SearchResult]
    ) -> List[SearchResult]:
        merged = list(ranked)
        seen = {item.id for item in ranked}
        for item in fallback:
            if item.id in seen:
                continue
            seen.add(item.id)
            merged.append(item)
        return merged

    async def search(
        self,
        owner_id: str,
        query_text: str,
        query_vector: Sequence[float],
        *,
        limit: int,
        threshold: float,
    ) -> List[SearchResult]:
        ranked = await self._ranker.rank(
            owner_id, query_vector, limit=limit, threshold=threshold
        )
        fallback: List[SearchResult] = []
        if self.should_fallback(len(ranked), query_text):
            fallback = await self._matcher.match(owner_id, query_text, limit=limit)

        results = self.merge(ranked, fallback)[:limit]
        if results:
            self._record_access(owner_id, [item.id for item in results])
        return results

    def _record_access(self, owner_id: str, memory_ids: List[int]) -> None:
        if self._access_recorder is None:
            return
        try:
            self._access_recorder(owner_id, memory_ids)
        except Exception:
            logger.warning(
                "access update for owner=%s ids=%s could not be scheduled",
                owner_id,
                memory_ids,
                exc_info=True,
            )
