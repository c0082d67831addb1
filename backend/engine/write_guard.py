from typing import Sequence

from .models import GuardDecision
from .retrieval import SimilarityRanker

ACTION_ADD = "ADD"
ACTION_NOOP = "NOOP"


class DeduplicationGate:
    """Pre-insert check against near-identical entries of the same owner.

    A hit at or above ``threshold`` turns the write into a NOOP that points
    at the existing entry instead of storing noise.
    """

    def __init__(self, ranker: SimilarityRanker, *, threshold: float = 0.95) -> None:
        if not 0.0 <= float(threshold) <= 1.0:
            raise ValueError("dedup threshold must be within [0, 1]")
        self._ranker = ranker
        self.threshold = float(threshold)

    async def check(self, owner_id: str, vector: Sequence[float]) -> GuardDecision:
        hits = await self._ranker.rank(
            owner_id, vector, limit=1, threshold=self.threshold
        )
        if not hits:
            return GuardDecision(
                action=ACTION_ADD,
                reason=f"no existing memory at similarity >= {self.threshold:.2f}",
            )

        top = hits[0]
        return GuardDecision(
            action=ACTION_NOOP,
            reason=(
                f"near-identical memory {top.id} "
                f"(similarity {top.similarity:.4f} >= {self.threshold:.2f})"
            ),
            target_id=top.id,
            target_content=str(top.memory.get("content") or ""),
            similarity=top.similarity,
        )
