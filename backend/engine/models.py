from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .errors import InvalidInput


class Category(str, Enum):
    """Descriptive memory kind. Not used for ranking."""

    FACT = "FACT"
    PREFERENCE = "PREFERENCE"
    OPINION = "OPINION"
    EVENT = "EVENT"
    CONTEXT = "CONTEXT"

    @classmethod
    def parse(cls, value: Any) -> "Category":
        if isinstance(value, cls):
            return value
        candidate = str(value or "").strip().upper()
        try:
            return cls(candidate)
        except ValueError:
            allowed = ", ".join(item.value for item in cls)
            raise InvalidInput(
                f"category must be one of: {allowed} (got {value!r})"
            ) from None


MATCH_VECTOR = "vector"
MATCH_LEXICAL = "lexical"


@dataclass
class SearchResult:
    memory: Dict[str, Any]
    similarity: float
    match: str = MATCH_VECTOR

    @property
    def id(self) -> int:
        return int(self.memory["id"])

    def to_dict(self) -> Dict[str, Any]:
        payload = dict(self.memory)
        payload["similarity"] = round(float(self.similarity), 6)
        payload["match"] = self.match
        return payload


@dataclass
class GuardDecision:
    """Outcome of the pre-insert duplicate check."""

    action: str
    reason: str
    method: str = "embedding"
    target_id: Optional[int] = None
    target_content: Optional[str] = None
    similarity: Optional[float] = None

    @property
    def is_duplicate(self) -> bool:
        return self.action == "NOOP"


@dataclass
class StoreResult:
    id: int
    created: bool
    content: str
    duplicate_of: Optional[int] = None
    similarity: Optional[float] = None
    evicted_ids: List[int] = field(default_factory=list)

    @property
    def is_duplicate(self) -> bool:
        return self.duplicate_of is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "created": self.created,
            "content": self.content,
            "duplicate_of": self.duplicate_of,
            "similarity": (
                round(float(self.similarity), 6) if self.similarity is not None else None
            ),
            "evicted_ids": list(self.evicted_ids),
        }
