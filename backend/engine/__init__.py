from .config import EngineSettings
from .errors import (
    EmbeddingUnavailable,
    InvalidInput,
    MemoryEngineError,
    StoreUnavailable,
)
from .models import Category, GuardDecision, SearchResult, StoreResult

__all__ = [
    "Category",
    "EmbeddingUnavailable",
    "EngineSettings",
    "GuardDecision",
    "InvalidInput",
    "MemoryEngineError",
    "SearchResult",
    "StoreResult",
    "StoreUnavailable",
]
