"""
Engine settings read from the environment.

A ``.env`` file found from the working directory is loaded first; values
that fail to parse fall back to their defaults.
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Dict, List, Optional

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)


def _env_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if minimum is None else max(minimum, value)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


def _first_env(names: List[str], default: str = "") -> str:
    for name in names:
        value = os.getenv(name)
        if value is None:
            continue
        candidate = value.strip()
        if candidate:
            return candidate
    return default


@dataclass(frozen=True)
class EngineSettings:
    database_url: str = "sqlite+aiosqlite:///memory.db"
    database_busy_timeout_seconds: float = 15.0

    embedding_backend: str = "hash"
    embedding_model: str = "hash-v1"
    embedding_api_base: str = ""
    embedding_api_key: str = ""
    embedding_dim: int = 384
    embedding_timeout_seconds: float = 8.0

    owner_id_max_length: int = 100
    search_default_limit: int = 10
    search_default_threshold: float = 0.7
    search_fallback_min_results: int = 3
    search_fallback_max_tokens: int = 3
    search_fallback_similarity: float = 0.5

    dedup_threshold: float = 0.95
    max_memories_per_owner: int = 1000
    eviction_batch_size: int = 1

    decay_enabled: bool = True
    decay_age_threshold_days: float = 7.0
    decay_factor: float = 0.95
    decay_importance_floor: float = 0.1
    decay_interval_seconds: int = 86400
    decay_check_interval_seconds: int = 600

    write_global_concurrency: int = 4
    write_wait_warn_ms: int = 2000
    access_queue_maxsize: int = 1024
    access_retry_delay_ms: int = 50

    @classmethod
    def from_env(cls, **overrides: Any) -> "EngineSettings":
        database_url = overrides.pop("database_url", None) or os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError(
                "DATABASE_URL environment variable is not set. Please check your .env file."
            )
        values: Dict[str, Any] = {
            "database_url": database_url,
            "database_busy_timeout_seconds": max(
                0.0, _env_float("DATABASE_BUSY_TIMEOUT_SEC", 15.0)
            ),
            "embedding_backend": (
                os.getenv("RETRIEVAL_EMBEDDING_BACKEND", "hash").strip().lower() or "hash"
            ),
            "embedding_model": _first_env(
                ["RETRIEVAL_EMBEDDING_MODEL", "OPENAI_EMBEDDING_MODEL"], default="hash-v1"
            ),
            "embedding_api_base": _first_env(
                [
                    "RETRIEVAL_EMBEDDING_API_BASE",
                    "RETRIEVAL_EMBEDDING_BASE",
                    "OPENAI_BASE_URL",
                    "OPENAI_API_BASE",
                ]
            ),
            "embedding_api_key": _first_env(
                ["RETRIEVAL_EMBEDDING_API_KEY", "OPENAI_API_KEY"]
            ),
            "embedding_dim": _env_int("RETRIEVAL_EMBEDDING_DIM", 384, minimum=8),
            "embedding_timeout_seconds": max(
                1.0, _env_float("RETRIEVAL_REMOTE_TIMEOUT_SEC", 8.0)
            ),
            "owner_id_max_length": _env_int("MEMORY_OWNER_ID_MAX_LENGTH", 100, minimum=1),
            "search_default_limit": _env_int("SEARCH_DEFAULT_LIMIT", 10, minimum=1),
            "search_default_threshold": min(
                1.0, max(0.0, _env_float("SEARCH_DEFAULT_THRESHOLD", 0.7))
            ),
            "search_fallback_min_results": _env_int(
                "SEARCH_FALLBACK_MIN_RESULTS", 3, minimum=0
            ),
            "search_fallback_max_tokens": _env_int(
                "SEARCH_FALLBACK_MAX_TOKENS", 3, minimum=0
            ),
            "search_fallback_similarity": min(
                1.0, max(0.0, _env_float("SEARCH_FALLBACK_SIMILARITY", 0.5))
            ),
            "dedup_threshold": min(
                1.0, max(0.0, _env_float("WRITE_GUARD_DEDUP_THRESHOLD", 0.95))
            ),
            "max_memories_per_owner": _env_int("MAX_MEMORIES_PER_OWNER", 1000, minimum=1),
            "eviction_batch_size": _env_int("EVICTION_BATCH_SIZE", 1, minimum=1),
            "decay_enabled": _env_bool("DECAY_ENABLED", True),
            "decay_age_threshold_days": max(
                0.0, _env_float("DECAY_AGE_THRESHOLD_DAYS", 7.0)
            ),
            "decay_factor": _env_float("DECAY_FACTOR", 0.95),
            "decay_importance_floor": _env_float("DECAY_IMPORTANCE_FLOOR", 0.1),
            "decay_interval_seconds": _env_int(
                "DECAY_INTERVAL_SECONDS", 86400, minimum=10
            ),
            "decay_check_interval_seconds": _env_int(
                "DECAY_CHECK_INTERVAL_SECONDS", 600, minimum=1
            ),
            "write_global_concurrency": _env_int(
                "RUNTIME_WRITE_GLOBAL_CONCURRENCY", 4, minimum=1
            ),
            "write_wait_warn_ms": _env_int("RUNTIME_WRITE_WAIT_WARN_MS", 2000, minimum=1),
            "access_queue_maxsize": _env_int(
                "RUNTIME_ACCESS_QUEUE_MAXSIZE", 1024, minimum=8
            ),
            "access_retry_delay_ms": _env_int(
                "RUNTIME_ACCESS_RETRY_DELAY_MS", 50, minimum=0
            ),
        }
        known = {item.name for item in fields(cls)}
        unknown = set(overrides) - known
        if unknown:
            raise TypeError(f"Unknown settings: {', '.join(sorted(unknown))}")
        values.update(overrides)
        return cls(**values)
