"""
Error taxonomy for the memory engine.

Callers decide retry policy; the engine itself never retries provider or
store failures. A duplicate write is not an error (see ``StoreResult``).
"""


class MemoryEngineError(Exception):
    """Base class for engine failures surfaced to callers."""


class InvalidInput(MemoryEngineError, ValueError):
    """Malformed owner id, empty content, out-of-range numbers, etc.

    Raised before any side effect takes place.
    """


class EmbeddingUnavailable(MemoryEngineError):
    """The embedding provider is not ready or failed to produce a vector."""


class StoreUnavailable(MemoryEngineError):
    """The persistence backend is unreachable or refused the operation."""
