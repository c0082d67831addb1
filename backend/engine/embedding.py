"""
Embedding providers.

Both providers map text to a fixed-length, unit-normalized vector and are
deterministic for identical input. The remote provider talks to any
OpenAI-compatible ``/embeddings`` endpoint.
"""

import hashlib
import math
import re
from typing import Any, List, Optional, Protocol

import httpx

from .config import EngineSettings
from .errors import EmbeddingUnavailable

_WHITESPACE_RE = re.compile(r"\s+")
_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


class EmbeddingProvider(Protocol):
    dimension: int

    async def open(self) -> None: ...

    async def close(self) -> None: ...

    async def embed(self, text: str) -> List[float]: ...


def _normalize_text(content: str) -> str:
    return _WHITESPACE_RE.sub(" ", (content or "").strip()).casefold()


def unit_normalize(vector: List[float]) -> List[float]:
    norm = math.sqrt(sum(v * v for v in vector))
    if norm <= 0:
        return [0.0] * len(vector)
    return [v / norm for v in vector]


class HashEmbeddingProvider:
    """Offline token-hash projection. Always ready."""

    def __init__(self, dimension: int = 384) -> None:
        if dimension <= 0:
            raise ValueError("dimension must be a positive integer")
        self.dimension = dimension

    async def open(self) -> None:
        return None

    async def close(self) -> None:
        return None

    async def embed(self, text: str) -> List[float]:
        return self.embed_sync(text)

    def embed_sync(self, text: str) -> List[float]:
        vector = [0.0] * self.dimension
        normalized = _normalize_text(text)
        tokens = _TOKEN_RE.findall(normalized)
        if not tokens and normalized:
            tokens = list(normalized)

        for token in tokens:
            digest = hashlib.sha256(token.encode("utf-8")).digest()
            for i in range(0, 8, 2):
                idx = int.from_bytes(digest[i : i + 2], "big") % self.dimension
                sign = -1.0 if (digest[i + 1] & 1) else 1.0
                weight = 1.0 + (digest[(i + 2) % len(digest)] / 255.0)
                vector[idx] += sign * weight

        return unit_normalize(vector)


class RemoteEmbeddingProvider:
    """OpenAI-compatible embeddings over HTTP.

    The HTTP client is created by ``open()`` and released by ``close()``;
    calling ``embed()`` outside that window raises ``EmbeddingUnavailable``.
    """

    def __init__(
        self,
        *,
        api_base: str,
        model: str,
        dimension: int,
        api_key: str = "",
        timeout_seconds: float = 8.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_base = self._normalize_api_base(api_base)
        self.model = model
        self.dimension = dimension
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @staticmethod
    def _normalize_api_base(base: str) -> str:
        normalized = (base or "").strip().rstrip("/")
        if normalized.lower().endswith("/embeddings"):
            return normalized[: -len("/embeddings")]
        return normalized

    async def open(self) -> None:
        if self._client is not None:
            return
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(self._timeout_seconds),
            headers=headers,
            transport=self._transport,
        )

    async def close(self) -> None:
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()

    async def embed(self, text: str) -> List[float]:
        if self._client is None:
            raise EmbeddingUnavailable("embedding model is not loaded")
        if not self.api_base or not self.model:
            raise EmbeddingUnavailable("embedding api base or model is not configured")

        payload = {"model": self.model, "input": _normalize_text(text)}
        try:
            response = await self._client.post(f"{self.api_base}/embeddings", json=payload)
            response.raise_for_status()
            parsed = response.json()
        except (httpx.HTTPError, httpx.InvalidURL, ValueError) as exc:
            raise EmbeddingUnavailable(
                f"embedding request failed: {type(exc).__name__}: {exc}"
            ) from exc

        embedding = self._extract_embedding(parsed)
        if embedding is None:
            raise EmbeddingUnavailable("embedding response is invalid")
        if len(embedding) != self.dimension:
            raise EmbeddingUnavailable(
                f"expected {self.dimension} dimensions, got {len(embedding)}"
            )
        return unit_normalize(embedding)

    @staticmethod
    def _extract_embedding(payload: Any) -> Optional[List[float]]:
        candidates: List[Any] = []
        if isinstance(payload, dict):
            data = payload.get("data")
            if isinstance(data, list) and data:
                first_item = data[0]
                if isinstance(first_item, dict):
                    candidates.append(first_item.get("embedding"))
                elif isinstance(first_item, list):
                    candidates.append(first_item)
            candidates.append(payload.get("embedding"))
        elif isinstance(payload, list):
            candidates.append(payload)

        for candidate in candidates:
            if not isinstance(candidate, list) or not candidate:
                continue
            try:
                values = [float(v) for v in candidate]
            except (TypeError, ValueError):
                continue
            if all(math.isfinite(v) for v in values):
                return values
        return None


def create_embedding_provider(settings: EngineSettings) -> EmbeddingProvider:
    backend = (settings.embedding_backend or "hash").strip().lower()
    if backend in {"api", "openai", "router", "remote"}:
        return RemoteEmbeddingProvider(
            api_base=settings.embedding_api_base,
            model=settings.embedding_model,
            dimension=settings.embedding_dim,
            api_key=settings.embedding_api_key,
            timeout_seconds=settings.embedding_timeout_seconds,
        )
    if backend in {"hash", "local"}:
        return HashEmbeddingProvider(settings.embedding_dim)
    raise ValueError(f"Unsupported embedding backend '{settings.embedding_backend}'")
