import hmac
import os
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status
from pydantic import BaseModel

from engine.errors import (
    EmbeddingUnavailable,
    InvalidInput,
    MemoryEngineError,
    StoreUnavailable,
)
from engine.service import MemoryEngine

API_KEY_HEADER = "X-Memory-API-Key"
_LOOPBACK_HOSTS = frozenset({"127.0.0.1", "::1", "localhost"})


def _auth_failure(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "maintenance_auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _presented_key(header_key: Optional[str], authorization: Optional[str]) -> str:
    if header_key and header_key.strip():
        return header_key.strip()
    scheme, _, token = (authorization or "").strip().partition(" ")
    return token.strip() if scheme.lower() == "bearer" else ""


async def require_maintenance_api_key(
    request: Request,
    x_memory_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None),
) -> None:
    """
    Guard maintenance routes with ``MEMORY_API_KEY``.

    The key may arrive in the ``X-Memory-API-Key`` header or as a bearer
    token. With no key configured, ``MEMORY_API_KEY_ALLOW_INSECURE_LOCAL``
    admits loopback clients only.
    """
    configured = (os.getenv("MEMORY_API_KEY") or "").strip()
    if configured:
        presented = _presented_key(x_memory_api_key, authorization)
        if presented and hmac.compare_digest(presented.encode(), configured.encode()):
            return
        raise _auth_failure("invalid_or_missing_api_key")

    allow_local = (os.getenv("MEMORY_API_KEY_ALLOW_INSECURE_LOCAL") or "").strip().lower()
    if allow_local not in {"1", "true", "yes", "on"}:
        raise _auth_failure("api_key_not_configured")
    host = (request.client.host if request.client else "").strip().lower()
    if host not in _LOOPBACK_HOSTS:
        raise _auth_failure("insecure_local_override_requires_loopback")


def get_engine(request: Request) -> MemoryEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={"error": "engine_unavailable", "reason": "memory engine is not open"},
        )
    return engine


def http_error(exc: MemoryEngineError) -> HTTPException:
    """Map an engine failure onto the matching HTTP status."""
    if isinstance(exc, InvalidInput):
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_input", "reason": str(exc)},
        )
    if isinstance(exc, EmbeddingUnavailable):
        error = "embedding_unavailable"
    elif isinstance(exc, StoreUnavailable):
        error = "store_unavailable"
    else:
        error = "engine_error"
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail={"error": error, "reason": str(exc)},
    )


router = APIRouter(
    prefix="/maintenance",
    tags=["maintenance"],
    dependencies=[Depends(require_maintenance_api_key)],
)


class DecayRequest(BaseModel):
    age_threshold_days: Optional[float] = None
    decay_factor: Optional[float] = None
    importance_floor: Optional[float] = None
    force: bool = True
    reason: str = "api"


@router.post("/decay")
async def trigger_decay(
    payload: Optional[DecayRequest] = None,
    engine: MemoryEngine = Depends(get_engine),
):
    """Run one decay pass across all owners (forced unless told otherwise)."""
    request = payload or DecayRequest()
    try:
        result = await engine.decay(
            age_threshold_days=request.age_threshold_days,
            decay_factor=request.decay_factor,
            importance_floor=request.importance_floor,
            force=request.force,
            reason=request.reason or "api",
        )
    except MemoryEngineError as exc:
        raise http_error(exc) from exc
    return {
        "ok": True,
        "status": "ok" if result.get("applied") else "skipped",
        "result": result,
    }


@router.get("/runtime")
async def get_runtime_status(engine: MemoryEngine = Depends(get_engine)):
    return {"ok": True, "runtime": await engine.status()}
