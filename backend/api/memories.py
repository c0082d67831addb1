"""
Memories API - owner-scoped search, store, list, delete, forget and count.

Engine errors map to HTTP statuses: invalid input is a 400, an unavailable
embedding provider or store is a 503. An empty search is a normal 200 with
``count == 0`` so callers can tell "no matches" apart from a failure.
"""

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from engine.errors import MemoryEngineError
from engine.service import MemoryEngine
from .maintenance import get_engine, http_error

router = APIRouter(prefix="/memories", tags=["memories"])


class SearchRequest(BaseModel):
    owner_id: str
    query: str
    limit: Optional[int] = None
    threshold: Optional[float] = None


class StoreRequest(BaseModel):
    owner_id: str
    content: str
    importance: float = 0.5
    category: str = "FACT"
    metadata: Optional[Dict[str, Any]] = Field(default=None)


class ForgetRequest(BaseModel):
    owner_id: str
    query: Optional[str] = None
    forget_all: bool = False


@router.post("/search")
async def search_memories(
    payload: SearchRequest, engine: MemoryEngine = Depends(get_engine)
):
    try:
        results = await engine.search(
            payload.owner_id,
            payload.query,
            limit=payload.limit,
            threshold=payload.threshold,
        )
    except MemoryEngineError as exc:
        raise http_error(exc) from exc

    count = len(results)
    return {
        "ok": True,
        "count": count,
        "message": "no matches" if count == 0 else f"found {count} memories",
        "results": [item.to_dict() for item in results],
    }


@router.post("")
async def store_memory(payload: StoreRequest, engine: MemoryEngine = Depends(get_engine)):
    try:
        result = await engine.store(
            payload.owner_id,
            payload.content,
            importance=payload.importance,
            category=payload.category,
            metadata=payload.metadata,
        )
    except MemoryEngineError as exc:
        raise http_error(exc) from exc

    if result.is_duplicate:
        message = f"duplicate of memory {result.duplicate_of}"
    else:
        message = f"stored memory {result.id}"
    return {"ok": True, "duplicate": result.is_duplicate, "message": message, **result.to_dict()}


@router.post("/forget")
async def forget_memories(
    payload: ForgetRequest, engine: MemoryEngine = Depends(get_engine)
):
    if payload.query is None and not payload.forget_all:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_input",
                "reason": "provide a query, or set forget_all to delete every memory",
            },
        )
    if payload.query is not None and payload.forget_all:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "error": "invalid_input",
                "reason": "query and forget_all are mutually exclusive",
            },
        )

    try:
        deleted = await engine.forget(payload.owner_id, payload.query)
    except MemoryEngineError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "deleted": deleted, "message": f"forgot {deleted} memories"}


@router.get("/count")
async def count_memories(
    owner_id: str = Query(...), engine: MemoryEngine = Depends(get_engine)
):
    try:
        count = await engine.count(owner_id)
    except MemoryEngineError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "owner_id": owner_id.strip(), "count": count}


@router.get("")
async def list_memories(
    owner_id: str = Query(...),
    limit: Optional[int] = Query(default=None),
    engine: MemoryEngine = Depends(get_engine),
):
    try:
        memories = await engine.list(owner_id, limit=limit)
    except MemoryEngineError as exc:
        raise http_error(exc) from exc
    return {"ok": True, "owner_id": owner_id.strip(), "count": len(memories), "memories": memories}


@router.delete("/{memory_id}")
async def delete_memory(
    memory_id: int,
    owner_id: str = Query(...),
    engine: MemoryEngine = Depends(get_engine),
):
    try:
        deleted = await engine.delete(owner_id, memory_id)
    except MemoryEngineError as exc:
        raise http_error(exc) from exc
    if not deleted:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "not_found", "reason": f"memory {memory_id} not found"},
        )
    return {"ok": True, "deleted": memory_id, "message": f"deleted memory {memory_id}"}
