"""
MCP Server for the memory engine.

Exposes five tools over stdio; every tool returns a JSON string with at
least ``ok`` and ``message``:

- memory_search  - hybrid vector + lexical recall for one owner
- memory_store   - store a fact unless a near-identical one exists
- memory_forget  - delete matching (or all) memories of one owner
- memory_count   - how many memories an owner has
- memory_list    - every memory of one owner, most important first
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

from mcp.server.fastmcp import FastMCP

from engine.config import EngineSettings
from engine.errors import (
    EmbeddingUnavailable,
    InvalidInput,
    MemoryEngineError,
    StoreUnavailable,
)
from engine.service import MemoryEngine, build_engine

logger = logging.getLogger(__name__)


def _to_json(payload: Dict[str, Any]) -> str:
    """Serialize payload for MCP string responses."""
    return json.dumps(payload, ensure_ascii=False)


def _tool_response(*, ok: bool, message: str, **extra: Any) -> str:
    payload: Dict[str, Any] = {"ok": bool(ok), "message": message}
    payload.update(extra)
    return _to_json(payload)


def _error_kind(exc: MemoryEngineError) -> str:
    if isinstance(exc, InvalidInput):
        return "invalid_input"
    if isinstance(exc, EmbeddingUnavailable):
        return "embedding_unavailable"
    if isinstance(exc, StoreUnavailable):
        return "store_unavailable"
    return "engine_error"


def _error_response(exc: MemoryEngineError) -> str:
    return _tool_response(ok=False, message=str(exc), error=_error_kind(exc))


class MemoryTools:
    """Tool handlers bound to one open engine."""

    def __init__(self, engine: MemoryEngine) -> None:
        self.engine = engine

    async def memory_search(
        self,
        owner_id: str,
        query: str,
        limit: Optional[int] = None,
        threshold: Optional[float] = None,
    ) -> str:
        """
        Recall memories relevant to a query.

        Args:
            owner_id: Whose memories to search.
            query: Natural-language query.
            limit: Max results (default from server config).
            threshold: Minimum similarity in [0, 1] (default from server config).
        """
        try:
            results = await self.engine.search(
                owner_id, query, limit=limit, threshold=threshold
            )
        except MemoryEngineError as exc:
            return _error_response(exc)

        if not results:
            return _tool_response(ok=True, message="no matches", count=0, results=[])
        return _tool_response(
            ok=True,
            message=f"found {len(results)} memories",
            count=len(results),
            results=[item.to_dict() for item in results],
        )

    async def memory_store(
        self,
        owner_id: str,
        content: str,
        importance: float = 0.5,
        category: str = "FACT",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        Store a fact for an owner.

        Near-identical content is not stored twice; the response then carries
        ``duplicate: true`` and the id of the existing memory.

        Args:
            owner_id: Whose memory this is.
            content: The fact, in one short sentence.
            importance: 0..1, higher survives capacity eviction longer.
            category: FACT, PREFERENCE, OPINION, EVENT or CONTEXT.
            metadata: Optional free-form key/value object.
        """
        try:
            result = await self.engine.store(
                owner_id,
                content,
                importance=importance,
                category=category,
                metadata=metadata,
            )
        except MemoryEngineError as exc:
            return _error_response(exc)

        if result.is_duplicate:
            message = f"duplicate of memory {result.duplicate_of}"
        else:
            message = f"stored memory {result.id}"
        return _tool_response(
            ok=True, message=message, duplicate=result.is_duplicate, **result.to_dict()
        )

    async def memory_forget(
        self,
        owner_id: str,
        query: Optional[str] = None,
        forget_all: bool = False,
    ) -> str:
        """
        Delete memories containing ``query``, or all of them with forget_all.

        Args:
            owner_id: Whose memories to delete.
            query: Case-insensitive substring to match.
            forget_all: Must be true to delete everything when no query is given.
        """
        if query is None and not forget_all:
            return _tool_response(
                ok=False,
                message="provide a query, or set forget_all to delete every memory",
                error="invalid_input",
            )
        if query is not None and forget_all:
            return _tool_response(
                ok=False,
                message="query and forget_all are mutually exclusive",
                error="invalid_input",
            )
        try:
            deleted = await self.engine.forget(owner_id, query)
        except MemoryEngineError as exc:
            return _error_response(exc)
        return _tool_response(ok=True, message=f"forgot {deleted} memories", deleted=deleted)

    async def memory_count(self, owner_id: str) -> str:
        """
        Count an owner's memories.

        Args:
            owner_id: Whose memories to count.
        """
        try:
            count = await self.engine.count(owner_id)
        except MemoryEngineError as exc:
            return _error_response(exc)
        return _tool_response(ok=True, message=f"{count} memories", count=count)

    async def memory_list(self, owner_id: str, limit: Optional[int] = None) -> str:
        """
        List an owner's memories, most important and newest first.

        Args:
            owner_id: Whose memories to list.
            limit: Optional cap on how many to return.
        """
        try:
            memories = await self.engine.list(owner_id, limit=limit)
        except MemoryEngineError as exc:
            return _error_response(exc)
        return _tool_response(
            ok=True,
            message=f"{len(memories)} memories",
            count=len(memories),
            memories=memories,
        )


def create_mcp_server(engine: MemoryEngine) -> FastMCP:
    tools = MemoryTools(engine)
    mcp = FastMCP("Memory Engine Interface")
    mcp.tool(name="memory_search")(tools.memory_search)
    mcp.tool(name="memory_store")(tools.memory_store)
    mcp.tool(name="memory_forget")(tools.memory_forget)
    mcp.tool(name="memory_count")(tools.memory_count)
    mcp.tool(name="memory_list")(tools.memory_list)
    return mcp


async def serve() -> None:
    """Open the engine, serve MCP over stdio, close the engine on exit."""
    engine = build_engine(EngineSettings.from_env())
    await engine.open()
    try:
        await create_mcp_server(engine).run_stdio_async()
    finally:
        await engine.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(serve())
