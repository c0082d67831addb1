import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from api import maintenance_router, memories_router
from engine.config import EngineSettings
from engine.errors import MemoryEngineError
from engine.service import MemoryEngine, build_engine

logger = logging.getLogger(__name__)


def _utc_iso_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def configure_logging() -> None:
    level_name = str(os.getenv("LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def create_app(engine: Optional[MemoryEngine] = None) -> FastAPI:
    """
    Build the API app.

    When ``engine`` is None the lifespan builds one from the environment;
    either way the lifespan owns ``open()`` / ``close()``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Memory API starting...")
        active = engine if engine is not None else build_engine(EngineSettings.from_env())
        try:
            await active.open()
        except Exception as exc:
            logger.exception("Failed to open memory engine")
            raise RuntimeError("Failed to open memory engine during startup") from exc
        app.state.engine = active

        yield

        logger.info("Closing memory engine...")
        app.state.engine = None
        await active.close()

    app = FastAPI(
        title="Memory Engine API",
        description="Per-owner long-term memory with hybrid retrieval",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.engine = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(memories_router)
    app.include_router(maintenance_router)

    @app.get("/")
    async def root():
        return {
            "message": "Memory Engine API",
            "version": "1.0.0",
            "docs": "/docs",
        }

    @app.get("/health")
    async def health(request: Request):
        payload: Dict[str, Any] = {
            "status": "ok",
            "timestamp": _utc_iso_now(),
        }
        active: Optional[MemoryEngine] = getattr(request.app.state, "engine", None)
        if active is None:
            payload["status"] = "degraded"
            payload["reason"] = "memory engine is not open"
            return payload

        try:
            payload["runtime"] = await active.status()
            await active.count("__health__")
        except MemoryEngineError as exc:
            payload["status"] = "degraded"
            payload["reason"] = str(exc)
        return payload

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    configure_logging()
    uvicorn.run(
        app,
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "8000")),
    )
