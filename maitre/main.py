"""Maitre entry point.

Initializes all components and starts the server:
  Settings -> (Database) -> Checkpointer -> ModelInvoker -> Tools -> Runner -> App -> Uvicorn

Uses Starlette lifespan to manage component lifecycle on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import httpx
import uvicorn
from starlette.applications import Starlette

from maitre.api.checkpoint import MemoryCheckpointer, SqlCheckpointer
from maitre.api.compaction import ChunkSummarizer, ModelSummarizer
from maitre.api.llm import ModelInvoker
from maitre.api.reservation_tools import register_reservation_tools
from maitre.api.runner import AgentRunner
from maitre.api.streaming import StreamMultiplexer
from maitre.api.tools import ToolRegistry
from maitre.config import Settings
from maitre.storage.database import Database
from maitre.storage.migrator import run_migrations

logger = logging.getLogger(__name__)


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order.

    Returns dict with all components for lifespan storage.
    """
    database = None
    if settings.checkpoint_backend == "postgres":
        database = Database(settings)
        await database.connect()
        await run_migrations(database.engine)
        checkpointer = SqlCheckpointer(database)
    else:
        checkpointer = MemoryCheckpointer()

    invoker = ModelInvoker(settings)
    await invoker.start()

    # Backend httpx client (separate from the model client, different auth)
    backend_http = httpx.AsyncClient(
        timeout=httpx.Timeout(connect=10, read=settings.tool_timeout, write=10, pool=10),
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
    )
    registry = ToolRegistry()
    register_reservation_tools(registry, settings, backend_http)

    if settings.summarizer == "model":
        summarizer = ModelSummarizer(invoker, settings.summary_chunk_chars)
    else:
        summarizer = ChunkSummarizer(settings.summary_chunk_chars)

    runner = AgentRunner(settings, invoker, registry, checkpointer, summarizer=summarizer)
    multiplexer = StreamMultiplexer()

    return {
        "database": database,
        "checkpointer": checkpointer,
        "invoker": invoker,
        "backend_http": backend_http,
        "registry": registry,
        "runner": runner,
        "multiplexer": multiplexer,
    }


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down Maitre...")

    # In-flight turns first, so nothing saves into a closed store
    multiplexer = components.get("multiplexer")
    if multiplexer:
        await multiplexer.close()

    backend_http = components.get("backend_http")
    if backend_http:
        await backend_http.aclose()

    invoker = components.get("invoker")
    if invoker:
        await invoker.close()

    database = components.get("database")
    if database:
        await database.disconnect()

    logger.info("Maitre shutdown complete.")


def build_app(settings: Settings) -> Starlette:
    """Build the Starlette app; components are created in its lifespan."""
    components: dict = {}

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        components.update(await create_components(settings))
        app.state.components = components
        logger.info(
            "Maitre started: model=%s, checkpoints=%s, budget=%d tokens, max_round_trips=%d",
            settings.model,
            settings.checkpoint_backend,
            settings.token_budget,
            settings.max_round_trips,
        )
        yield
        await shutdown_components(components)

    async def health_check() -> None:
        database = components.get("database")
        if database is not None:
            await database.ping()

    from maitre.api.rest import create_app

    return create_app(
        runner=_LazyProxy(components, "runner"),
        multiplexer=_LazyProxy(components, "multiplexer"),
        settings=settings,
        lifespan=lifespan,
        health_check=health_check,
    )


class _LazyProxy:
    """Forwards attribute access to a component created later in lifespan."""

    def __init__(self, components: dict, key: str) -> None:
        object.__setattr__(self, "_components", components)
        object.__setattr__(self, "_key", key)

    def _resolve(self):
        components = object.__getattribute__(self, "_components")
        key = object.__getattribute__(self, "_key")
        obj = components.get(key)
        if obj is None:
            raise RuntimeError(f"Component '{key}' not initialized; lifespan hasn't started")
        return obj

    def __getattr__(self, name):
        return getattr(self._resolve(), name)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Maitre: model=%s", settings.model)
    if settings.checkpoint_backend == "postgres":
        logger.info("Database: %s:%s/%s", settings.db_host, settings.db_port, settings.db_name)

    if not settings.anthropic_api_key:
        logger.warning("ANTHROPIC_API_KEY is not set; /chat endpoints will fail")
    if not settings.backend_api_key:
        logger.warning("BACKEND_API_KEY is not set; reservation tools may be rejected")

    app = build_app(settings)

    uvicorn.run(
        app,
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
