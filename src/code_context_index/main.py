"""
Application Entry Point

This module defines the FastAPI application factory, wires the indexing and
retrieval components together, and registers routers and exception handlers.

Design Goals
------------
- Components constructed once per application and injected via app.state
- Deterministic startup and shutdown order
- Test-friendly via create_app()
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import uvicorn
from fastapi import FastAPI

from .config import Settings, settings as default_settings
from .core.errors import (
    IndexCapacityError,
    index_capacity_exception_handler,
    unhandled_exception_handler,
)
from .chunking.text_chunker import TextChunker
from .embeddings.runner import EmbedFn, EmbeddingRunner
from .indexing.pipeline import IndexingPipeline
from .indexing.service import IndexingService
from .retrieval.context import ContextRetriever
from .storage.vector_store import VectorStore

from .api import (
    health_routes,
    index_routes,
    search_routes,
)


logger = logging.getLogger("codeindex.api")


# ---------------------------------------------------------------------
# Application Factory (Test-Friendly)
# ---------------------------------------------------------------------

def create_app(
    app_settings: Optional[Settings] = None,
    embed_fn: Optional[EmbedFn] = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Parameters
    ----------
    app_settings : Optional[Settings]
        Storage, capacity and concurrency configuration. Defaults to the
        module-level settings.

    embed_fn : Optional[EmbedFn]
        Embedding callable for the runner. When omitted the runner builds the
        backend named by settings.embedding_backend.

    Returns
    -------
    FastAPI
        Fully configured FastAPI application.
    """
    cfg = app_settings or default_settings

    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info("Starting code-context-index (database=%s)", cfg.database_path)

        store = VectorStore(
            database_path=cfg.database_path,
            max_elements=cfg.ann_max_elements,
            capacity_ceiling=cfg.ann_capacity_ceiling,
            hnsw_m=cfg.ann_hnsw_m,
            ef_construction=cfg.ann_ef_construction,
            ef_search=cfg.ann_ef_search,
            oversample_factor=cfg.search_oversample_factor,
            compact_orphan_ratio=cfg.ann_compact_orphan_ratio,
        )
        runner = EmbeddingRunner(
            embed_fn=embed_fn,
            max_concurrency=cfg.max_concurrent_embedding_tasks,
        )
        pipeline = IndexingPipeline(TextChunker(), runner)

        try:
            await pipeline.initialize()
            service = IndexingService(
                store,
                pipeline,
                cfg.max_concurrent_files,
                embedding_model=cfg.embedding_model,
            )
            service.ensure_embedding_model()
            store.restore_dimension()

            app.state.store = store
            app.state.runner = runner
            app.state.indexing_service = service
            app.state.retriever = ContextRetriever(
                store,
                runner,
                structure_boost=cfg.structure_score_boost,
                adjacent_penalty=cfg.adjacent_score_penalty,
                adjacent_window=cfg.adjacent_chunk_window,
            )
            logger.info("Index ready: %s", store.get_storage_stats().model_dump())

            yield
        finally:
            logger.info("Shutting down code-context-index")
            await pipeline.dispose()
            store.dispose()

    app = FastAPI(
        title="code-context-index",
        version="1.0.0",
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # --------------------------------------------------------------
    # Global Exception Handling
    # --------------------------------------------------------------

    app.add_exception_handler(IndexCapacityError, index_capacity_exception_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    # --------------------------------------------------------------
    # Router Registration
    # --------------------------------------------------------------

    app.include_router(health_routes.router)
    app.include_router(index_routes.router)
    app.include_router(search_routes.router)

    return app


# ---------------------------------------------------------------------
# Default Application Instance (for Uvicorn)
# ---------------------------------------------------------------------

app = create_app()


def serve() -> None:
    """Console entry point: run the default app under uvicorn."""
    uvicorn.run(app, host=default_settings.host, port=default_settings.port)
