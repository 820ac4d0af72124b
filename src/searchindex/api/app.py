"""FastAPI application factory and lifecycle management."""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from searchindex import __version__
from searchindex.api.deps import set_runtime
from searchindex.api.v1.router import router as v1_router
from searchindex.cache.manager import CacheManager
from searchindex.config.settings import CONFIG_ENV_VAR, Settings
from searchindex.embeddings.client import EmbeddingClient

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "searchindex-config.yaml"


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings from ``config_path``, the default YAML file, or the environment.

    ``SEARCHINDEX_CONFIG_FILE`` names the YAML file when no path is given.
    """
    config_path = config_path or os.environ.get(CONFIG_ENV_VAR) or None
    if config_path is not None:
        return Settings.from_yaml(config_path)
    yaml_path = Path(DEFAULT_CONFIG_FILE)
    if yaml_path.exists():
        logger.info("Loading configuration from %s", yaml_path)
        return Settings.from_yaml(yaml_path)
    return Settings()


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        settings: Application settings. If None, loads from the default
            YAML file or the environment.

    Returns:
        Configured FastAPI application.
    """
    if settings is None:
        settings = load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Manage application lifecycle (startup/shutdown)."""
        logger.info("Starting searchindex v%s with %d index(es)", __version__, len(settings.indexes))

        cache = CacheManager(settings.cache)
        await cache.initialize()
        embeddings = EmbeddingClient(settings.embeddings, cache=cache, ttl=settings.cache.embedding_ttl)

        set_runtime(settings, embeddings)
        app.state.settings = settings
        app.state.cache = cache

        logger.info("searchindex is ready to serve requests on port %d", settings.server.port)
        yield

        logger.info("Shutting down searchindex...")
        await embeddings.close()
        await cache.shutdown()
        set_runtime(None)
        logger.info("searchindex shutdown complete")

    app = FastAPI(
        title="searchindex",
        description="Unified search API over Algolia, Meilisearch, Typesense, Elasticsearch and OpenSearch.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    # The public API is read-only; browsers only need GET.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_credentials=False,
        allow_methods=["GET", "OPTIONS"],
        allow_headers=["*"],
        max_age=86400,
    )

    app.include_router(v1_router, prefix="/v1")

    return app
