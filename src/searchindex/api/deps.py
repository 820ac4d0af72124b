"""API dependencies — Dependency injection for FastAPI endpoints."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from fastapi.responses import JSONResponse

from searchindex.config.settings import Settings
from searchindex.engines.base.registry import EngineRegistry
from searchindex.query.context import RequestContext
from searchindex.query.facade import SearchService

if TYPE_CHECKING:
    from searchindex.embeddings.client import EmbeddingClient

# Application state (set during application lifespan)
_settings: Settings | None = None
_embeddings: EmbeddingClient | None = None


def set_runtime(settings: Settings | None, embeddings: EmbeddingClient | None = None) -> None:
    """Set the global settings and embeddings client (called during app lifespan)."""
    global _settings, _embeddings
    _settings = settings
    _embeddings = embeddings


def get_settings() -> Settings:
    """Get the active settings.

    Raises:
        RuntimeError: If the application has not started.
    """
    if _settings is None:
        raise RuntimeError("searchindex settings not initialized. Is the server running?")
    return _settings


async def get_search_service() -> AsyncIterator[SearchService]:
    """Yield a search service bound to a fresh request context.

    Engines built during the request are closed when it ends.
    """
    settings = get_settings()
    context = RequestContext(settings.index_map(), EngineRegistry(defaults=settings.engines))
    try:
        yield SearchService(context, embeddings=_embeddings)
    finally:
        await context.close()


def error_response(message: str, status_code: int) -> JSONResponse:
    """``{"error": message}`` with the given status code."""
    return JSONResponse({"error": message}, status_code=status_code)
