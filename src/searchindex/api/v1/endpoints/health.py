"""Health check endpoints — Service and per-index backend health."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from searchindex import __version__
from searchindex.api.deps import get_search_service, get_settings
from searchindex.config.settings import Settings
from searchindex.engines.base.exceptions import EngineError
from searchindex.query.facade import SearchService

logger = logging.getLogger(__name__)

router = APIRouter()


# ── Response models ──────────────────────────────────────────────────────


class HealthResponse(BaseModel):
    """Service health check response."""

    status: str = Field(description="Health status (e.g. 'healthy')")
    version: str = Field(description="searchindex server version")
    service: str = Field(description="Service name ('searchindex')")
    indexes: list[str] = Field(description="Configured index handles")


class IndexHealth(BaseModel):
    """Backend status of one configured index."""

    engine: str = Field(description="Engine kind")
    mode: str = Field(description="synced or readonly")
    connected: bool = Field(description="Whether the backend answered the connection test")
    ready: bool = Field(description="Whether the index exists and is enabled")
    document_count: int | None = Field(default=None, description="Documents in the index, if available")


class IndexHealthResponse(BaseModel):
    """Per-index health keyed by handle."""

    indexes: dict[str, IndexHealth] = Field(description="Map of index handle to its health")


# ── Endpoints ────────────────────────────────────────────────────────────


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service Health Check",
    description="Returns service health, server version and the configured index handles.",
)
async def health_check(settings: Settings = Depends(get_settings)) -> HealthResponse:
    """Basic health check endpoint."""
    return HealthResponse(
        status="healthy",
        version=__version__,
        service="searchindex",
        indexes=[index.handle for index in settings.indexes],
    )


@router.get(
    "/health/indexes",
    response_model=IndexHealthResponse,
    summary="Index Health Check",
    description=(
        "Tests the backend connection of every configured index and reports whether "
        "the index exists and how many documents it holds."
    ),
)
async def index_health(service: SearchService = Depends(get_search_service)) -> IndexHealthResponse:
    """Check every configured index against its backend."""
    statuses: dict[str, IndexHealth] = {}
    for handle, index in service.context.indexes.items():
        try:
            connected = await service.context.engine_for(index).test_connection()
        except EngineError as e:
            logger.warning("Index %s: engine could not be configured: %s", handle, e)
            connected = False
        ready = await service.is_ready(handle) if connected else False
        statuses[handle] = IndexHealth(
            engine=index.engine_type.value,
            mode=index.mode.value,
            connected=connected,
            ready=ready,
            document_count=await service.doc_count(handle) if ready else None,
        )
        if not connected:
            logger.warning("Index %s: %s backend is unreachable", handle, index.engine_type.value)
    return IndexHealthResponse(indexes=statuses)
