"""Document and metadata endpoints."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from searchindex.api.deps import error_response, get_search_service
from searchindex.engines.base.exceptions import EngineError, IndexNotFoundError
from searchindex.query.facade import SearchService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get(
    "/document",
    summary="Get a document",
    description="Retrieve a single document by its objectID.",
    responses={404: {"description": "Unknown index or document"}},
)
async def get_document(
    index: str | None = Query(default=None, description="Index handle"),
    document_id: str | None = Query(default=None, alias="documentId"),
    service: SearchService = Depends(get_search_service),
) -> JSONResponse:
    """Fetch one stored document."""
    if not index:
        return error_response("Missing required parameter: index", 400)
    if not document_id:
        return error_response("Missing required parameter: documentId", 400)

    try:
        document = await service.get_document(index, document_id)
    except IndexNotFoundError as e:
        return error_response(str(e), 404)
    except EngineError as e:
        logger.warning("Document %s in %s could not be retrieved: %s", document_id, index, e)
        return error_response(f"Document retrieval failed: {e}", 500)

    if document is None:
        return error_response(f"Document not found: {document_id}", 404)
    return JSONResponse(document)


@router.get(
    "/meta",
    summary="Index metadata",
    description="Roles, facet fields and sort options derived from the index's field mappings.",
)
async def meta(
    index: str | None = Query(default=None, description="Index handle"),
    service: SearchService = Depends(get_search_service),
) -> JSONResponse:
    """Describe an index for building search UIs."""
    if not index:
        return error_response("Missing required parameter: index", 400)
    try:
        return JSONResponse(service.meta(index))
    except IndexNotFoundError as e:
        return error_response(str(e), 404)
