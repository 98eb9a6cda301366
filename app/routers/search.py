"""Search endpoint."""

from __future__ import annotations

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from models import SearchResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["search"])

SEARCH_FAILED = "search failed"


@router.get("/search", response_model=SearchResponse, response_model_exclude_none=True)
def search(
    request: Request,
    query: str = "",
    site: str | None = None,
    offset: int = Query(0, ge=0),
    limit: int | None = Query(None, ge=1),
):
    engine = request.app.state.services.search_engine
    try:
        response = engine.search(query, site, offset=offset, limit=limit)
    except Exception:
        logger.exception("search_failed", query=query, site=site)
        response = SearchResponse.rejected(SEARCH_FAILED)
        return JSONResponse(status_code=500, content=response.model_dump(by_alias=True, exclude_none=True))
    if not response.result:
        return JSONResponse(status_code=400, content=response.model_dump(by_alias=True, exclude_none=True))
    return response
