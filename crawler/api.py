from __future__ import annotations

import structlog
from fastapi import APIRouter, Query, Request
from fastapi.responses import JSONResponse

from errors import IndexingAlreadyRunning, IndexingNotRunning, PageOutsideSites
from models import ApiResponse

logger = structlog.get_logger(__name__)

router = APIRouter(prefix="/api", tags=["indexing"])


def _rejection(status_code: int, error: str) -> JSONResponse:
    body = ApiResponse(result=False, error=error)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@router.get("/startIndexing", response_model=ApiResponse, response_model_exclude_none=True)
def start_indexing(request: Request):
    orchestrator = request.app.state.services.orchestrator
    try:
        orchestrator.start()
    except IndexingAlreadyRunning as exc:
        return _rejection(409, str(exc))
    return ApiResponse()


@router.get("/stopIndexing", response_model=ApiResponse, response_model_exclude_none=True)
def stop_indexing(request: Request):
    orchestrator = request.app.state.services.orchestrator
    try:
        orchestrator.stop()
    except IndexingNotRunning as exc:
        return _rejection(405, str(exc))
    return ApiResponse()


@router.post("/indexPage", response_model=ApiResponse, response_model_exclude_none=True)
def index_page(request: Request, url: str = Query(..., min_length=1)):
    orchestrator = request.app.state.services.orchestrator
    try:
        orchestrator.index_page(url)
    except PageOutsideSites as exc:
        return _rejection(400, str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.warning("index_page_failed", url=url, error=str(exc))
        return _rejection(500, f"Page indexing failed: {exc}")
    return ApiResponse()
