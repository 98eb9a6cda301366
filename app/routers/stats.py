"""Statistics router."""

from __future__ import annotations

from fastapi import APIRouter, Request

from core.status import get_statistics
from models import StatisticsResponse

router = APIRouter(prefix="/api", tags=["stats"])


@router.get("/statistics", response_model=StatisticsResponse)
def statistics(request: Request) -> StatisticsResponse:
    services = request.app.state.services
    return get_statistics(services.storage, services.settings.sites, services.orchestrator)
