"""Aggregate index statistics for the dashboard and the CLI.

Every configured site is reported, in configuration order. A site that was
never indexed has no row yet and is listed with status ``WAIT``.
"""

from __future__ import annotations

import time
from typing import Protocol

import structlog

from models import (
    DetailedStatisticsItem,
    StatisticsData,
    StatisticsResponse,
    TotalStatistics,
)
from settings import SiteSettings
from storage import Storage

logger = structlog.get_logger(__name__)

WAITING_STATUS = "WAIT"


class RunState(Protocol):
    @property
    def is_running(self) -> bool: ...


def get_statistics(storage: Storage, sites: list[SiteSettings], run: RunState) -> StatisticsResponse:
    """Return totals and per-site counters."""

    total = TotalStatistics(sites=len(sites), indexing=run.is_running)
    detailed: list[DetailedStatisticsItem] = []
    for configured in sites:
        row = storage.find_site_by_url(configured.url)
        if row is None:
            detailed.append(
                DetailedStatisticsItem(
                    url=configured.url,
                    name=configured.name,
                    status=WAITING_STATUS,
                    status_time=int(time.time() * 1000),
                )
            )
            continue
        pages = storage.count_pages(row.id)
        lemmas = storage.count_lemmas(row.id)
        total.pages += pages
        total.lemmas += lemmas
        detailed.append(
            DetailedStatisticsItem(
                url=row.url,
                name=row.name,
                status=str(row.status),
                status_time=int(row.status_time.timestamp() * 1000),
                error=row.last_error,
                pages=pages,
                lemmas=lemmas,
            )
        )
    logger.debug("statistics_collected", sites=total.sites, pages=total.pages, lemmas=total.lemmas)
    return StatisticsResponse(statistics=StatisticsData(total=total, detailed=detailed))
