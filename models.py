"""Pydantic models used throughout the application."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class SiteStatus(StrEnum):
    """Lifecycle of a crawled site."""

    INDEXING = "INDEXING"
    INDEXED = "INDEXED"
    FAILED = "FAILED"


class ApiResponse(BaseModel):
    """Generic ``{result, error}`` body returned by the control endpoints."""

    result: bool = True
    error: str | None = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {"result": False, "error": "Indexing is already running"}
        }
    )


class SearchResult(BaseModel):
    """Single ranked page with a highlighted snippet."""

    site_url: str = Field(alias="siteUrl")
    site_name: str = Field(alias="siteName")
    path: str
    title: str = ""
    snippet: str
    relevance: float = Field(alias="relativeRelevance", gt=0, le=1)
    matched_words: int = Field(alias="matchedWordCount", ge=1)

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "siteUrl": "https://example.com",
                "siteName": "Example",
                "path": "/news/leopard",
                "title": "Леопард вернулся",
                "snippet": "Повторное появление <b>леопарда</b> в Осетии",
                "relativeRelevance": 1.0,
                "matchedWordCount": 1,
            }
        },
    )


class SearchResponse(BaseModel):
    """Page of search results or a structured rejection."""

    result: bool
    count: int = 0
    data: list[SearchResult] = Field(default_factory=list)
    error: str | None = None

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def rejected(cls, error: str) -> "SearchResponse":
        return cls(result=False, error=error)


class TotalStatistics(BaseModel):
    sites: int = 0
    pages: int = 0
    lemmas: int = 0
    indexing: bool = False


class DetailedStatisticsItem(BaseModel):
    """Per-site counters shown on the dashboard."""

    url: str
    name: str
    status: str
    status_time: int = Field(alias="statusTime")
    error: str | None = None
    pages: int = 0
    lemmas: int = 0

    model_config = ConfigDict(populate_by_name=True)


class StatisticsData(BaseModel):
    total: TotalStatistics
    detailed: list[DetailedStatisticsItem] = Field(default_factory=list)


class StatisticsResponse(BaseModel):
    result: bool = True
    statistics: StatisticsData
