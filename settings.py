"""Application settings models."""

from __future__ import annotations

from functools import lru_cache

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings


class SiteSettings(BaseModel):
    """A site to crawl: display ``name`` and root ``url``."""

    name: str
    url: str

    @field_validator("url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")


class HttpSettings(BaseSettings):
    """Parameters sent with every crawler request.

    Environment variables follow the ``HTTP_`` prefix, e.g. ``HTTP_USER_AGENT``.
    """

    user_agent: str = "SiteSearchBot/1.0 (+https://example.com/bot)"
    referrer: str = "https://www.google.com"
    timeout: float = 60.0

    model_config = ConfigDict(extra="ignore", env_prefix="HTTP_")


class SearchSettings(BaseSettings):
    """Ranking knobs for the search engine (``SEARCH_`` prefix)."""

    # share of pages in scope above which a query lemma is dropped; 1.0 keeps all
    frequency_threshold: float = 1.0
    default_limit: int = 20
    snippet_separator: str = " ... "

    model_config = ConfigDict(extra="ignore", env_prefix="SEARCH_")

    @field_validator("frequency_threshold")
    @classmethod
    def _check_threshold(cls, value: float) -> float:
        if not 0 < value <= 1:
            raise ValueError("frequency_threshold must be in (0, 1]")
        return value


class Settings(BaseSettings):
    """Top level application settings loaded from ``.env``.

    ``SITES`` is a JSON list of ``{"name": ..., "url": ...}`` objects. Nested
    models read their own prefixes (``HTTP_``, ``SEARCH_``).
    """

    debug: bool = False
    database_url: str = Field(default="sqlite:///searchengine.db", alias="DATABASE_URL")
    indexer_workers: int = Field(default=4, ge=1)
    crawl_concurrency: int = Field(default=10, ge=1)

    sites: list[SiteSettings] = Field(default_factory=list)
    http: HttpSettings = Field(default_factory=HttpSettings)
    search: SearchSettings = Field(default_factory=SearchSettings)

    model_config = ConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache(maxsize=1)
def get_settings() -> "Settings":
    """Return cached application settings."""

    return Settings()
