"""FastAPI application factory.

Provides :func:`create_app` and :func:`build_services`, which wires storage,
lemmatizer, indexer, orchestrator and search engine from settings. The
services live on ``app.state.services``; routers read them from there.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass

import structlog
from fastapi import FastAPI

from crawler.orchestrator import IndexingOrchestrator
from crawler.run_crawl import ClientFactory, client_factory_from_settings
from errors import IndexingNotRunning
from knowledge.indexer import Indexer
from knowledge.lemmatizer import Lemmatizer, get_lemmatizer
from observability.logging import configure_logging
from retrieval.search import SearchEngine
from settings import Settings, get_settings
from storage import Storage

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    storage: Storage
    lemmatizer: Lemmatizer
    indexer: Indexer
    orchestrator: IndexingOrchestrator
    search_engine: SearchEngine

    def close(self) -> None:
        with suppress(IndexingNotRunning):
            self.orchestrator.stop()
        self.orchestrator.wait(timeout=5)
        self.storage.dispose()


def build_services(
    settings: Settings,
    *,
    client_factory: ClientFactory | None = None,
    lemmatizer: Lemmatizer | None = None,
) -> Services:
    """Create the object graph and make sure the schema exists."""

    storage = Storage(settings.database_url)
    storage.create_all()
    lemmatizer = lemmatizer or get_lemmatizer()
    indexer = Indexer(storage, lemmatizer, workers=settings.indexer_workers)
    orchestrator = IndexingOrchestrator(
        storage,
        indexer,
        settings.sites,
        client_factory or client_factory_from_settings(settings.http),
        concurrency=settings.crawl_concurrency,
    )
    search_engine = SearchEngine(storage, lemmatizer, settings.sites, settings.search)
    logger.info("services_ready", database=storage.engine.url.render_as_string(), sites=len(settings.sites))
    return Services(
        settings=settings,
        storage=storage,
        lemmatizer=lemmatizer,
        indexer=indexer,
        orchestrator=orchestrator,
        search_engine=search_engine,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Build services on startup unless they were injected; stop crawls on exit."""

    owned = getattr(app.state, "services", None) is None
    if owned:
        configure_logging()
        app.state.services = build_services(get_settings())
    try:
        yield
    finally:
        if owned:
            app.state.services.close()


def create_app(*, services: Services | None = None, debug: bool | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    services
        Prebuilt services (tests); built from settings on startup otherwise.
    debug
        Enable debug mode. If None, uses settings.debug.
    """

    from app.routers import search as search_router
    from app.routers import stats as stats_router
    from crawler.api import router as indexing_router

    use_debug = debug if debug is not None else (services.settings.debug if services else False)
    app = FastAPI(title="Site search engine", lifespan=lifespan, debug=use_debug)
    if services is not None:
        app.state.services = services

    app.include_router(indexing_router)
    app.include_router(search_router.router)
    app.include_router(stats_router.router)
    return app
