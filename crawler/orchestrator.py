"""Full re-index runs and single-page refreshes over the configured sites.

A run resets every configured site, then crawls each one on its own thread
(each thread drives an asyncio loop for the site's crawl task tree). Only one
run may be active; :meth:`IndexingOrchestrator.stop` cancels the shared token
and the crawl tasks wind down at their next poll point.
"""

from __future__ import annotations

import asyncio
import threading
from urllib.parse import urlsplit

import structlog

from crawler.run_crawl import (
    DEFAULT_CONCURRENCY,
    ROOT_PATH,
    CancellationToken,
    ClientFactory,
    crawl_site,
    refresh_site_page,
)
from errors import IndexingAlreadyRunning, IndexingNotRunning, PageOutsideSites
from knowledge.indexer import Indexer
from models import SiteStatus
from settings import SiteSettings
from storage import Page, Site, Storage

logger = structlog.get_logger(__name__)

STOPPED_BY_USER = "stopped by user"


def _host(url: str) -> str:
    return (urlsplit(url).hostname or "").lower()


class IndexingOrchestrator:
    """Own the run state of indexing and the per-site crawl threads."""

    def __init__(
        self,
        storage: Storage,
        indexer: Indexer,
        sites: list[SiteSettings],
        client_factory: ClientFactory,
        *,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.storage = storage
        self.indexer = indexer
        self.sites = list(sites)
        self.client_factory = client_factory
        self.concurrency = concurrency
        self._lock = threading.Lock()
        self._active = False
        self._token: CancellationToken | None = None
        self._runner: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._active

    def start(self) -> list[Site]:
        """Reset the configured sites and crawl them in the background.

        Raises :class:`IndexingAlreadyRunning` while another run is active.
        """

        with self._lock:
            if self._active:
                raise IndexingAlreadyRunning("Indexing is already running")
            self._active = True
            token = CancellationToken()
            self._token = token
        try:
            rows = self._reset_sites()
        except Exception:
            with self._lock:
                self._active = False
            raise
        runner = threading.Thread(
            target=self._run,
            args=(rows, token),
            name="indexing-run",
            daemon=True,
        )
        self._runner = runner
        runner.start()
        logger.info("indexing_started", sites=[site.url for site in rows])
        return rows

    def stop(self) -> None:
        """Cancel the active run; raises :class:`IndexingNotRunning` when idle."""

        with self._lock:
            if not self._active or self._token is None:
                raise IndexingNotRunning("Indexing is not running")
            self._token.cancel()
        logger.info("indexing_stop_requested")

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the current run finishes; ``False`` on timeout."""

        runner = self._runner
        if runner is None:
            return True
        runner.join(timeout)
        return not runner.is_alive()

    def _reset_sites(self) -> list[Site]:
        with self.storage.transaction() as session:
            for site in self.sites:
                removed = self.storage.delete_sites_by_url(site.url, session=session)
                if removed:
                    logger.debug("site_reset", site=site.url, rows=removed)
            return [
                self.storage.create_site(site.name, site.url, SiteStatus.INDEXING, session=session)
                for site in self.sites
            ]

    def _run(self, rows: list[Site], token: CancellationToken) -> None:
        try:
            workers = [
                threading.Thread(
                    target=self._crawl_one,
                    args=(site, token),
                    name=f"crawl-{site.id}",
                    daemon=True,
                )
                for site in rows
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
        except Exception as exc:
            logger.exception("indexing_run_failed")
            for site in rows:
                current = self.storage.get_site(site.id)
                if current is not None and current.status == SiteStatus.INDEXING:
                    self.storage.set_site_status(site.id, SiteStatus.FAILED, str(exc))
        finally:
            with self._lock:
                self._active = False
            logger.info("indexing_finished", cancelled=not token.active)

    def _crawl_one(self, site: Site, token: CancellationToken) -> None:
        try:
            visited = asyncio.run(
                crawl_site(
                    self.storage,
                    self.indexer,
                    site,
                    self.client_factory,
                    token,
                    concurrency=self.concurrency,
                )
            )
        except Exception as exc:
            logger.exception("site_crawl_failed", site=site.url)
            self.storage.set_site_status(site.id, SiteStatus.FAILED, str(exc) or type(exc).__name__)
            return
        if token.active:
            self.storage.set_site_status(site.id, SiteStatus.INDEXED)
            logger.info("site_indexed", site=site.url, pages=len(visited))
        else:
            self.storage.set_site_status(site.id, SiteStatus.FAILED, STOPPED_BY_USER)
            logger.warning("site_indexing_stopped", site=site.url, pages=len(visited))

    def resolve(self, url: str) -> tuple[SiteSettings, str]:
        """Return the configured site owning ``url`` and the path within it."""

        host = _host(url)
        for site in self.sites:
            if host and _host(site.url) == host:
                parts = urlsplit(url)
                path = parts.path or ROOT_PATH
                if parts.query:
                    path = f"{path}?{parts.query}"
                return site, path
        raise PageOutsideSites(
            "This page is outside the sites specified in the configuration file"
        )

    def index_page(self, url: str) -> Page:
        """Fetch ``url`` once and re-index it within its configured site."""

        configured, path = self.resolve(url)
        site = self.storage.find_site_by_url(configured.url)
        if site is None:
            site = self.storage.create_site(configured.name, configured.url, SiteStatus.INDEXING)
        try:
            page = asyncio.run(
                refresh_site_page(self.storage, self.indexer, site, path, self.client_factory)
            )
        except Exception as exc:
            logger.exception("page_refresh_crashed", site=site.url, path=path)
            self.storage.set_site_status(site.id, SiteStatus.FAILED, str(exc) or type(exc).__name__)
            raise
        self.storage.set_site_status(site.id, SiteStatus.INDEXED)
        logger.info("page_indexed_on_demand", site=site.url, path=path, code=page.code)
        return page
