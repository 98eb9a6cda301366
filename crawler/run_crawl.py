#!/usr/bin/env python
"""Recursive site crawler feeding the lemma index.

``PageFinder.crawl(path)`` fetches one path of a site, stores the page, hands
its content to the indexer and then crawls every newly discovered
root-relative link as a child task, awaiting all children before it returns.
Paths are claimed in a shared :class:`VisitedPaths` map before fetching, so a
path is fetched at most once per crawl. A :class:`CancellationToken` is polled
before and after every fetch and before each join; once cancelled, a branch
stops writing and abandons its children.

Failed fetches are recorded as pages with a numeric outcome code (see
:func:`classify_failure`) and are never expanded.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
import threading
from dataclasses import dataclass, field
from typing import Callable

import httpx
import structlog
from bs4 import BeautifulSoup

from errors import EmptyPageContent, FetchFailure, UnsupportedContentType
from knowledge.indexer import Indexer
from settings import HttpSettings
from storage import Page, Site, Storage

logger = structlog.get_logger(__name__)

ROOT_PATH = "/"
DEFAULT_CONCURRENCY = 10
HTML_CONTENT_TYPES = {"", "text/html", "application/xhtml+xml"}

# Ordered: the first rule whose marker occurs in the failure description wins.
FAILURE_CODES: tuple[tuple[tuple[str, ...], int], ...] = (
    (
        (
            "Status=401",
            "Name or service not known",
            "nodename nor servname",
            "getaddrinfo failed",
            "No address associated with hostname",
            "Temporary failure in name resolution",
        ),
        401,
    ),
    (("Status=403",), 403),
    (("Status=404",), 404),
    # login walls answer with 500
    (("Status=500",), 401),
    (("Connection refused",), 500),
    (("SSL", "CERTIFICATE_VERIFY_FAILED", "handshake"), 525),
    (("Status=503",), 503),
)
UNKNOWN_FAILURE = -1

ClientFactory = Callable[[], httpx.AsyncClient]


class CancellationToken:
    """Shared run flag; crawl tasks keep working while it is active."""

    def __init__(self) -> None:
        self._active = threading.Event()
        self._active.set()

    @property
    def active(self) -> bool:
        return self._active.is_set()

    def cancel(self) -> None:
        self._active.clear()


class VisitedPaths:
    """Thread-safe ``path -> outcome code`` map.

    ``None`` marks a path whose fetch is still in flight.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._paths: dict[str, int | None] = {}

    def claim(self, path: str) -> bool:
        """Insert ``path`` if absent; ``False`` means another task owns it."""

        with self._lock:
            if path in self._paths:
                return False
            self._paths[path] = None
            return True

    def record(self, path: str, code: int) -> None:
        with self._lock:
            self._paths[path] = code

    def outcome(self, path: str) -> int | None:
        with self._lock:
            return self._paths.get(path)

    def snapshot(self) -> dict[str, int | None]:
        with self._lock:
            return dict(self._paths)

    def __contains__(self, path: object) -> bool:
        with self._lock:
            return path in self._paths

    def __len__(self) -> int:
        with self._lock:
            return len(self._paths)


@dataclass
class FetchedPage:
    code: int
    content: str
    links: list[str] = field(default_factory=list)


def _describe(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"{type(exc).__name__}: Status={exc.response.status_code}"
    parts = [f"{type(exc).__name__}: {exc}"]
    cause = exc.__cause__ or exc.__context__
    while cause is not None and len(parts) < 5:
        parts.append(f"{type(cause).__name__}: {cause}")
        cause = cause.__cause__ or cause.__context__
    return " <- ".join(parts)


def classify_failure(exc: BaseException) -> int:
    """Map a fetch exception to the outcome code stored on the page."""

    if isinstance(exc, FetchFailure):
        return exc.code
    description = _describe(exc)
    for markers, code in FAILURE_CODES:
        if any(marker in description for marker in markers):
            return code
    return UNKNOWN_FAILURE


def extract_paths(soup: BeautifulSoup) -> list[str]:
    """Return root-relative ``href`` values in document order, deduplicated."""

    paths: dict[str, None] = {}
    for anchor in soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if not href.startswith("/") or href.startswith("//"):
            continue
        href = href.split("#", 1)[0]
        if href:
            paths.setdefault(href, None)
    return list(paths)


def document_markup(soup: BeautifulSoup) -> str:
    """Concatenate the document's ``<head>`` and ``<body>`` markup."""

    head = soup.head.extract() if soup.head is not None else None
    body = str(soup.body) if soup.body is not None else f"<body>{soup.decode().strip()}</body>"
    return f"{head if head is not None else '<head></head>'}{body}"


async def fetch_page(client: httpx.AsyncClient, url: str) -> FetchedPage:
    """Fetch ``url`` and return its status, head+body markup and links.

    Raises ``httpx.HTTPError`` for transport problems and error statuses,
    :class:`UnsupportedContentType` for non-HTML responses and
    :class:`EmptyPageContent` for empty bodies.
    """

    response = await client.get(url)
    response.raise_for_status()
    ctype = response.headers.get("content-type", "")
    main_type = ctype.split(";")[0].strip().lower()
    if main_type not in HTML_CONTENT_TYPES:
        raise UnsupportedContentType(f"Unhandled content type {ctype!r} at {url}")
    if not response.text.strip():
        raise EmptyPageContent(f"Content of {url} is empty")
    soup = BeautifulSoup(response.text, "html.parser")
    links = extract_paths(soup)
    return FetchedPage(code=response.status_code, content=document_markup(soup), links=links)


def client_factory_from_settings(http: HttpSettings) -> ClientFactory:
    """Return a factory producing clients with the configured identity."""

    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            headers={"User-Agent": http.user_agent, "Referer": http.referrer},
            timeout=httpx.Timeout(http.timeout, pool=None),
            follow_redirects=True,
        )

    return factory


class PageFinder:
    """Crawl task tree for one site.

    Parameters
    ----------
    storage, indexer:
        Where pages are written and how their lemmas are indexed.
    site:
        Site row; ``site.url`` has no trailing slash and paths start with ``/``.
    client:
        Open ``httpx.AsyncClient`` shared by every task of the crawl.
    visited, token:
        Shared dedup map and cancellation flag. Fresh ones are created when
        omitted.
    concurrency:
        Maximum number of requests in flight for this site.
    """

    def __init__(
        self,
        storage: Storage,
        indexer: Indexer,
        site: Site,
        client: httpx.AsyncClient,
        *,
        visited: VisitedPaths | None = None,
        token: CancellationToken | None = None,
        concurrency: int = DEFAULT_CONCURRENCY,
    ) -> None:
        self.storage = storage
        self.indexer = indexer
        self.site = site
        self.client = client
        self.visited = visited if visited is not None else VisitedPaths()
        self.token = token if token is not None else CancellationToken()
        self._slots = asyncio.Semaphore(max(1, concurrency))

    def url_for(self, path: str) -> str:
        return f"{self.site.url}{path}"

    async def _fetch(self, path: str) -> FetchedPage:
        async with self._slots:
            return await fetch_page(self.client, self.url_for(path))

    async def crawl(self, path: str = ROOT_PATH) -> None:
        """Fetch ``path``, record it and crawl its unvisited links."""

        if not self.token.active or path in self.visited:
            return
        if not self.visited.claim(path):
            return
        try:
            fetched = await self._fetch(path)
        except Exception as exc:  # noqa: BLE001 - every failure becomes a page code
            code = classify_failure(exc)
            self.visited.record(path, code)
            if not self.token.active:
                return
            await asyncio.to_thread(self._record_failure, path, code)
            logger.debug(
                "page_fetch_failed",
                site=self.site.url,
                path=path,
                code=code,
                error=str(exc),
            )
            return

        if not self.token.active:
            return
        self.visited.record(path, fetched.code)
        await asyncio.to_thread(self._record_page, path, fetched)

        children = [link for link in fetched.links if link not in self.visited]
        if not children or not self.token.active:
            return
        tasks = [asyncio.create_task(self.crawl(child)) for child in children]
        try:
            for task in tasks:
                if not self.token.active:
                    logger.debug("crawl_branch_abandoned", site=self.site.url, path=path)
                    break
                await task
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

    async def refresh(self, path: str) -> Page:
        """Fetch ``path`` once and re-index it without following links."""

        try:
            fetched = await self._fetch(path)
        except Exception as exc:  # noqa: BLE001 - every failure becomes a page code
            code = classify_failure(exc)
            logger.info("page_refresh_failed", site=self.site.url, path=path, code=code, error=str(exc))
            return await asyncio.to_thread(self._record_refresh_failure, path, code)
        return await asyncio.to_thread(self._refresh_page, path, fetched)

    def _record_failure(self, path: str, code: int) -> Page:
        page = self.storage.save_page(self.site.id, path, code, "")
        self.storage.touch_site(self.site.id)
        return page

    def _record_page(self, path: str, fetched: FetchedPage) -> Page:
        page = self.storage.save_page(self.site.id, path, fetched.code, fetched.content)
        self.storage.touch_site(self.site.id)
        self.indexer.apply_index(fetched.content, page)
        return page

    def _record_refresh_failure(self, path: str, code: int) -> Page:
        existing = self.storage.find_page(self.site.id, path)
        if existing is not None:
            self.indexer.retract_index(existing)
        return self._record_failure(path, code)

    def _refresh_page(self, path: str, fetched: FetchedPage) -> Page:
        self.storage.touch_site(self.site.id)
        existing = self.storage.find_page(self.site.id, path)
        page = self.storage.save_page(self.site.id, path, fetched.code, fetched.content)
        if existing is not None:
            self.indexer.refresh_index(fetched.content, page)
        else:
            self.indexer.apply_index(fetched.content, page)
        logger.info("page_refreshed", site=self.site.url, path=path, code=fetched.code)
        return page


async def crawl_site(
    storage: Storage,
    indexer: Indexer,
    site: Site,
    client_factory: ClientFactory,
    token: CancellationToken,
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
) -> VisitedPaths:
    """Crawl ``site`` from its root; return the visited map."""

    async with client_factory() as client:
        finder = PageFinder(storage, indexer, site, client, token=token, concurrency=concurrency)
        await finder.crawl(ROOT_PATH)
    return finder.visited


async def refresh_site_page(
    storage: Storage,
    indexer: Indexer,
    site: Site,
    path: str,
    client_factory: ClientFactory,
) -> Page:
    async with client_factory() as client:
        finder = PageFinder(storage, indexer, site, client)
        return await finder.refresh(path)


def main(argv: list[str] | None = None) -> int:  # pragma: no cover - convenience CLI
    """Entry point of the ``searchengine`` console script."""

    from app.main import build_services
    from core.status import get_statistics
    from errors import IndexingAlreadyRunning, PageOutsideSites
    from observability.logging import configure_logging
    from settings import get_settings

    parser = argparse.ArgumentParser(description="Site search engine")
    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("index", help="re-crawl every configured site")
    page_cmd = sub.add_parser("index-page", help="re-index a single page")
    page_cmd.add_argument("url")
    search_cmd = sub.add_parser("search", help="run a query against the index")
    search_cmd.add_argument("query")
    search_cmd.add_argument("--site", default=None)
    search_cmd.add_argument("--offset", type=int, default=0)
    search_cmd.add_argument("--limit", type=int, default=None)
    sub.add_parser("stats", help="print index statistics")
    serve_cmd = sub.add_parser("serve", help="run the HTTP API")
    serve_cmd.add_argument("--host", default="127.0.0.1")
    serve_cmd.add_argument("--port", type=int, default=8000)
    args = parser.parse_args(argv)

    configure_logging()
    if args.command == "serve":
        import uvicorn

        uvicorn.run("app.main:create_app", factory=True, host=args.host, port=args.port)
        return 0
    services = build_services(get_settings())
    try:
        if args.command == "index":
            try:
                services.orchestrator.start()
            except IndexingAlreadyRunning as exc:
                print(exc, file=sys.stderr)
                return 1
            try:
                services.orchestrator.wait()
            except KeyboardInterrupt:
                services.orchestrator.stop()
                services.orchestrator.wait()
            return 0
        if args.command == "index-page":
            try:
                services.orchestrator.index_page(args.url)
            except PageOutsideSites as exc:
                print(exc, file=sys.stderr)
                return 2
            return 0
        if args.command == "search":
            response = services.search_engine.search(
                args.query, args.site, offset=args.offset, limit=args.limit
            )
            print(response.model_dump_json(by_alias=True, indent=2))
            return 0 if response.result else 1
        stats = get_statistics(services.storage, services.settings.sites, services.orchestrator)
        print(stats.model_dump_json(by_alias=True, indent=2))
        return 0
    finally:
        services.storage.dispose()


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
