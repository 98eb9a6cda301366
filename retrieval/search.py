"""Lemma-based AND search with relevance ranking and highlighted snippets."""

from __future__ import annotations

import html
import re
from dataclasses import dataclass, field

import structlog

from knowledge.lemmatizer import Lemmatizer
from knowledge.text import page_title, text_segments
from models import SearchResponse, SearchResult, SiteStatus
from settings import SearchSettings, SiteSettings
from storage import Page, Site, Storage

logger = structlog.get_logger(__name__)

EMPTY_QUERY = "empty query"
INDEX_NOT_READY = "index not ready"

_WORD = re.compile(r"[a-zа-яё]+", re.IGNORECASE)


@dataclass
class QueryLemma:
    """A query lemma resolved to its rows in the sites being searched."""

    lemma: str
    frequency: int
    # page id -> occurrences of the lemma on that page
    pages: dict[int, int] = field(default_factory=dict)


@dataclass
class RankedPage:
    page_id: int
    absolute: int
    peak: int
    relevance: float


class SearchEngine:
    """Answer queries against the inverted index.

    Parameters
    ----------
    storage:
        Relational store with pages, lemmas and index rows.
    lemmatizer:
        Same lemmatizer that built the index.
    sites:
        Configured sites; an unfiltered query requires all of them indexed.
    settings:
        Pruning threshold, default page size and snippet separator.
    """

    def __init__(
        self,
        storage: Storage,
        lemmatizer: Lemmatizer,
        sites: list[SiteSettings],
        settings: SearchSettings | None = None,
    ) -> None:
        self.storage = storage
        self.lemmatizer = lemmatizer
        self.sites = list(sites)
        self.settings = settings or SearchSettings()

    def search(
        self,
        query: str,
        site_url: str | None = None,
        *,
        offset: int = 0,
        limit: int | None = None,
    ) -> SearchResponse:
        """Return one page of ranked results or a rejection."""

        if not query or not query.strip():
            return SearchResponse.rejected(EMPTY_QUERY)
        scope = self._scope(site_url)
        if scope is None:
            logger.info("search_index_not_ready", site=site_url)
            return SearchResponse.rejected(INDEX_NOT_READY)

        offset = max(0, offset)
        limit = self.settings.default_limit if limit is None or limit <= 0 else limit

        lemmas = self._query_lemmas(query, scope)
        if not lemmas:
            return SearchResponse(result=True)
        ranked = self._rank(lemmas)
        results = self._render(ranked, scope, {item.lemma for item in lemmas})
        logger.info(
            "search_completed",
            query=query,
            site=site_url,
            lemmas=[item.lemma for item in lemmas],
            total=len(results),
        )
        return SearchResponse(
            result=True,
            count=len(results),
            data=results[offset : offset + limit],
        )

    def _scope(self, site_url: str | None) -> dict[int, Site] | None:
        """Sites being searched by id, or ``None`` when any is not indexed."""

        if site_url and site_url.strip():
            urls = [site_url.strip().rstrip("/")]
        else:
            urls = [site.url for site in self.sites]
        scope: dict[int, Site] = {}
        for url in urls:
            site = self.storage.find_site_by_url(url)
            if site is None or site.status != SiteStatus.INDEXED:
                return None
            scope[site.id] = site
        return scope

    def _query_lemmas(self, query: str, scope: dict[int, Site]) -> list[QueryLemma]:
        """Resolve, prune and order the distinct lemmas of ``query``."""

        total_pages = sum(self.storage.count_pages(site_id) for site_id in scope)
        resolved: list[QueryLemma] = []
        for lemma in self.lemmatizer.lemmas_from(query):
            rows = [row for row in self.storage.find_lemmas(lemma) if row.site_id in scope]
            item = QueryLemma(lemma=lemma, frequency=sum(row.frequency for row in rows))
            if item.frequency <= 0:
                continue
            for row in rows:
                for entry in self.storage.list_index_by_lemma(row.id):
                    item.pages[entry.page_id] = item.pages.get(entry.page_id, 0) + entry.count
            if not item.pages:
                continue
            share = len(item.pages) / total_pages if total_pages else 1.0
            if share > self.settings.frequency_threshold:
                logger.debug("search_lemma_pruned", lemma=lemma, share=round(share, 3))
                continue
            resolved.append(item)
        resolved.sort(key=lambda item: item.frequency)
        return resolved

    def _rank(self, lemmas: list[QueryLemma]) -> list[RankedPage]:
        """Intersect page sets rarest first and score the survivors.

        Relevance is the page's total count over its peak single-lemma count,
        normalised by the number of lemmas so it stays within ``(0, 1]``.
        The reported value is therefore ``absolute / peak`` divided by the
        number of query lemmas; the ordering is the same as ``absolute / peak``.
        """

        counts: dict[int, list[int]] = {
            page_id: [count] for page_id, count in lemmas[0].pages.items()
        }
        for item in lemmas[1:]:
            counts = {
                page_id: [*found, item.pages[page_id]]
                for page_id, found in counts.items()
                if page_id in item.pages
            }
            if not counts:
                return []

        ranked = []
        for page_id, found in counts.items():
            absolute, peak = sum(found), max(found)
            ranked.append(
                RankedPage(
                    page_id=page_id,
                    absolute=absolute,
                    peak=peak,
                    relevance=absolute / (peak * len(found)),
                )
            )
        ranked.sort(key=lambda page: (-page.relevance, page.page_id))
        return ranked

    def _render(
        self,
        ranked: list[RankedPage],
        scope: dict[int, Site],
        lemmas: set[str],
    ) -> list[SearchResult]:
        pages = self.storage.get_pages(page.page_id for page in ranked)
        results: list[SearchResult] = []
        for rank in ranked:
            page = pages.get(rank.page_id)
            if page is None:
                continue
            snippet, matched = self.snippet(page, lemmas)
            if not matched:
                continue
            site = scope[page.site_id]
            results.append(
                SearchResult(
                    site_url=site.url,
                    site_name=site.name,
                    path=page.path,
                    title=page_title(page.content),
                    snippet=snippet,
                    relevance=rank.relevance,
                    matched_words=matched,
                )
            )
        return results

    def highlight(self, segment: str, lemmas: set[str]) -> tuple[str, int]:
        """Escape ``segment`` and wrap words whose lemma is in ``lemmas`` in ``<b>``."""

        parts: list[str] = []
        position = hits = 0
        for match in _WORD.finditer(segment):
            if self.lemmatizer.lemma_of(match.group()) not in lemmas:
                continue
            parts.append(html.escape(segment[position : match.start()]))
            parts.append(f"<b>{html.escape(match.group())}</b>")
            position = match.end()
            hits += 1
        if not hits:
            return "", 0
        parts.append(html.escape(segment[position:]))
        return "".join(parts), hits

    def snippet(self, page: Page, lemmas: set[str]) -> tuple[str, int]:
        """Join the highlighted segments of ``page``; returns the matched word count."""

        fragments: list[str] = []
        matched = 0
        for segment in text_segments(page.content):
            marked, hits = self.highlight(segment, lemmas)
            if hits:
                fragments.append(marked)
                matched += hits
        return self.settings.snippet_separator.join(fragments), matched
