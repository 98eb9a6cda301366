"""Maintain lemma frequencies and the page/lemma inverted index.

Every lemma of a page is upserted in its own short transaction: the lemma row
is read under ``SELECT ... FOR UPDATE`` and bumped with an SQL increment, or
inserted when missing. Two writers racing to insert the same new lemma hit
the ``(lemma, site_id)`` unique constraint; the loser rolls back and retries,
finding the winner's row on the next pass.
"""

from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor

import structlog
from sqlalchemy.exc import IntegrityError

from knowledge.lemmatizer import Lemmatizer
from storage import Page, Storage

logger = structlog.get_logger(__name__)


class Indexer:
    """Apply and retract a page's lemma contributions.

    Parameters
    ----------
    storage:
        Relational store holding the lemma and index tables.
    lemmatizer:
        Turns page content into ``{lemma: count}``.
    workers:
        Upper bound on lemmas of one page upserted concurrently.
    """

    def __init__(self, storage: Storage, lemmatizer: Lemmatizer, *, workers: int = 4) -> None:
        self.storage = storage
        self.lemmatizer = lemmatizer
        self.workers = max(1, workers)

    def upsert_lemma(self, lemma: str, count: int, page: Page) -> int:
        """Add ``count`` occurrences of ``lemma`` on ``page``; return the lemma id."""

        attempts = 0
        while True:
            attempts += 1
            try:
                with self.storage.transaction() as session:
                    row = self.storage.find_lemma_for_update(session, lemma, page.site_id)
                    if row is None:
                        row = self.storage.insert_lemma(session, page.site_id, lemma, count)
                    else:
                        self.storage.increment_lemma(session, row.id, count)
                    self.storage.upsert_index_entry(session, page.id, row.id, count)
                    return row.id
            except IntegrityError:
                logger.debug(
                    "lemma_insert_conflict",
                    lemma=lemma,
                    site_id=page.site_id,
                    page_id=page.id,
                    attempt=attempts,
                )

    def apply_index(self, content: str, page: Page) -> dict[str, int]:
        """Lemmatize ``content`` and add every lemma to the index of ``page``."""

        started = time.monotonic()
        lemmas = self.lemmatizer.lemmas_from(content)
        if self.workers == 1 or len(lemmas) < 2:
            for lemma, count in lemmas.items():
                self.upsert_lemma(lemma, count, page)
        else:
            with ThreadPoolExecutor(
                max_workers=min(self.workers, len(lemmas)),
                thread_name_prefix=f"indexer-{page.id}",
            ) as pool:
                futures = [
                    pool.submit(self.upsert_lemma, lemma, count, page)
                    for lemma, count in lemmas.items()
                ]
                for future in futures:
                    future.result()
        logger.debug(
            "page_indexed",
            page_id=page.id,
            path=page.path,
            lemmas=len(lemmas),
            elapsed_ms=round((time.monotonic() - started) * 1000),
        )
        return lemmas

    def retract_index(self, page: Page) -> int:
        """Remove the page's contribution from lemma frequencies and the index.

        Runs as a single transaction so a subsequent :meth:`apply_index` never
        sees half-retracted counts. Returns the number of entries removed.
        """

        with self.storage.transaction() as session:
            entries = self.storage.list_index_by_page(page.id, session=session)
            for entry in entries:
                self.storage.increment_lemma(session, entry.lemma_id, -entry.count)
            self.storage.delete_index_by_page(page.id, session=session)
        logger.debug("page_index_retracted", page_id=page.id, entries=len(entries))
        return len(entries)

    def refresh_index(self, content: str, page: Page) -> dict[str, int]:
        """Retract the page's previous contribution, then index ``content``."""

        self.retract_index(page)
        return self.apply_index(content, page)
