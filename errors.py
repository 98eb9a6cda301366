"""Exceptions shared by the crawler, indexer and search layers."""

from __future__ import annotations


class SearchEngineError(Exception):
    """Base class for domain errors."""


class FetchFailure(SearchEngineError):
    """A page could not be fetched; ``code`` is the recorded outcome."""

    code: int = -1

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code


class UnsupportedContentType(FetchFailure):
    """The response is not an HTML document (images, PDF, archives)."""

    code = 415


class EmptyPageContent(FetchFailure):
    """The response parsed to an empty document."""


class PageOutsideSites(SearchEngineError):
    """The requested URL does not belong to any configured site."""


class IndexingAlreadyRunning(SearchEngineError):
    """A full indexing run is already active."""


class IndexingNotRunning(SearchEngineError):
    """There is no active indexing run to stop."""


class UnsupportedCharacter(SearchEngineError):
    """A morphological analyzer received a token outside its alphabet."""


class LanguageDataUnavailable(SearchEngineError, LookupError):
    """Data an analyzer depends on is not installed and could not be fetched."""
