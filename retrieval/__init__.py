"""Query-time retrieval over the lemma index."""

from __future__ import annotations

from retrieval.search import SearchEngine

__all__ = ["SearchEngine"]
