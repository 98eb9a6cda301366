"""FastAPI routers package.

- search: ranked search over the lemma index
- stats: index statistics
"""

from __future__ import annotations

__all__ = [
    "search",
    "stats",
]
