"""App package for the site search engine.

Provides the FastAPI application factory and routers.
"""

from __future__ import annotations

from app.main import create_app

__all__ = ["create_app"]
