"""Logging configuration shared by the API, the CLI and the crawler threads."""

from __future__ import annotations

import json
import logging
from functools import partial

import structlog

get_logger = structlog.get_logger

_configured = False


def configure_logging(level: int = logging.INFO) -> None:
    """Configure stdlib logging and structlog (idempotent)."""

    global _configured
    if _configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(
                serializer=partial(json.dumps, ensure_ascii=False)
            ),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    _configured = True
