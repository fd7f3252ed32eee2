"""Logging setup for the API process."""

from __future__ import annotations

import logging
import os

DEFAULT_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"
DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"


def configure_logging(level: str | None = None) -> logging.Logger:
    """Configure root logging and align uvicorn's loggers with it.

    The level comes from ``level``, else the ``LOG_LEVEL`` env var, else INFO.
    """
    resolved = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    logging.basicConfig(level=resolved, format=DEFAULT_FORMAT, datefmt=DEFAULT_DATEFMT)

    app_logger = logging.getLogger("teenpatti")
    app_logger.setLevel(resolved)
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).setLevel(resolved)

    app_logger.debug("Logging configured at %s", resolved)
    return app_logger
