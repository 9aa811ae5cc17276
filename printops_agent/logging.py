"""Logging configuration helpers."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(
    level: str = "INFO", *, log_path: Optional[Path] = None, log_network: bool = False
) -> None:
    """Configure root logging handlers.

    Parameters
    ----------
    level:
        Log level name, e.g. "INFO".
    log_path:
        Optional filesystem path for a file handler. When absent, or when the
        directory cannot be created, only console logging is configured.
    log_network:
        When true, keep aiohttp's client and websocket loggers at the root
        level to aid diagnostics.
    """

    logging.captureWarnings(True)

    for handler in list(logging.getLogger().handlers):
        logging.getLogger().removeHandler(handler)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    if log_path:
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_path)
        except OSError as exc:
            logging.getLogger(__name__).warning(
                "Cannot write log file %s: %s", log_path, exc
            )
        else:
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logging.getLogger().addHandler(file_handler)

    if not log_network:
        logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
        logging.getLogger("aiohttp.client").setLevel(logging.WARNING)
        logging.getLogger("aiohttp.websocket").setLevel(logging.WARNING)
