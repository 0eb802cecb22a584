"""Logging setup for the service entry points."""
from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging() -> None:
    """Log to a file and the console, once per process.

    Level and file come from ``CONTEXTFUSION_LOG_LEVEL`` and
    ``CONTEXTFUSION_LOG_FILE``; an empty file name disables the file handler.
    """
    root_logger = logging.getLogger()
    if root_logger.handlers:
        return

    level_name = os.getenv("CONTEXTFUSION_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = os.getenv("CONTEXTFUSION_LOG_FILE", "contextfusion.log")

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path, encoding="utf-8"))

    root_logger.setLevel(level)
    for handler in handlers:
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)
    # third-party HTTP chatter
    logging.getLogger("urllib3").setLevel(max(level, logging.WARNING))


__all__ = ["setup_logging"]
