"""Shared logging configuration for the cocode backend.

Provides a single place to configure console + rotating file logging.
"""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler


def _has_filehandler(logger: logging.Logger, filename: str) -> bool:
    for h in logger.handlers:
        if isinstance(h, RotatingFileHandler) and getattr(h, "baseFilename", "").endswith(filename):
            return True
    return False


def configure_logging(
    level: int | str = logging.INFO,
    log_file: str | None = "cocode.log",
    max_bytes: int = 1_000_000,
    backup_count: int = 3,
) -> None:
    """Configure the root logger with console + rotating file handlers.

    Safe to call multiple times; avoids duplicate handlers.
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    root = logging.getLogger()
    root.setLevel(level)

    if not any(type(h) is logging.StreamHandler for h in root.handlers):
        sh = logging.StreamHandler()
        sh.setLevel(level)
        sh.setFormatter(fmt)
        root.addHandler(sh)

    if log_file and not _has_filehandler(root, log_file):
        fh = RotatingFileHandler(log_file, maxBytes=max_bytes, backupCount=backup_count)
        fh.setLevel(level)
        fh.setFormatter(fmt)
        root.addHandler(fh)

    # Quiet noisy libraries unless debugging
    for noisy in ("urllib3", "google", "grpc"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
