"""Root logging for orchestrator sessions. Timestamps are UTC, like terminal and news times."""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import time

LOG_FORMAT = "%(asctime)sZ %(levelname)s %(name)s: %(message)s"


class UTCFormatter(logging.Formatter):
    converter = time.gmtime


def resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level).strip().upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    *,
    level: int | str = logging.INFO,
    log_file: str | None = None,
    console: bool = True,
    max_bytes: int = 5_000_000,
    backup_count: int = 3,
) -> None:
    handlers: list[logging.Handler] = []

    if console:
        handlers.append(logging.StreamHandler(stream=sys.stderr))

    if log_file:
        log_dir = os.path.dirname(str(log_file))
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        # Unattended runs can go for days.
        handlers.append(
            logging.handlers.RotatingFileHandler(
                str(log_file), maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
            )
        )

    if not handlers:
        handlers.append(logging.NullHandler())

    formatter = UTCFormatter(LOG_FORMAT)
    for h in handlers:
        h.setFormatter(formatter)
    logging.basicConfig(level=resolve_level(level), handlers=handlers, force=True)
