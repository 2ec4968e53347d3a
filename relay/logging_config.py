"""Logging setup for the relay daemon.

Every record that reaches a relay handler carries a ``batch_id``
attribute: the id of the command batch being executed by the current
asyncio task, or ``-`` outside a batch. Callbacks are processed in their
own tasks, so interleaved batches stay distinguishable in one log file.

The log file is ``logs/relay.log`` under the project directory, rotated
at 5 MB with 3 backups kept.
"""
from __future__ import annotations

import contextlib
import contextvars
import logging
import os
from collections.abc import Iterator
from logging.handlers import RotatingFileHandler
from pathlib import Path

_configured = False

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(batch_id)s] %(name)s: %(message)s"
LOG_DIR_NAME = "logs"
LOG_FILE_NAME = "relay.log"
MAX_BYTES = 5 * 1024 * 1024
BACKUP_COUNT = 3
NO_BATCH = "-"

_batch_id: contextvars.ContextVar[str] = contextvars.ContextVar("relay_batch_id", default=NO_BATCH)


class BatchContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.batch_id = _batch_id.get()
        return True


@contextlib.contextmanager
def batch_context(batch_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with ``batch_id``."""
    token = _batch_id.set(batch_id)
    try:
        yield
    finally:
        _batch_id.reset(token)


def current_batch_id() -> str:
    return _batch_id.get()


def _handler(handler: logging.Handler, level: int) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(BatchContextFilter())
    return handler


def setup_logging(
    level: str | int = "INFO",
    project_dir: str | Path | None = None,
) -> None:
    """Attach console and rotating-file handlers to the root logger, once."""
    global _configured
    if _configured:
        return
    _configured = True

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    if project_dir is None:
        project_dir = os.environ.get("RELAY_PROJECT_DIR", os.getcwd())
    log_dir = Path(project_dir) / LOG_DIR_NAME
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    root.addHandler(_handler(logging.StreamHandler(), level))
    root.addHandler(_handler(
        RotatingFileHandler(log_dir / LOG_FILE_NAME, maxBytes=MAX_BYTES, backupCount=BACKUP_COUNT, encoding="utf-8"),
        level,
    ))

    # httpx logs every request at INFO; one line per result report is enough
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))


def reset() -> None:
    """For tests: let the next setup_logging() call configure again."""
    global _configured
    _configured = False
