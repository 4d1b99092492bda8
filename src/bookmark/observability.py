"""
Structured logging for the reading companion.

Events are JSON lines written to one log file. Values bound with
``log_context`` (book, session, model) are merged into every event emitted
inside the block, including from worker threads started there.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path

import structlog

_CONFIGURED = False


def _attach_file_handler(root: logging.Logger, path: Path):
    target = str(path.resolve())
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == target:
            return
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(file_handler)


def configure_logging(log_path: str | Path, level: int = logging.INFO):
    """Routes structlog events to ``log_path``; later calls are no-ops."""
    global _CONFIGURED
    if _CONFIGURED:
        return

    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    root.setLevel(level)
    _attach_file_handler(root, path)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _CONFIGURED = True


@contextmanager
def log_context(**fields):
    """Binds ``fields`` to every event logged inside the block."""
    with structlog.contextvars.bound_contextvars(**fields):
        yield


def get_logger(name: str):
    return structlog.get_logger(name)
