"""Shared utility functions for the expense categorizer."""

import hashlib
import logging
from collections.abc import Iterator, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TypeVar

import colorlog

T = TypeVar("T")


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def get_logger(name: str) -> logging.Logger:
    """Get a logger under the project namespace; the colorized console handler lives on the top-level logger."""
    project_logger = logging.getLogger(name.split(".", 1)[0])
    if not project_logger.handlers:
        handler = logging.StreamHandler()
        formatter = colorlog.ColoredFormatter(
            f"%(log_color)s{LOG_FORMAT}",
            datefmt="%Y-%m-%d %H:%M:%S",
            log_colors={
                "DEBUG": "cyan",
                "INFO": "green",
                "WARNING": "yellow",
                "ERROR": "red",
                "CRITICAL": "bold_red",
            },
        )
        handler.setFormatter(formatter)
        project_logger.addHandler(handler)
        project_logger.setLevel(logging.INFO)
        project_logger.propagate = False
    return logging.getLogger(name)


def setup_logging(log_file: str | Path, name: str = "expense-categorizer") -> logging.Logger:
    """Configure console logging and a persistent (not colorized) log file."""
    logger = get_logger(name)
    if not any(isinstance(h, logging.FileHandler) for h in logger.handlers):
        ensure_dir(Path(log_file).parent)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(file_handler)
    return logger


def ensure_dir(path: str | Path) -> None:
    """Ensure a directory exists (like mkdir -p)."""
    Path(path).mkdir(parents=True, exist_ok=True)


def utcnow() -> datetime:
    """Get the current UTC time."""
    return datetime.now(UTC)


def expense_id_for(user_id: str, summary: str, timestamp: datetime) -> str:
    """Deterministic expense id: SHA-256 of ``user_id|summary|timestamp``."""
    digest_input = f"{user_id}|{summary}|{timestamp.isoformat()}"
    return hashlib.sha256(digest_input.encode("utf-8")).hexdigest()


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most ``size`` items."""
    if size < 1:
        msg = f"Chunk size must be positive, got {size}"
        raise ValueError(msg)
    for start in range(0, len(items), size):
        yield items[start : start + size]


def truncate(text: str, limit: int = 300) -> str:
    """Shorten ``text`` for log output."""
    if len(text) <= limit:
        return text
    return text[: limit - 3] + "..."
