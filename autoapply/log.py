"""Logging for the worker: console plus a file that rotates at midnight.

The worker is long-lived, so the file is rotated rather than named per run.
``LOG_DIR`` moves it and an empty ``LOG_DIR`` turns it off.
"""
from __future__ import annotations

import logging
import os
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

DEFAULT_LOG_DIR = Path(__file__).resolve().parent.parent / "logs"
LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s  %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
BACKUP_DAYS = 14

# Libraries that log every request at INFO
QUIET_LOGGERS = ("httpx", "openai", "urllib3", "asyncio")

_configured = False


def get_logger(name: str) -> logging.Logger:
    """Return a named logger; configures root handlers on first call."""
    global _configured
    if not _configured:
        _configure()
        _configured = True
    return logging.getLogger(name)


def parse_level(name: str | None) -> int:
    level = logging.getLevelName((name or "INFO").strip().upper())
    return level if isinstance(level, int) else logging.INFO


def set_level(name: str) -> None:
    """Change the root and console level at runtime, e.g. for ``--verbose``."""
    level = parse_level(name)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if not isinstance(handler, logging.FileHandler):
            handler.setLevel(level)
    _quiet(level)


def log_dir() -> Path | None:
    value = os.environ.get("LOG_DIR")
    if value is None:
        return DEFAULT_LOG_DIR
    return Path(value).expanduser() if value.strip() else None


def _quiet(level: int) -> None:
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def _configure() -> None:
    level = parse_level(os.environ.get("LOG_LEVEL"))
    root = logging.getLogger()
    root.setLevel(level)
    _quiet(level)

    if root.handlers:
        return

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    directory = log_dir()
    if directory is None:
        return
    try:
        directory.mkdir(parents=True, exist_ok=True)
        fh = TimedRotatingFileHandler(
            directory / "worker.log", when="midnight", backupCount=BACKUP_DAYS, encoding="utf-8",
        )
    except OSError as e:
        root.warning("File logging disabled (%s): %s", directory, e)
        return
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(formatter)
    root.addHandler(fh)
