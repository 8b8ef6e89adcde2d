"""
Logging configuration — console and optional file output for the CLI.

``setup_logging`` is called once by main.py; engine modules only declare
``logger = logging.getLogger(__name__)``.

Apply runs provider calls on pool threads named ``converge-apply_N``.
Every record gets a ``worker`` field (``main`` or ``apply-N``) so
interleaved lines from parallel operations can be told apart.

Level precedence: explicit argument > CONVERGE_LOG_LEVEL > WARNING.
File output: CONVERGE_LOG_FILE, at CONVERGE_LOG_FILE_LEVEL.
"""

from __future__ import annotations

import logging
import os
import sys
import threading

ENV_LEVEL = "CONVERGE_LOG_LEVEL"
ENV_FILE = "CONVERGE_LOG_FILE"
ENV_FILE_LEVEL = "CONVERGE_LOG_FILE_LEVEL"

_APPLY_THREAD_PREFIX = "converge-apply_"

# (format, datefmt) per output style
_STYLES: dict[str, tuple[str, str | None]] = {
    "plain": ("%(message)s", None),
    "verbose": ("%(asctime)s %(worker)-8s %(message)s", "%H:%M:%S"),
    "debug": (
        "%(asctime)s.%(msecs)03d %(levelname)-5s %(worker)-8s %(name)s:%(lineno)d  %(message)s",
        "%H:%M:%S",
    ),
    "file": (
        "%(asctime)s %(levelname)-5s %(worker)-8s %(name)s  %(message)s",
        "%Y-%m-%d %H:%M:%S",
    ),
}


class WorkerFilter(logging.Filter):
    """Tag each record with the scheduler worker that emitted it."""

    def filter(self, record: logging.LogRecord) -> bool:
        name = threading.current_thread().name
        if name.startswith(_APPLY_THREAD_PREFIX):
            record.worker = "apply-" + name[len(_APPLY_THREAD_PREFIX):]
        elif name == "MainThread":
            record.worker = "main"
        else:
            record.worker = name
        return True


def _handler(handler: logging.Handler, level: int, style: str) -> logging.Handler:
    fmt, datefmt = _STYLES[style]
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
    handler.addFilter(WorkerFilter())
    return handler


def setup_logging(
    level: str | None = None,
    log_file: str | None = None,
    log_file_level: str | None = None,
) -> None:
    """Configure the root logger for the whole process.

    Args:
        level: Console level name.
        log_file: Path of an extra log file (default: CONVERGE_LOG_FILE).
        log_file_level: Level for the file (default: CONVERGE_LOG_FILE_LEVEL,
            then the console level).
    """
    console_level = _parse_level(level or os.environ.get(ENV_LEVEL))
    log_file = log_file or os.environ.get(ENV_FILE)
    log_file_level = log_file_level or os.environ.get(ENV_FILE_LEVEL)

    if console_level <= logging.DEBUG:
        style = "debug"
    elif console_level <= logging.INFO:
        style = "verbose"
    else:
        style = "plain"

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), console_level, style))

    root_level = console_level
    if log_file:
        file_level = _parse_level(log_file_level) if log_file_level else console_level
        root.addHandler(_handler(logging.FileHandler(log_file, encoding="utf-8"), file_level, "file"))
        root_level = min(root_level, file_level)

    root.setLevel(root_level)
    logging.raiseExceptions = False


def _parse_level(level: str | None) -> int:
    """Level name to its numeric value; unknown names mean WARNING."""
    numeric = getattr(logging, level.upper(), None) if level else None
    return numeric if isinstance(numeric, int) else logging.WARNING
