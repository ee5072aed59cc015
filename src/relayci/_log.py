"""Logging for relayci: one stderr handler on the ``relayci`` logger."""

from __future__ import annotations

import logging
import sys
import threading

_ROOT = "relayci"

_lock = threading.Lock()
_handler: logging.Handler | None = None


class _Formatter(logging.Formatter):
    """``[module] message``; with *verbose* also the time and worker thread."""

    def __init__(self, verbose: bool = False):
        super().__init__()
        self.verbose = verbose

    def format(self, record: logging.LogRecord) -> str:
        tag = record.name.removeprefix(f"{_ROOT}.")
        line = f"[{tag}] {super().format(record)}"
        if self.verbose:
            line = f"{self.formatTime(record, '%H:%M:%S')} {record.threadName} {line}"
        return line


def setup_logging(verbose: bool = False, level: str | None = None) -> None:
    """Configure the ``relayci`` logger; safe to call repeatedly.

    Level is DEBUG when *verbose*, else *level* (a logging level name),
    else WARNING. The first call installs the handler, later calls only
    adjust the level and verbosity.
    """
    global _handler
    with _lock:
        logger = logging.getLogger(_ROOT)
        if verbose:
            logger.setLevel(logging.DEBUG)
        elif level:
            logger.setLevel(level.upper())
        elif _handler is None:
            logger.setLevel(logging.WARNING)

        if _handler is None:
            _handler = logging.StreamHandler(sys.stderr)
            logger.addHandler(_handler)
            logger.propagate = False
        if verbose or _handler.formatter is None:
            _handler.setFormatter(_Formatter(verbose=verbose))


def get_logger(name: str) -> logging.Logger:
    setup_logging()
    return logging.getLogger(f"{_ROOT}.{name}")
