from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from typing import Iterator, List, Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"


def get_logger(name: str = "nirload", level: Optional[int] = None) -> logging.Logger:
    """Return a named logger.

    Adds a StreamHandler with basic formatting if neither the logger nor the
    package root has handlers attached.
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    root = logging.getLogger("nirload")
    if not logger.handlers and not root.handlers and not logging.getLogger().handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(handler)
        if root.level == logging.NOTSET:
            root.setLevel(logging.INFO)
    return logger


def configure_logging(level: int = logging.INFO, log_file: Optional[str] = None) -> logging.Logger:
    """Configure the package root logger for CLI / job use."""
    root = logging.getLogger("nirload")
    root.setLevel(level)
    for h in list(root.handlers):
        root.removeHandler(h)

    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    for h in handlers:
        h.setLevel(level)
        h.setFormatter(formatter)
        root.addHandler(h)
    return root


class Stopwatch:
    def __init__(self) -> None:
        self.started = time.perf_counter()
        self.stopped: Optional[float] = None

    @property
    def seconds(self) -> float:
        end = self.stopped if self.stopped is not None else time.perf_counter()
        return end - self.started

    @property
    def millis(self) -> float:
        return self.seconds * 1000.0


@contextmanager
def elapsed() -> Iterator[Stopwatch]:
    sw = Stopwatch()
    try:
        yield sw
    finally:
        sw.stopped = time.perf_counter()


__all__ = ["LOG_FORMAT", "get_logger", "configure_logging", "elapsed", "Stopwatch"]
