"""Bounded in-memory log for the /logs endpoint."""

from __future__ import annotations

import logging
from collections import deque
from typing import Deque

DEFAULT_CAPACITY = 500
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


class LogBuffer:
    """Most recent ``capacity`` formatted lines, oldest evicted first."""

    def __init__(self, capacity: int = DEFAULT_CAPACITY) -> None:
        if capacity <= 0:
            raise ValueError("capacity must be positive")
        self._lines: Deque[str] = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._lines.maxlen or 0

    def append(self, line: str) -> None:
        self._lines.append(line.rstrip("\n"))

    def read_all(self) -> str:
        return "\n".join(self._lines)

    def __len__(self) -> int:
        return len(self._lines)


class LogBufferHandler(logging.Handler):
    def __init__(self, buffer: LogBuffer, level: int = logging.NOTSET) -> None:
        super().__init__(level=level)
        self.buffer = buffer
        self.setFormatter(logging.Formatter(LOG_FORMAT))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.buffer.append(self.format(record))
        except Exception:
            self.handleError(record)
