"""Concurrency gate for ffmpeg processes."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager

from errors import CapacityExceeded


log = logging.getLogger(__name__)


class AdmissionController:
    """Counts running transcodes and refuses new ones at the cap.

    There is no queue: acquire() either takes a slot immediately or raises
    CapacityExceeded.
    """

    def __init__(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._in_use = 0
        self._lock = threading.Lock()

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def in_use(self) -> int:
        with self._lock:
            return self._in_use

    def acquire(self) -> None:
        with self._lock:
            if self._in_use >= self._capacity:
                log.warning("Transcode rejected: %d/%d slots in use", self._in_use, self._capacity)
                raise CapacityExceeded(f"{self._in_use}/{self._capacity} transcodes running")
            self._in_use += 1

    def release(self) -> None:
        with self._lock:
            if self._in_use <= 0:
                raise RuntimeError("release() without a matching acquire()")
            self._in_use -= 1

    @contextmanager
    def slot(self) -> Iterator[None]:
        """Hold one slot for the duration of the with block, whatever the exit path."""
        self.acquire()
        try:
            yield
        finally:
            self.release()
