"""Wall-clock timing helpers."""

from __future__ import annotations

import time


class Timer:
    """Context timer; `elapsed_ms` is live inside the block and frozen on exit."""

    def __init__(self) -> None:
        self._start = 0.0
        self._end: float | None = None

    def __enter__(self) -> "Timer":
        self._start = time.perf_counter()
        self._end = None
        return self

    def __exit__(self, exc_type: object, exc: object, tb: object) -> None:
        self._end = time.perf_counter()

    @property
    def elapsed_ms(self) -> float:
        end = self._end if self._end is not None else time.perf_counter()
        return (end - self._start) * 1000.0
