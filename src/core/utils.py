"""
Small shared utilities.
"""
from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Generator, Hashable, Iterable, TypeVar

T = TypeVar("T", bound=Hashable)


@contextmanager
def timer() -> Generator[dict, None, None]:
    """Records elapsed wall-clock milliseconds under ``elapsed_ms``, even if the block raises."""
    result: dict = {"elapsed_ms": 0}
    start = time.perf_counter()
    try:
        yield result
    finally:
        result["elapsed_ms"] = int((time.perf_counter() - start) * 1000)


def unique(items: Iterable[T]) -> list[T]:
    """Drop duplicates, keeping first-seen order."""
    seen: set = set()
    out: list[T] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out
