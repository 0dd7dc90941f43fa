"""
Shared fixtures: a scripted query executor and a manual clock.
"""
from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from src.core.errors import UpstreamExecutionError
from src.query.catalog import QueryCatalog, load_default_catalog


class FakeClock:
    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeExecutor:
    """Answers queries from a responder; records every call.

    ``responder(query)`` returns rows or raises.  ``gate`` (an asyncio.Event)
    blocks execution until set, to interleave concurrent refreshes.
    """

    def __init__(self, responder: Callable[[str], Any] | None = None):
        self.responder = responder or (lambda query: [])
        self.calls: list[tuple[str, str, str]] = []
        self.gate: asyncio.Event | None = None

    async def execute(self, query, account_id, shape):
        self.calls.append((query, account_id, shape.value))
        if self.gate is not None:
            await self.gate.wait()
        return self.responder(query)


def _failing(query: str):
    raise UpstreamExecutionError("upstream timeout")


@pytest.fixture
def upstream_down() -> Callable[[str], Any]:
    """Responder that always fails with UpstreamExecutionError."""
    return _failing


@pytest.fixture(scope="session")
def catalog() -> QueryCatalog:
    return load_default_catalog()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()
