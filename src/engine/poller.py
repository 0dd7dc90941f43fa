"""
Periodic refresh driver for a dashboard view.

Polls the pipeline at a fixed interval while the view is alive.  ``stop``
cancels the pending cycle, prevents any further scheduling, and any refresh
still in flight has its result ignored on arrival.
"""
from __future__ import annotations

import asyncio
import inspect
from typing import Any, Callable, Union

from src.core.config import get_settings
from src.core.logging import get_logger
from src.engine.pipeline import DashboardPipeline, DashboardRequest, DashboardSnapshot

logger = get_logger(__name__)

RequestSource = Union[DashboardRequest, Callable[[], DashboardRequest]]


class DashboardPoller:
    def __init__(
        self,
        pipeline: DashboardPipeline,
        request: RequestSource,
        on_snapshot: Callable[[DashboardSnapshot], Any],
        interval: float | None = None,
    ):
        self._pipeline = pipeline
        self._request = request
        self._on_snapshot = on_snapshot
        self._interval = interval if interval is not None else get_settings().poll_interval_seconds
        self._task: asyncio.Task | None = None
        self._stopped = False
        self.cycles = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def update(self, request: RequestSource) -> None:
        """Swap the request used from the next cycle on."""
        self._request = request

    def start(self) -> None:
        if self._stopped:
            raise RuntimeError("Poller was stopped and cannot be restarted")
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Poller started (interval=%.1fs)", self._interval)

    async def stop(self) -> None:
        self._stopped = True
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Poller stopped after %d cycles", self.cycles)

    async def _run(self) -> None:
        while not self._stopped:
            try:
                request = self._request() if callable(self._request) else self._request
                snapshot = await self._pipeline.refresh(request)
                if self._stopped:
                    break
                self.cycles += 1
                if not snapshot.superseded:
                    outcome = self._on_snapshot(snapshot)
                    if inspect.isawaitable(outcome):
                        await outcome
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Poll cycle failed")
            await asyncio.sleep(self._interval)
