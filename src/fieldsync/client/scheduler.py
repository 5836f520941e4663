from __future__ import annotations

import asyncio
import logging

from fieldsync.client.sync_engine import DrainReport, SyncEngine
from fieldsync.config import settings

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Decides when the engine drains: connectivity changes, manual taps, a timer.

    Triggers coalesce. While a drain is running, further triggers mark one
    follow-up drain instead of starting a second worker; the returned task
    completes once the queue has been drained after the last trigger.
    """

    def __init__(
        self,
        engine: SyncEngine,
        *,
        interval_seconds: float | None = None,
        online: bool = True,
    ) -> None:
        self._engine = engine
        self._interval = (
            interval_seconds if interval_seconds is not None else settings.sync_interval_seconds
        )
        self._online = online
        self._task: asyncio.Task[None] | None = None
        self._rerun = False
        self.last_report: DrainReport | None = None
        self.drain_count = 0

    @property
    def online(self) -> bool:
        return self._online

    def _trigger(self, reason: str) -> asyncio.Task[None] | None:
        if not self._online:
            logger.debug("sync trigger ignored while offline reason=%s", reason)
            return None
        if self._task is not None and not self._task.done():
            self._rerun = True
            return self._task
        self._task = asyncio.create_task(self._run(reason))
        return self._task

    async def _run(self, reason: str) -> None:
        while True:
            self._rerun = False
            try:
                self.last_report = await self._engine.drain()
            except Exception:
                logger.exception("drain failed reason=%s", reason)
            self.drain_count += 1
            if not (self._rerun and self._online):
                return
            reason = "coalesced"

    def on_connectivity_restored(self) -> asyncio.Task[None] | None:
        self._online = True
        logger.info("connectivity restored, scheduling drain")
        return self._trigger("connectivity_restored")

    def on_connectivity_lost(self) -> None:
        self._online = False
        logger.info("connectivity lost, queue held locally")

    def on_manual_trigger(self) -> asyncio.Task[None] | None:
        return self._trigger("manual")

    async def wait_idle(self) -> None:
        task = self._task
        if task is not None:
            await task

    async def run_periodic(self, stop_event: asyncio.Event) -> None:
        """Drain every `interval_seconds` while online until `stop_event` is set."""

        while not stop_event.is_set():
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self._interval)
                return
            except asyncio.TimeoutError:
                task = self._trigger("periodic")
            if task is not None:
                await task
