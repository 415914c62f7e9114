"""In-process sync scheduler: a 15-minute timer plus on-demand backfills."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

import structlog

from integrations.base import SyncResult, SyncType

logger = structlog.get_logger()

DEFAULT_INTERVAL_MINUTES = 15

SyncRunner = Callable[..., Awaitable[SyncResult]]


async def _default_runner(
    account_id: str | None = None,
    *,
    start_time: datetime | str | None = None,
    end_time: datetime | str | None = None,
    sync_type: SyncType = SyncType.EVENTS,
) -> SyncResult:
    from db.session import AsyncSessionLocal
    from workers.sync import run_event_sync

    return await run_event_sync(
        account_id,
        start_time=start_time,
        end_time=end_time,
        sync_type=sync_type,
        session_factory=AsyncSessionLocal,
    )


class SyncScheduler:
    """
    Owns the periodic sync timer and serializes every cycle it starts.

    The periodic cycle and run_window() share one lock, so a backfill
    requested while a timed cycle is running waits for it to finish
    instead of racing it on the additive financial counters.
    """

    def __init__(
        self,
        runner: SyncRunner | None = None,
        *,
        account_id: str | None = None,
        interval_seconds: float | None = None,
    ):
        if interval_seconds is None:
            from core.config import get_settings

            interval_seconds = get_settings().sync_interval_minutes * 60
        self.runner = runner or _default_runner
        self.account_id = account_id
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None
        self._lock = asyncio.Lock()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> bool:
        """Arm the timer. Returns False (and does nothing) if it is already armed."""
        if self.is_running:
            return False
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info("scheduler.started", account_id=self.account_id, interval_seconds=self.interval_seconds)
        return True

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("scheduler.stopped", account_id=self.account_id)

    async def run_once(self) -> SyncResult:
        """Run one default-window cycle now."""
        async with self._lock:
            return await self.runner(self.account_id, sync_type=SyncType.EVENTS)

    async def run_window(
        self,
        account_id: str | None = None,
        start_time: datetime | str | None = None,
        end_time: datetime | str | None = None,
    ) -> SyncResult:
        """One-shot backfill, independent of the timer. Errors propagate."""
        async with self._lock:
            return await self.runner(
                account_id or self.account_id,
                start_time=start_time,
                end_time=end_time,
                sync_type=SyncType.EVENTS_WINDOW,
            )

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                # The cycle already wrote its failed api_sync_logs row; try again next interval.
                logger.error("scheduler.cycle_failed", account_id=self.account_id, error=str(exc))
