import asyncio

import pytest

from integrations.base import SyncResult, SyncStatus, SyncType
from workers.scheduler import SyncScheduler


class RecordingRunner:
    def __init__(self, fail_times=0, delay=0.0):
        self.calls = []
        self.fail_times = fail_times
        self.delay = delay
        self.active = 0
        self.max_active = 0

    async def __call__(self, account_id=None, *, start_time=None, end_time=None, sync_type=SyncType.EVENTS):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            self.calls.append(
                {"account_id": account_id, "start_time": start_time, "end_time": end_time, "sync_type": sync_type}
            )
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.fail_times:
                self.fail_times -= 1
                raise RuntimeError("telemetry unavailable")
            return SyncResult(status=SyncStatus.SUCCESS, sync_type=SyncType(sync_type), account_id=account_id).complete()
        finally:
            self.active -= 1


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_disarms():
    scheduler = SyncScheduler(RecordingRunner(), account_id="acme", interval_seconds=60)

    assert scheduler.start() is True
    assert scheduler.start() is False
    assert scheduler.is_running is True

    await scheduler.stop()
    assert scheduler.is_running is False
    await scheduler.stop()


def test_interval_defaults_to_settings(monkeypatch):
    from types import SimpleNamespace

    monkeypatch.setattr("core.config.get_settings", lambda: SimpleNamespace(sync_interval_minutes=15))
    assert SyncScheduler(RecordingRunner()).interval_seconds == 900


@pytest.mark.asyncio
async def test_timer_runs_default_window_cycles_and_survives_failures():
    runner = RecordingRunner(fail_times=1)
    scheduler = SyncScheduler(runner, account_id="acme", interval_seconds=0.01)

    scheduler.start()
    for _ in range(200):
        if len(runner.calls) >= 3:
            break
        await asyncio.sleep(0.01)
    await scheduler.stop()

    assert len(runner.calls) >= 3
    assert all(call["sync_type"] == SyncType.EVENTS for call in runner.calls)
    assert all(call["account_id"] == "acme" for call in runner.calls)


@pytest.mark.asyncio
async def test_run_window_tags_backfill_and_propagates_errors():
    runner = RecordingRunner()
    scheduler = SyncScheduler(runner, account_id="acme", interval_seconds=60)

    result = await scheduler.run_window(None, "2025-01-01T00:00:00Z", "2025-01-02T00:00:00Z")
    assert result.sync_type == SyncType.EVENTS_WINDOW
    assert runner.calls[-1] == {
        "account_id": "acme",
        "start_time": "2025-01-01T00:00:00Z",
        "end_time": "2025-01-02T00:00:00Z",
        "sync_type": SyncType.EVENTS_WINDOW,
    }

    await scheduler.run_window("other-account")
    assert runner.calls[-1]["account_id"] == "other-account"

    runner.fail_times = 1
    with pytest.raises(RuntimeError, match="telemetry unavailable"):
        await scheduler.run_window()


@pytest.mark.asyncio
async def test_cycles_never_overlap():
    runner = RecordingRunner(delay=0.02)
    scheduler = SyncScheduler(runner, account_id="acme", interval_seconds=60)

    await asyncio.gather(scheduler.run_once(), scheduler.run_window(), scheduler.run_once())

    assert len(runner.calls) == 3
    assert runner.max_active == 1
