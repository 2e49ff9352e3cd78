from __future__ import annotations

from datetime import datetime, timedelta

from arq.cron import next_cron
import pytest

from eventrelay.core.config import get_settings
from eventrelay.workers.delivery_worker import WorkerSettings, sweep_schedule


def _runs(schedule: dict, count: int) -> list[datetime]:
    runs: list[datetime] = []
    previous = datetime(2026, 1, 1, 0, 0, 0)
    for _ in range(count):
        previous = next_cron(previous, **schedule)
        runs.append(previous)
    return runs


@pytest.mark.parametrize("interval_s", [5, 15, 30, 60, 300, 900, 3600, 7200])
def test_sweep_fires_at_configured_interval(interval_s: int) -> None:
    runs = _runs(sweep_schedule(interval_s), 4)
    gaps = {later - earlier for earlier, later in zip(runs, runs[1:])}
    assert gaps == {timedelta(seconds=interval_s)}


def test_sweep_schedule_fields() -> None:
    assert sweep_schedule(15) == {"second": {0, 15, 30, 45}}
    assert sweep_schedule(600) == {"second": 0, "minute": {0, 10, 20, 30, 40, 50}}
    assert sweep_schedule(10800) == {"second": 0, "minute": 0, "hour": {0, 3, 6, 9, 12, 15, 18, 21}}


def test_registered_cron_follows_sweep_interval_setting() -> None:
    (job,) = WorkerSettings.cron_jobs
    expected = sweep_schedule(get_settings().delivery_sweep_interval_s)
    assert job.second == expected["second"]
    assert job.minute == expected.get("minute")
    assert job.hour == expected.get("hour")
    assert job.run_at_startup is True
