"""
Unit tests for the interval scheduler
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from models.base import RunStatus
from replication.scheduler import JOB_ID, ReplicationScheduler


@pytest.fixture
def runner():
    mock_runner = MagicMock()
    mock_runner.run_cycle = AsyncMock(return_value=MagicMock(status=RunStatus.SUCCESS))
    mock_runner.wait_idle = AsyncMock(return_value=True)
    return mock_runner


@pytest.mark.asyncio
async def test_scheduler_registers_single_interval_job(runner, make_settings):
    scheduler = ReplicationScheduler(runner, make_settings(SYNC_INTERVAL_MINUTES=5))

    scheduler.start()
    try:
        job = scheduler.scheduler.get_job(JOB_ID)
        assert job is not None
        assert job.max_instances == 1
        assert job.coalesce is True
        assert job.trigger.interval.total_seconds() == 300
    finally:
        scheduler.stop()

    assert scheduler.scheduler.running is False


@pytest.mark.asyncio
async def test_scheduler_job_execution(runner, make_settings):
    scheduler = ReplicationScheduler(runner, make_settings())

    await scheduler.run_replication_job()

    runner.run_cycle.assert_awaited_once_with()


@pytest.mark.asyncio
async def test_run_forever_runs_first_cycle_immediately(runner, make_settings):
    scheduler = ReplicationScheduler(runner, make_settings(SHUTDOWN_GRACE_SECONDS=30))
    stop_event = asyncio.Event()

    def finish_cycle():
        stop_event.set()
        return MagicMock(status=RunStatus.SUCCESS)

    runner.run_cycle.side_effect = finish_cycle

    await asyncio.wait_for(scheduler.run_forever(stop_event), timeout=10)

    runner.run_cycle.assert_awaited()
    runner.wait_idle.assert_awaited_once_with(timeout=30)
    assert scheduler.scheduler.running is False


@pytest.mark.asyncio
async def test_shutdown_warns_when_cycle_overruns_grace(runner, make_settings, caplog):
    runner.wait_idle.return_value = False
    scheduler = ReplicationScheduler(runner, make_settings(SHUTDOWN_GRACE_SECONDS=1))
    stop_event = asyncio.Event()
    stop_event.set()

    await scheduler.run_forever(stop_event)

    assert "did not finish within" in caplog.text
    assert scheduler.scheduler.running is False
