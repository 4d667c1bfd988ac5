# tests/test_scheduler.py
from unittest.mock import AsyncMock, MagicMock

import pytest

from gatherpay.domain.value_objects import ReleaseReport
from gatherpay.infrastructure.monitoring.system_monitor import SystemMonitor
from gatherpay.infrastructure.sched.scheduler import (
    ESCROW_RELEASE_JOB_ID, EXPIRY_JOB_ID, SchedulerService, register_escrow_release_job, register_expiry_job,
)


@pytest.fixture
def scheduler():
    service = SchedulerService()
    yield service
    service.shutdown(wait=False)


def test_jobs_are_registered(scheduler):
    register_expiry_job(scheduler, MagicMock(), interval_seconds=60)
    register_escrow_release_job(scheduler, MagicMock(), hour=2)

    jobs = {job["id"]: job for job in scheduler.get_jobs()}
    assert set(jobs) == {EXPIRY_JOB_ID, ESCROW_RELEASE_JOB_ID}
    assert "interval" in jobs[EXPIRY_JOB_ID]["trigger"]
    assert "cron" in jobs[ESCROW_RELEASE_JOB_ID]["trigger"]
    assert not scheduler.running


def test_remove_job(scheduler):
    register_expiry_job(scheduler, MagicMock(), interval_seconds=60)
    assert scheduler.remove_job(EXPIRY_JOB_ID)
    assert not scheduler.remove_job(EXPIRY_JOB_ID)


@pytest.mark.asyncio
async def test_run_job_now(scheduler):
    participations = MagicMock()
    participations.expire_payment_windows.return_value = 3
    escrow = MagicMock()
    escrow.release_due = AsyncMock(return_value=ReleaseReport(processed=2, scheduled=2))
    register_expiry_job(scheduler, participations, interval_seconds=60)
    register_escrow_release_job(scheduler, escrow, hour=2)

    assert await scheduler.run_job_now(EXPIRY_JOB_ID) == 3
    report = await scheduler.run_job_now(ESCROW_RELEASE_JOB_ID)
    assert report.scheduled == 2
    with pytest.raises(KeyError):
        await scheduler.run_job_now("missing")


@pytest.mark.asyncio
async def test_job_errors_are_contained(scheduler):
    participations = MagicMock()
    participations.expire_payment_windows.side_effect = RuntimeError("db gone")
    escrow = MagicMock()
    escrow.release_due = AsyncMock(side_effect=RuntimeError("ledger gone"))
    register_expiry_job(scheduler, participations, interval_seconds=60)
    register_escrow_release_job(scheduler, escrow, hour=2)

    assert await scheduler.run_job_now(EXPIRY_JOB_ID) == 0
    assert await scheduler.run_job_now(ESCROW_RELEASE_JOB_ID) is None


@pytest.mark.asyncio
async def test_expiry_job_against_real_service(services, make_user, make_event, clock, scheduler):
    participations = services["participation_service"]
    host = make_user()
    await participations.join(make_user().id, make_event(host).id)
    register_expiry_job(scheduler, participations, interval_seconds=60)
    clock.advance(minutes=20)

    assert await scheduler.run_job_now(EXPIRY_JOB_ID) == 1
    assert await scheduler.run_job_now(EXPIRY_JOB_ID) == 0


def test_system_monitor_reports_database(session_scope):
    health = SystemMonitor(session_scope).check_system_health()
    assert health["status"] == "ok"
    assert health["database"] is True
    assert health["scheduler_running"] is None
    assert "memory_used_percent" in health["host"]


def test_system_monitor_degraded_when_database_fails():
    def broken_scope():
        raise RuntimeError("connection refused")

    health = SystemMonitor(broken_scope).check_system_health()
    assert health["status"] == "degraded"
    assert health["database"] is False
