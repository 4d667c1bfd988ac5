# src/gatherpay/infrastructure/sched/scheduler.py
"""
Periodic jobs for the pipeline on top of APScheduler's AsyncIOScheduler.

Two jobs are registered: the payment-window expiry sweep (interval) and the
escrow release run (daily cron). Every job runs with `max_instances=1`, so a
slow run is never overlapped by the next tick.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

log = logging.getLogger(__name__)

EXPIRY_JOB_ID = "expire_payment_windows"
ESCROW_RELEASE_JOB_ID = "release_due_escrows"


def _iso(value) -> Optional[str]:
    # Jobs added before start() have no next_run_time yet.
    return value.isoformat() if value is not None else None


class SchedulerService:
    def __init__(self, misfire_grace_time: int = 30):
        self._scheduler = AsyncIOScheduler(
            jobstores={"default": MemoryJobStore()},
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,
                "max_instances": 1,
                "misfire_grace_time": misfire_grace_time,
            },
            timezone="UTC",
        )
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def start(self) -> None:
        if not self._started:
            self._scheduler.start()
            self._started = True
            log.info("Scheduler started")

    def shutdown(self, wait: bool = True) -> None:
        if self._started:
            self._scheduler.shutdown(wait=wait)
            self._started = False
            log.info("Scheduler stopped")

    def add_interval_job(self, func: Callable, job_id: str, seconds: int) -> str:
        self._scheduler.add_job(
            func=func,
            trigger=IntervalTrigger(seconds=seconds),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        log.info(f"Job '{job_id}' registered: every {seconds}s")
        return job_id

    def add_cron_job(self, func: Callable, job_id: str, hour: int, minute: int = 0) -> str:
        self._scheduler.add_job(
            func=func,
            trigger=CronTrigger(hour=hour, minute=minute),
            id=job_id,
            name=job_id,
            replace_existing=True,
        )
        log.info(f"Job '{job_id}' registered: daily at {hour:02d}:{minute:02d} UTC")
        return job_id

    def remove_job(self, job_id: str) -> bool:
        job = self._scheduler.get_job(job_id)
        if job is None:
            return False
        job.remove()
        return True

    def get_jobs(self) -> List[Dict[str, Any]]:
        return [
            {
                "id": job.id,
                "next_run_time": _iso(getattr(job, "next_run_time", None)),
                "trigger": str(job.trigger),
            }
            for job in self._scheduler.get_jobs()
        ]

    async def run_job_now(self, job_id: str) -> Optional[Any]:
        """Run a registered job immediately, outside its trigger (admin / tests)."""
        job = self._scheduler.get_job(job_id)
        if job is None:
            raise KeyError(job_id)
        result = job.func()
        if hasattr(result, "__await__"):
            result = await result
        return result


def register_expiry_job(scheduler: SchedulerService, participations, interval_seconds: int) -> str:
    def _run() -> int:
        try:
            return participations.expire_payment_windows()
        except Exception as e:
            log.error(f"Payment-window sweep failed: {e}", exc_info=True)
            return 0

    return scheduler.add_interval_job(_run, EXPIRY_JOB_ID, seconds=interval_seconds)


def register_escrow_release_job(scheduler: SchedulerService, escrow, hour: int) -> str:
    async def _run():
        try:
            report = await escrow.release_due()
        except Exception as e:
            log.error(f"Escrow release run failed: {e}", exc_info=True)
            return None
        return report

    return scheduler.add_cron_job(_run, ESCROW_RELEASE_JOB_ID, hour=hour)
