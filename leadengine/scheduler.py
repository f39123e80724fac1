"""
Periodic Jobs
=============
APScheduler (AsyncIOScheduler) running inside the API process.

JOBS:
- lead_expiry_sweep: every expiry_sweep_interval_seconds
"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from leadengine.allocation.expiry import sweep_expired_leads
from leadengine.config import Settings, get_settings

logger = logging.getLogger(__name__)

scheduler: Optional[AsyncIOScheduler] = None


def create_scheduler(session_factory, settings: Optional[Settings] = None) -> AsyncIOScheduler:
    global scheduler

    if scheduler is not None:
        logger.warning("Scheduler already exists, reusing it")
        return scheduler

    settings = settings or get_settings()
    scheduler = AsyncIOScheduler(
        timezone="UTC",
        job_defaults={
            "coalesce": True,
            "max_instances": 1,
            "misfire_grace_time": 60,
        },
    )
    _register_expiry_job(scheduler, session_factory, settings.expiry_sweep_interval_seconds)
    return scheduler


def _register_expiry_job(sched: AsyncIOScheduler, session_factory, interval_seconds: int):
    sched.add_job(
        sweep_expired_leads,
        trigger=IntervalTrigger(seconds=interval_seconds),
        args=[session_factory],
        id="lead_expiry_sweep",
        name="Lead expiry sweep",
        replace_existing=True,
    )
    logger.info("Job registered: lead expiry sweep (every %ss)", interval_seconds)


def start_scheduler():
    if scheduler is None:
        logger.error("Scheduler was not created; call create_scheduler() first")
        return
    if scheduler.running:
        logger.warning("Scheduler already running")
        return

    scheduler.start()
    for job in scheduler.get_jobs():
        logger.info("Job active: %s (next run %s)", job.name, job.next_run_time)


def stop_scheduler():
    global scheduler

    if scheduler is None:
        return
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
    scheduler = None


def get_scheduler_status() -> dict:
    if scheduler is None:
        return {"running": False, "jobs": []}

    return {
        "running": scheduler.running,
        "jobs": [
            {
                "id": job.id,
                "name": job.name,
                "next_run": str(job.next_run_time) if job.next_run_time else None,
            }
            for job in scheduler.get_jobs()
        ],
    }
