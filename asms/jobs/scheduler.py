"""Daily capacity sweep.

Resets every service's remaining slots at the configured time (midnight
host-local by default). The counters live in the process that takes
bookings, so the job runs on a BackgroundScheduler inside that process:
    desk = build_service_desk().bootstrap()
    desk.start_scheduler()
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, JobExecutionEvent
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from asms.config import SchedulerConfig
from asms.core.capacity import CapacityLedger
from asms.core.lifecycle import ServiceDesk
from asms.logging_context import request_context

JOB_ID = "daily_capacity_reset"

logger = logging.getLogger(__name__)


def run_capacity_sweep(ledger: CapacityLedger) -> int:
    """Reset all service counters once. Safe alongside in-flight reservations."""
    with request_context(f"SWEEP-{datetime.now():%Y%m%d%H%M}"):
        count = ledger.reset_all()
        logger.info("Capacity sweep reset %d services", count)
        return count


def build_trigger(config: SchedulerConfig) -> CronTrigger:
    return CronTrigger(
        hour=config.reset_hour,
        minute=config.reset_minute,
        timezone=config.timezone or None,
    )


def _log_job_state(scheduler: BackgroundScheduler, event: JobExecutionEvent) -> None:
    """Log last and next run metadata for observability."""
    job = scheduler.get_job(event.job_id)
    job_next_run = getattr(job, "next_run_time", None) if job else None
    next_run = job_next_run.isoformat() if job_next_run else "none"
    last_run_at = (
        event.scheduled_run_time.isoformat()
        if event.scheduled_run_time
        else datetime.now().isoformat()
    )

    if event.exception:
        logger.error(
            "Job %s failed at %s; next run at %s",
            event.job_id,
            last_run_at,
            next_run,
            exc_info=event.exception,
        )
        return

    logger.info("Job %s completed at %s; next run at %s", event.job_id, last_run_at, next_run)


def build_scheduler(desk: ServiceDesk) -> BackgroundScheduler:
    """Build (but do not start) a scheduler carrying the daily sweep job."""
    config = desk.config.scheduler
    scheduler = (
        BackgroundScheduler(timezone=config.timezone) if config.timezone else BackgroundScheduler()
    )

    trigger = build_trigger(config)
    scheduler.add_job(
        run_capacity_sweep,
        trigger=trigger,
        args=[desk.ledger],
        id=JOB_ID,
        replace_existing=True,
        coalesce=True,
        max_instances=1,
        misfire_grace_time=config.misfire_grace_sec,
    )

    scheduler.add_listener(
        lambda event: _log_job_state(scheduler, event),
        EVENT_JOB_EXECUTED | EVENT_JOB_ERROR,
    )

    next_run: Optional[datetime] = trigger.get_next_fire_time(
        None, datetime.now(tz=trigger.timezone)
    )
    logger.info(
        "Registered %s for %02d:%02d %s (next run: %s)",
        JOB_ID,
        config.reset_hour,
        config.reset_minute,
        config.timezone or "local time",
        next_run.isoformat() if next_run else "none",
    )
    return scheduler
