"""Job scheduler for recurring assignment, billing and counter jobs."""
from __future__ import annotations

import signal
import sys
import time
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from core.config import get_settings
from core.logging_config import get_logger, setup_logging
from scheduler.jobs import run_auto_assign_job, run_bulk_invoice_job, run_weekly_reset_job

LOGGER = get_logger(__name__)

# Global scheduler instance
_scheduler: Optional[BackgroundScheduler] = None


def _run_and_log(name: str, job, *args) -> None:
    LOGGER.info("Starting scheduled %s job...", name)
    result = job(*args)
    if result.get("success"):
        LOGGER.info("Scheduled %s job completed: %s", name, result.get("result"))
    else:
        LOGGER.error("Scheduled %s job failed: %s", name, result.get("error"))


def scheduled_auto_assign() -> None:
    _run_and_log("auto-assign", run_auto_assign_job)


def scheduled_bulk_invoices() -> None:
    """Bill the previous calendar month for every service type."""
    _run_and_log("bulk invoice", run_bulk_invoice_job)


def scheduled_weekly_reset() -> None:
    _run_and_log("weekly reset", run_weekly_reset_job)


def start_scheduler() -> BackgroundScheduler:
    """
    Start the background scheduler with configured jobs.

    Returns:
        The running BackgroundScheduler instance.
    """
    global _scheduler

    if _scheduler is not None and _scheduler.running:
        LOGGER.warning("Scheduler is already running")
        return _scheduler

    settings = get_settings()
    _scheduler = BackgroundScheduler(timezone="UTC")

    _scheduler.add_job(
        scheduled_auto_assign,
        CronTrigger(minute=f"*/{settings.auto_assign_interval_minutes}"),
        id="auto_assign",
        replace_existing=True,
        name="Auto-assign unassigned leads",
        max_instances=1,
        coalesce=True,
    )

    # 1st of the month, 03:00 UTC
    _scheduler.add_job(
        scheduled_bulk_invoices,
        CronTrigger(day=1, hour=3, minute=0),
        id="bulk_invoices",
        replace_existing=True,
        name="Monthly bulk invoicing",
    )

    # Mondays 00:05 UTC
    _scheduler.add_job(
        scheduled_weekly_reset,
        CronTrigger(day_of_week="mon", hour=0, minute=5),
        id="weekly_reset",
        replace_existing=True,
        name="Weekly lead counter reset",
    )

    _scheduler.start()
    LOGGER.info("Scheduler started with %d jobs.", len(_scheduler.get_jobs()))

    return _scheduler


def stop_scheduler() -> None:
    """Stop the background scheduler gracefully."""
    global _scheduler

    if _scheduler is not None:
        LOGGER.info("Stopping scheduler...")
        _scheduler.shutdown(wait=True)
        _scheduler = None
        LOGGER.info("Scheduler stopped.")
    else:
        LOGGER.warning("Scheduler is not running")


def _signal_handler(signum: int, frame: object) -> None:
    """Handle shutdown signals."""
    LOGGER.info("Received signal %d, shutting down...", signum)
    stop_scheduler()
    sys.exit(0)


def run_scheduler_blocking() -> None:
    """
    Start the scheduler and block until interrupted.

    This is the main entry point for running the scheduler as a standalone process.
    """
    settings = get_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_format == "json")

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    LOGGER.info("Starting leadmarket scheduler...")
    LOGGER.info("Environment: %s, Dry Run: %s", settings.environment, settings.dry_run)

    start_scheduler()

    try:
        while True:
            time.sleep(60)
    except (KeyboardInterrupt, SystemExit):
        stop_scheduler()
        LOGGER.info("Scheduler shutdown complete.")


if __name__ == "__main__":
    run_scheduler_blocking()
