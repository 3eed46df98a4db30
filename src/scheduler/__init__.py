"""Scheduler module for recurring jobs."""
from __future__ import annotations

from .jobs import run_auto_assign_job, run_bulk_invoice_job, run_weekly_reset_job
from .runner import start_scheduler, stop_scheduler, run_scheduler_blocking

__all__ = [
    "run_auto_assign_job",
    "run_bulk_invoice_job",
    "run_weekly_reset_job",
    "start_scheduler",
    "stop_scheduler",
    "run_scheduler_blocking",
]
