"""Scheduled job definitions for leadmarket.

Each job opens its own sessions, never raises, and returns
{"job_id", "job_type", "success", "result" | "error"}.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.config import get_settings
from core.db import get_readonly_session, get_session
from core.exceptions import BillingInProgressError, LeadMarketError
from core.logging_config import get_context_logger, get_logger
from core.models import ServiceType
from core.types import BillingPeriod
from core.utils import enum_value, round_money
from domain.assignment import LeadAssignmentCoordinator
from services.billing import BillingAggregator
from services.partners import PartnerService

LOGGER = get_logger(__name__)


def _job_id(job_type: str) -> str:
    return f"{job_type}_{datetime.now(timezone.utc).strftime('%Y%m%d_%H%M%S')}"


def _record_failed_attempt(job_id: str, lead_id: int) -> None:
    # The failed unit of work rolled back its own stamp
    try:
        with get_session() as session:
            LeadAssignmentCoordinator(session).record_auto_assign_attempt(lead_id)
    except SQLAlchemyError as e:
        LOGGER.warning("[%s] Could not record auto-assign attempt for lead %s: %s", job_id, lead_id, e)


def run_auto_assign_job(limit: Optional[int] = None) -> Dict[str, Any]:
    """
    Auto-assign leads with no live offer, least recently tried first.

    Every lead gets its own session, so one failing lead never
    aborts the rest of the batch.

    Args:
        limit: Maximum leads to process (defaults to AUTO_ASSIGN_BATCH_SIZE).

    Returns:
        Job result with assigned / unmatched / failed counts.
    """
    job_id = _job_id("auto_assign")
    limit = limit or get_settings().auto_assign_batch_size
    LOGGER.info("[%s] Starting auto-assign job (limit=%d)", job_id, limit)

    try:
        with get_readonly_session() as session:
            lead_ids = LeadAssignmentCoordinator(session).find_unassigned_lead_ids(limit)

        assigned = unmatched = failed = 0
        for lead_id in lead_ids:
            try:
                with get_session() as session:
                    result = LeadAssignmentCoordinator(session).auto_assign(lead_id)
                if result.success:
                    assigned += 1
                else:
                    unmatched += 1
            except (LeadMarketError, SQLAlchemyError) as e:
                get_context_logger(__name__, job_id=job_id, lead_id=lead_id).warning(
                    "[%s] Auto-assign failed for lead %s: %s", job_id, lead_id, e
                )
                failed += 1
                _record_failed_attempt(job_id, lead_id)

        LOGGER.info(
            "[%s] Auto-assign complete: processed=%d, assigned=%d, unmatched=%d, failed=%d",
            job_id, len(lead_ids), assigned, unmatched, failed,
        )
        return {
            "job_id": job_id,
            "job_type": "auto_assign",
            "success": True,
            "result": {
                "processed": len(lead_ids),
                "assigned": assigned,
                "unmatched": unmatched,
                "failed": failed,
            },
        }
    except Exception as e:
        LOGGER.exception("[%s] Auto-assign job failed: %s", job_id, e)
        return {
            "job_id": job_id,
            "job_type": "auto_assign",
            "success": False,
            "error": str(e),
        }


def run_bulk_invoice_job(
    service_type: Any = None,
    period: Optional[BillingPeriod] = None,
) -> Dict[str, Any]:
    """
    Invoice every billing-ready partner.

    Args:
        service_type: Only this service type; all of them when omitted.
        period: Billing window; the previous calendar month when omitted.

    Returns:
        Job result with invoice count and total per service type.
    """
    job_id = _job_id("bulk_invoice")
    LOGGER.info("[%s] Starting bulk invoice job", job_id)

    try:
        period = period or BillingPeriod.previous_month()
        service_types = [enum_value(service_type)] if service_type else [s.value for s in ServiceType]

        per_service: Dict[str, Dict[str, Any]] = {}
        for current in service_types:
            try:
                with get_session() as session:
                    invoices = BillingAggregator(session).generate_bulk_invoices(current, period)
                    per_service[current] = {
                        "invoices": len(invoices),
                        "total": round_money(sum(invoice.total for invoice in invoices)),
                    }
            except BillingInProgressError as e:
                LOGGER.info("[%s] Skipping %s: %s", job_id, current, e)
                per_service[current] = {"invoices": 0, "total": 0.0, "skipped": str(e)}

        LOGGER.info("[%s] Bulk invoicing complete: %s", job_id, per_service)
        return {
            "job_id": job_id,
            "job_type": "bulk_invoice",
            "success": True,
            "result": {"period": period.as_dict(), "service_types": per_service},
        }
    except Exception as e:
        LOGGER.exception("[%s] Bulk invoice job failed: %s", job_id, e)
        return {
            "job_id": job_id,
            "job_type": "bulk_invoice",
            "success": False,
            "error": str(e),
        }


def run_weekly_reset_job() -> Dict[str, Any]:
    """Reset every partner's weekly lead counter."""
    job_id = _job_id("weekly_reset")
    LOGGER.info("[%s] Starting weekly counter reset", job_id)

    try:
        with get_session() as session:
            reset = PartnerService(session).reset_weekly_counters()

        LOGGER.info("[%s] Weekly counters reset for %d partners", job_id, reset)
        return {
            "job_id": job_id,
            "job_type": "weekly_reset",
            "success": True,
            "result": {"partners_reset": reset},
        }
    except Exception as e:
        LOGGER.exception("[%s] Weekly reset job failed: %s", job_id, e)
        return {
            "job_id": job_id,
            "job_type": "weekly_reset",
            "success": False,
            "error": str(e),
        }


__all__ = [
    "run_auto_assign_job",
    "run_bulk_invoice_job",
    "run_weekly_reset_job",
]
