"""
Partner counter updates.

Every counter change is a single SQL UPDATE computed from the stored value,
so concurrent assignments to the same partner never lose an increment.
The in-memory attributes are expired afterwards and reload on next access.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import case, update
from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.models import Partner
from core.utils import week_start

LOGGER = get_logger(__name__)


def _apply(session: Session, partner: Partner, values: dict) -> None:
    session.execute(
        update(Partner)
        .where(Partner.id == partner.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.expire(partner, list(values))


def record_lead_received(session: Session, partner: Partner, now: Optional[datetime] = None) -> None:
    """Count a newly offered lead; a counter from a previous week restarts at 1."""
    current_week = week_start(now)
    _apply(session, partner, {
        "total_leads_received": Partner.total_leads_received + 1,
        "weekly_leads_received": case(
            (Partner.week_start_date == current_week, Partner.weekly_leads_received + 1),
            else_=1,
        ),
        "week_start_date": current_week,
    })


def record_lead_accepted(session: Session, partner: Partner, response_hours: Optional[float]) -> None:
    """Count an acceptance and fold its response time into the running average."""
    values = {"total_leads_accepted": Partner.total_leads_accepted + 1}
    if response_hours is not None:
        values["average_response_time"] = case(
            (Partner.average_response_time.is_(None), response_hours),
            else_=(
                (Partner.average_response_time * Partner.total_leads_accepted + response_hours)
                / (Partner.total_leads_accepted + 1)
            ),
        )
    _apply(session, partner, values)


def record_lead_cancelled(session: Session, partner: Partner) -> None:
    _apply(session, partner, {"total_leads_cancelled": Partner.total_leads_cancelled + 1})


def add_revenue(session: Session, partner: Partner, amount: float) -> None:
    """Adjust the partner's lifetime revenue; negative amounts reverse it."""
    _apply(session, partner, {"total_revenue": Partner.total_revenue + amount})


def reset_weekly_counters(session: Session, now: Optional[datetime] = None) -> int:
    """Zero every partner's weekly counter for the current week. Returns rows touched."""
    current_week = week_start(now)
    result = session.execute(
        update(Partner)
        .values(weekly_leads_received=0, week_start_date=current_week)
        .execution_options(synchronize_session=False)
    )
    session.expire_all()
    LOGGER.info(f"Reset weekly lead counters for {result.rowcount} partners (week of {current_week})")
    return result.rowcount


__all__ = [
    "record_lead_received",
    "record_lead_accepted",
    "record_lead_cancelled",
    "add_revenue",
    "reset_weekly_counters",
]
