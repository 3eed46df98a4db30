"""
Lead status projection.

A lead has no stored status. Its overall status is recomputed from the
assignment list every time it is needed, so it cannot drift from the facts
it summarises.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Mapping, Optional, Sequence

from core.models import (
    AssignmentStatus,
    INACTIVE_ASSIGNMENT_STATUSES,
    Lead,
    LeadStatus,
    PartnerAssignment,
    PartnerType,
)
from core.types import SettingsSnapshot
from core.utils import parse_datetime, utcnow

# Statuses in which a lead can still be offered to another partner
ASSIGNABLE_STATUSES = frozenset({LeadStatus.PENDING, LeadStatus.PARTIAL_ASSIGNED})


def _active(assignments: Sequence[PartnerAssignment]) -> list[PartnerAssignment]:
    return [a for a in assignments if a.status not in INACTIVE_ASSIGNMENT_STATUSES]


def _date_passed(form_data: Optional[Mapping[str, Any]], now: datetime) -> bool:
    fixed_date = parse_datetime((form_data or {}).get("fixed_date"))
    return fixed_date is not None and fixed_date < now


def _is_occupied(assignment: PartnerAssignment) -> bool:
    """Accepted, or accepted with a cancellation still awaiting a decision."""
    return (
        assignment.status in (AssignmentStatus.ACCEPTED.value, AssignmentStatus.CANCELLATION_REQUESTED.value)
        or assignment.has_pending_cancellation
    )


def compute_lead_status(
    assignments: Sequence[PartnerAssignment],
    settings: SettingsSnapshot,
    form_data: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> LeadStatus:
    """
    Overall status of a lead from its assignments.

    Rules, in order:
    - nothing offered, or every offer rejected/cancelled: pending
    - an active offer was accepted or has an open cancellation request: assigned
    - the lead's fixed date has passed with nobody committed: pending
    - an exclusive partner holds an active offer: assigned
    - basic partners only: partial_assigned below the basic-partner limit, else assigned
    """
    now = now or utcnow()
    active = _active(assignments)
    if not active:
        return LeadStatus.PENDING

    if any(_is_occupied(a) for a in active):
        return LeadStatus.ASSIGNED

    if _date_passed(form_data, now):
        return LeadStatus.PENDING

    if any(a.partner_type == PartnerType.EXCLUSIVE.value for a in active):
        return LeadStatus.ASSIGNED

    if len(active) < settings.basic_partner_lead_limit:
        return LeadStatus.PARTIAL_ASSIGNED
    return LeadStatus.ASSIGNED


def can_assign_more_partners(
    assignments: Sequence[PartnerAssignment],
    settings: SettingsSnapshot,
    form_data: Optional[Mapping[str, Any]] = None,
    now: Optional[datetime] = None,
) -> bool:
    """Whether another partner may be offered the lead."""
    now = now or utcnow()
    if _date_passed(form_data, now):
        return False

    active = _active(assignments)
    if any(a.partner_type == PartnerType.EXCLUSIVE.value for a in active):
        return False
    return len(active) < settings.basic_partner_lead_limit


def lead_status(lead: Lead, settings: SettingsSnapshot, now: Optional[datetime] = None) -> LeadStatus:
    return compute_lead_status(lead.assignments, settings, lead.form_data, now)


__all__ = [
    "ASSIGNABLE_STATUSES",
    "compute_lead_status",
    "can_assign_more_partners",
    "lead_status",
]
