"""Lead assignment coordinator.

Runs eligibility, selection and recording for a lead, and drives each
assignment through its lifecycle:

    pending -> accepted -> cancellation_requested -> cancelled
                                                  -> accepted (request rejected)
            -> rejected

Every public operation reads settings once, at the start, and works inside
the caller's transaction. Nothing is committed here; get_session() or the
API's get_db() commit or roll back the whole operation.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from core.exceptions import (
    AssignmentNotFoundError,
    CancellationWindowExpiredError,
    DuplicateAssignmentError,
    InvalidStatusTransitionError,
    LeadNotAvailableError,
    LeadNotFoundError,
    PartnerNotFoundError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import (
    AssignmentStatus,
    INACTIVE_ASSIGNMENT_STATUSES,
    Lead,
    LeadStatus,
    Partner,
    PartnerAssignment,
    PartnerStatus,
    Revenue,
    RevenueStatus,
)
from core.types import SettingsSnapshot
from core.utils import enum_value, ensure_aware, round_money, utcnow, week_start
from domain import partner_metrics
from domain.eligibility import EligibilityFilter
from domain.lead_status import ASSIGNABLE_STATUSES, can_assign_more_partners, lead_status
from domain.selection import AssignmentSelector
from services.audit_log import AuditAction, AuditLogService
from services.notification import NotificationService
from services.settings_store import SettingsStore

LOGGER = get_logger(__name__)

MIN_CANCELLATION_REASON_LENGTH = 10


class AssignFailure(str, enum.Enum):
    """Expected reasons an auto-assignment does not happen."""
    LEAD_NOT_AVAILABLE = "lead_not_available"
    NO_ELIGIBLE_PARTNERS = "no_eligible_partners"
    SELECTION_FAILED = "selection_failed"


@dataclass
class AssignResult:
    """Outcome of auto-assigning one lead."""

    lead_id: int
    success: bool
    message: str
    partner: Optional[Partner] = None
    assignment: Optional[PartnerAssignment] = None
    failure: Optional[AssignFailure] = None
    eligible_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "success": self.success,
            "message": self.message,
            "failure": self.failure.value if self.failure else None,
            "eligible_count": self.eligible_count,
            "partner": {
                "id": self.partner.id,
                "partner_number": self.partner.partner_number,
                "company_name": self.partner.company_name,
                "partner_type": self.partner.partner_type,
            } if self.partner else None,
            "assignment": self.assignment.to_dict() if self.assignment else None,
        }


class LeadAssignmentCoordinator:
    """
    Assigns leads to partners and manages assignment status.

    Collaborators default to the standard services; tests may pass their own.
    """

    def __init__(
        self,
        session: Session,
        settings_store: Optional[SettingsStore] = None,
        eligibility: Optional[EligibilityFilter] = None,
        selector: Optional[AssignmentSelector] = None,
        notifier: Optional[NotificationService] = None,
        audit: Optional[AuditLogService] = None,
    ):
        self.session = session
        self.settings_store = settings_store or SettingsStore(session)
        self.eligibility = eligibility or EligibilityFilter(session)
        self.selector = selector or AssignmentSelector()
        self.notifier = notifier or NotificationService()
        self.audit = audit or AuditLogService(session)

    # -------------------------------------------------------------------------
    # Lookups
    # -------------------------------------------------------------------------

    def _load_lead(self, lead_id: int) -> Lead:
        lead = (
            self.session.query(Lead)
            .filter(Lead.id == lead_id)
            .with_for_update()
            .first()
        )
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")
        return lead

    def _load_partner(self, partner_id: int) -> Partner:
        partner = self.session.get(Partner, partner_id)
        if partner is None:
            raise PartnerNotFoundError(f"Partner {partner_id} not found")
        return partner

    def _load_assignment(self, lead: Lead, partner_id: int) -> PartnerAssignment:
        assignment = lead.assignment_for(partner_id)
        if assignment is None:
            raise AssignmentNotFoundError(f"Partner {partner_id} has no assignment on lead {lead.id}")
        return assignment

    # -------------------------------------------------------------------------
    # Assignment
    # -------------------------------------------------------------------------

    def _record_assignment(
        self,
        lead: Lead,
        partner: Partner,
        settings: SettingsSnapshot,
        now: datetime,
    ) -> PartnerAssignment:
        """Append an assignment at today's price and count it against the partner."""
        price = settings.price_for(lead.service_type, partner.partner_type)

        assignment = PartnerAssignment(
            partner_id=partner.id,
            status=AssignmentStatus.PENDING.value,
            lead_price=round_money(price),
            partner_type=partner.partner_type,
            assigned_at=now,
        )
        lead.assignments.append(assignment)
        try:
            self.session.flush()
        except IntegrityError as e:
            raise DuplicateAssignmentError(
                f"Partner {partner.id} already has an assignment on lead {lead.id}"
            ) from e

        partner_metrics.record_lead_received(self.session, partner, now)
        return assignment

    def _after_assignment(self, lead: Lead, partner: Partner, assignment: PartnerAssignment,
                          action: str, actor_type: str, actor_name: str) -> None:
        try:
            self.notifier.send_after_commit(self.session, partner, lead)
        except Exception as e:
            LOGGER.warning(
                f"Could not queue notification for lead {lead.id} to partner {partner.id}: {e}",
                extra={"lead_id": lead.id, "partner_id": partner.id},
            )
        self.audit.create_log(
            action=action,
            message=f"Lead {lead.lead_number} assigned to {partner.company_name} at {assignment.lead_price}",
            actor_type=actor_type,
            actor_name=actor_name,
            service_type=lead.service_type,
            lead_id=lead.id,
            partner_id=partner.id,
            details={"lead_price": assignment.lead_price, "partner_type": assignment.partner_type},
        )

    def auto_assign(self, lead_id: int, now: Optional[datetime] = None) -> AssignResult:
        """
        Offer a pending lead to the best eligible partner.

        "Nothing to do" outcomes come back as a failed AssignResult; only
        a missing lead or a system problem raises.

        Raises:
            LeadNotFoundError: No such lead.
            ConfigurationError: No price configured for the selected tier.
        """
        now = now or utcnow()
        settings = self.settings_store.get_snapshot()
        lead = self._load_lead(lead_id)
        lead.auto_assign_attempted_at = now
        self.session.flush()

        status = lead_status(lead, settings, now)
        if status != LeadStatus.PENDING:
            LOGGER.info(f"Lead {lead_id} not available for auto-assignment (status {status.value})",
                        extra={"lead_id": lead_id})
            return AssignResult(
                lead_id=lead_id,
                success=False,
                message=f"Lead is {status.value}, not pending",
                failure=AssignFailure.LEAD_NOT_AVAILABLE,
            )

        eligible = self.eligibility.find_eligible_partners(lead, settings, now)
        if not eligible:
            LOGGER.info(f"No eligible partners for lead {lead_id}", extra={"lead_id": lead_id})
            return AssignResult(
                lead_id=lead_id,
                success=False,
                message="No eligible partners found",
                failure=AssignFailure.NO_ELIGIBLE_PARTNERS,
            )

        partner = self.selector.select_partner(eligible, week_start(now))
        if partner is None:
            LOGGER.info(f"Partner selection failed for lead {lead_id}", extra={"lead_id": lead_id})
            return AssignResult(
                lead_id=lead_id,
                success=False,
                message="Failed to select partner",
                failure=AssignFailure.SELECTION_FAILED,
                eligible_count=len(eligible),
            )

        assignment = self._record_assignment(lead, partner, settings, now)
        LOGGER.info(
            f"Lead {lead.lead_number} auto-assigned to partner {partner.partner_number}",
            extra={"lead_id": lead.id, "partner_id": partner.id},
        )
        self._after_assignment(lead, partner, assignment, AuditAction.LEAD_AUTO_ASSIGNED, "system", "auto_assign")

        return AssignResult(
            lead_id=lead_id,
            success=True,
            message="Lead auto-assigned successfully",
            partner=partner,
            assignment=assignment,
            eligible_count=len(eligible),
        )

    def assign_lead_to_partner(
        self,
        lead_id: int,
        partner_id: int,
        actor_name: str = "admin",
        now: Optional[datetime] = None,
    ) -> PartnerAssignment:
        """
        Offer a lead to a partner chosen by an administrator.

        Raises:
            LeadNotFoundError / PartnerNotFoundError: Unknown ids.
            ValidationError: Partner inactive or of another service type.
            DuplicateAssignmentError: Partner already holds an assignment on the lead.
            LeadNotAvailableError: The lead takes no more partners.
        """
        now = now or utcnow()
        settings = self.settings_store.get_snapshot()
        lead = self._load_lead(lead_id)
        partner = self._load_partner(partner_id)

        if partner.status != PartnerStatus.ACTIVE.value:
            raise ValidationError(f"Partner {partner_id} is {partner.status}, not active")
        if partner.service_type != lead.service_type:
            raise ValidationError(
                f"Partner {partner_id} serves {partner.service_type}, lead {lead_id} is {lead.service_type}"
            )
        if lead.assignment_for(partner_id) is not None:
            raise DuplicateAssignmentError(f"Partner {partner_id} already has an assignment on lead {lead_id}")

        status = lead_status(lead, settings, now)
        if status not in ASSIGNABLE_STATUSES or not can_assign_more_partners(
            lead.assignments, settings, lead.form_data, now
        ):
            raise LeadNotAvailableError(f"Lead {lead_id} cannot take more partners (status {status.value})")

        assignment = self._record_assignment(lead, partner, settings, now)
        LOGGER.info(
            f"Lead {lead.lead_number} manually assigned to partner {partner.partner_number} by {actor_name}",
            extra={"lead_id": lead.id, "partner_id": partner.id},
        )
        self._after_assignment(lead, partner, assignment, AuditAction.LEAD_ASSIGNED, "admin", actor_name)
        return assignment

    # -------------------------------------------------------------------------
    # Status transitions
    # -------------------------------------------------------------------------

    def update_assignment_status(
        self,
        lead_id: int,
        partner_id: int,
        status: Any,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Move a partner's assignment on a lead to `status`.

        A cancellation request only flags the assignment; it becomes
        cancelled once an administrator approves it.

        Raises:
            ValidationError: Unknown status.
            AssignmentNotFoundError: The partner has no assignment on the lead.
            InvalidStatusTransitionError: The move is not allowed from the current status.
        """
        try:
            target = AssignmentStatus(enum_value(status))
        except ValueError as e:
            raise ValidationError(f"Unknown assignment status: {status!r}") from e

        if target == AssignmentStatus.CANCELLATION_REQUESTED:
            self.request_cancellation(lead_id, partner_id, reason or "", now)
            return True
        if target == AssignmentStatus.CANCELLED:
            self.approve_cancellation(lead_id, partner_id, now=now)
            return True
        if target == AssignmentStatus.PENDING:
            raise InvalidStatusTransitionError("An assignment cannot be moved back to pending")

        now = now or utcnow()
        lead = self._load_lead(lead_id)
        assignment = self._load_assignment(lead, partner_id)
        if assignment.status != AssignmentStatus.PENDING.value:
            raise InvalidStatusTransitionError(
                f"Assignment of lead {lead_id} to partner {partner_id} is {assignment.status}; "
                f"only pending assignments can be {target.value}"
            )

        assignment.status = target.value
        if target == AssignmentStatus.ACCEPTED:
            assignment.accepted_at = now
            assigned_at = ensure_aware(assignment.assigned_at)
            response_hours = (now - assigned_at).total_seconds() / 3600 if assigned_at else None
            self.session.flush()
            partner_metrics.record_lead_accepted(self.session, assignment.partner, response_hours)
            action = AuditAction.ASSIGNMENT_ACCEPTED
        else:
            assignment.rejected_at = now
            assignment.rejection_reason = reason
            self.session.flush()
            action = AuditAction.ASSIGNMENT_REJECTED

        LOGGER.info(
            f"Lead {lead_id} {target.value} by partner {partner_id}",
            extra={"lead_id": lead_id, "partner_id": partner_id},
        )
        self.audit.create_log(
            action=action,
            message=f"Lead {lead.lead_number} {target.value} by partner {partner_id}",
            actor_type="partner",
            actor_name=str(partner_id),
            service_type=lead.service_type,
            lead_id=lead_id,
            partner_id=partner_id,
            details={"reason": reason} if reason else None,
        )
        return True

    def request_cancellation(
        self,
        lead_id: int,
        partner_id: int,
        reason: str,
        now: Optional[datetime] = None,
    ) -> PartnerAssignment:
        """
        Partner asks to cancel a lead it accepted.

        Raises:
            ValidationError: Reason shorter than 10 characters.
            InvalidStatusTransitionError: Not accepted, or a request is pending or was rejected.
            CancellationWindowExpiredError: Too long since acceptance.
        """
        now = now or utcnow()
        reason = (reason or "").strip()
        if len(reason) < MIN_CANCELLATION_REASON_LENGTH:
            raise ValidationError(
                f"Cancellation reason must be at least {MIN_CANCELLATION_REASON_LENGTH} characters"
            )

        settings = self.settings_store.get_snapshot()
        lead = self._load_lead(lead_id)
        assignment = self._load_assignment(lead, partner_id)

        if assignment.has_pending_cancellation:
            raise InvalidStatusTransitionError(f"Cancellation already pending for lead {lead_id}")
        if assignment.cancellation_rejected:
            raise InvalidStatusTransitionError(f"Cancellation for lead {lead_id} was already rejected")
        if assignment.status != AssignmentStatus.ACCEPTED.value:
            raise InvalidStatusTransitionError("Can only request cancellation for accepted leads")

        accepted_at = ensure_aware(assignment.accepted_at) or now
        hours_elapsed = (now - accepted_at).total_seconds() / 3600
        limit = settings.cancellation_time_limit_hours
        if hours_elapsed > limit:
            raise CancellationWindowExpiredError(
                f"Cancellation time limit exceeded: {round(hours_elapsed, 2)}h since acceptance, limit {limit}h"
            )

        assignment.status = AssignmentStatus.CANCELLATION_REQUESTED.value
        assignment.cancellation_requested = True
        assignment.cancellation_reason = reason
        assignment.cancellation_requested_at = now
        self.session.flush()

        LOGGER.info(
            f"Cancellation requested for lead {lead_id} by partner {partner_id}",
            extra={"lead_id": lead_id, "partner_id": partner_id},
        )
        self.audit.create_log(
            action=AuditAction.CANCELLATION_REQUESTED,
            message=f"Partner {partner_id} requested cancellation of lead {lead.lead_number}",
            actor_type="partner",
            actor_name=str(partner_id),
            service_type=lead.service_type,
            lead_id=lead_id,
            partner_id=partner_id,
            details={"reason": reason, "hours_elapsed": round(hours_elapsed, 2)},
        )
        return assignment

    def _pending_cancellation(self, lead_id: int, partner_id: int) -> tuple[Lead, PartnerAssignment]:
        lead = self._load_lead(lead_id)
        assignment = self._load_assignment(lead, partner_id)
        if not assignment.has_pending_cancellation:
            raise InvalidStatusTransitionError(f"No pending cancellation request for lead {lead_id}")
        return lead, assignment

    def approve_cancellation(
        self,
        lead_id: int,
        partner_id: int,
        actor_name: str = "admin",
        now: Optional[datetime] = None,
    ) -> PartnerAssignment:
        """Administrator approves a cancellation request; the assignment is cancelled."""
        now = now or utcnow()
        lead, assignment = self._pending_cancellation(lead_id, partner_id)

        assignment.status = AssignmentStatus.CANCELLED.value
        assignment.cancellation_requested = False
        assignment.cancellation_approved = True
        assignment.cancellation_approved_at = now

        revenue = self.session.query(Revenue).filter(
            Revenue.lead_id == lead_id,
            Revenue.partner_id == partner_id,
        ).first()
        if revenue is not None and revenue.status != RevenueStatus.CANCELLED.value:
            revenue.status = RevenueStatus.CANCELLED.value
            partner_metrics.add_revenue(self.session, assignment.partner, -revenue.amount)
        self.session.flush()
        partner_metrics.record_lead_cancelled(self.session, assignment.partner)

        LOGGER.info(
            f"Cancellation approved for lead {lead_id}, partner {partner_id}",
            extra={"lead_id": lead_id, "partner_id": partner_id},
        )
        self.audit.create_log(
            action=AuditAction.CANCELLATION_APPROVED,
            message=f"Cancellation of lead {lead.lead_number} for partner {partner_id} approved",
            actor_type="admin",
            actor_name=actor_name,
            service_type=lead.service_type,
            lead_id=lead_id,
            partner_id=partner_id,
        )
        return assignment

    def reject_cancellation(
        self,
        lead_id: int,
        partner_id: int,
        reason: Optional[str] = None,
        actor_name: str = "admin",
        now: Optional[datetime] = None,
    ) -> PartnerAssignment:
        """Administrator rejects a cancellation request; the lead stays accepted."""
        now = now or utcnow()
        lead, assignment = self._pending_cancellation(lead_id, partner_id)

        assignment.status = AssignmentStatus.ACCEPTED.value
        assignment.cancellation_requested = False
        assignment.cancellation_rejected = True
        assignment.cancellation_rejection_reason = reason
        assignment.cancellation_rejected_at = now
        self.session.flush()

        LOGGER.info(
            f"Cancellation rejected for lead {lead_id}, partner {partner_id}",
            extra={"lead_id": lead_id, "partner_id": partner_id},
        )
        self.audit.create_log(
            action=AuditAction.CANCELLATION_REJECTED,
            message=f"Cancellation of lead {lead.lead_number} for partner {partner_id} rejected",
            actor_type="admin",
            actor_name=actor_name,
            service_type=lead.service_type,
            lead_id=lead_id,
            partner_id=partner_id,
            details={"reason": reason} if reason else None,
        )
        return assignment

    # -------------------------------------------------------------------------
    # Status
    # -------------------------------------------------------------------------

    def get_lead_status(self, lead_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Computed status of a lead plus whether it can take more partners."""
        now = now or utcnow()
        settings = self.settings_store.get_snapshot()
        lead = self.session.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")

        return {
            "lead_id": lead.id,
            "lead_number": lead.lead_number,
            "status": lead_status(lead, settings, now).value,
            "can_assign_more": can_assign_more_partners(lead.assignments, settings, lead.form_data, now),
            "assignments": [a.to_dict() for a in lead.assignments],
        }

    def find_unassigned_lead_ids(self, limit: int) -> List[int]:
        """
        Leads with no live offer, for the scheduled auto-assign run.

        A lead whose offers were all rejected or cancelled counts as open
        again. Leads never tried come first, then the least recently tried,
        so leads nobody can serve do not crowd out new ones.
        """
        live_offer = Lead.assignments.any(PartnerAssignment.status.not_in(sorted(INACTIVE_ASSIGNMENT_STATUSES)))
        rows = (
            self.session.query(Lead.id)
            .filter(~live_offer)
            .order_by(
                Lead.auto_assign_attempted_at.is_not(None),
                Lead.auto_assign_attempted_at,
                Lead.created_at,
                Lead.id,
            )
            .limit(limit)
            .all()
        )
        return [row[0] for row in rows]

    def record_auto_assign_attempt(self, lead_id: int, now: Optional[datetime] = None) -> None:
        """Stamp an attempt on a lead whose auto-assignment raised."""
        self.session.query(Lead).filter(Lead.id == lead_id).update(
            {Lead.auto_assign_attempted_at: now or utcnow()},
            synchronize_session=False,
        )


def get_assignment_coordinator(session: Session) -> LeadAssignmentCoordinator:
    """Get a LeadAssignmentCoordinator instance."""
    return LeadAssignmentCoordinator(session)


__all__ = [
    "MIN_CANCELLATION_REASON_LENGTH",
    "AssignFailure",
    "AssignResult",
    "LeadAssignmentCoordinator",
    "get_assignment_coordinator",
]
