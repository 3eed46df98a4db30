"""Tests for the lead assignment coordinator."""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import NOW, city_area
from core import db
from core.exceptions import (
    AssignmentNotFoundError,
    CancellationWindowExpiredError,
    DuplicateAssignmentError,
    ImmutableFieldError,
    InvalidStatusTransitionError,
    LeadNotAvailableError,
    LeadNotFoundError,
    ValidationError,
)
from core.models import AssignmentStatus, Partner, PartnerAssignment, Revenue, RevenueStatus
from domain import partner_metrics
from domain.assignment import AssignFailure, LeadAssignmentCoordinator
from services.audit_log import AuditAction, AuditLogService
from services.billing import BillingAggregator
from services.notification import NotificationService
from services.settings_store import SettingsStore


class RecordingNotifier(NotificationService):
    """Records what would be delivered; reports `delivered` as the outcome."""

    def __init__(self, delivered: bool = True):
        super().__init__()
        self.delivered = delivered
        self.sent = []

    def deliver(self, payload) -> bool:
        self.sent.append((payload["partner"]["id"], payload["lead"]["id"]))
        return self.delivered


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def coordinator(db_session, notifier) -> LeadAssignmentCoordinator:
    return LeadAssignmentCoordinator(db_session, notifier=notifier)


def actions_for(db_session, lead_id):
    return [entry.action for entry in AuditLogService(db_session).get_logs(lead_id=lead_id)]


# ============================================================================
# Auto-assignment
# ============================================================================


class TestAutoAssign:
    """Test auto_assign outcomes."""

    def test_exclusive_partner_beats_basic(self, coordinator, make_partner, make_lead):
        """A Berlin lead with one basic and one exclusive partner in range goes to the exclusive one."""
        make_partner(preferences=city_area(cities={"Berlin": (52.50, 13.40, 10)}))
        exclusive = make_partner(partner_type="exclusive", preferences=city_area(cities={"Berlin": (52.50, 13.40, 10)}))
        lead = make_lead()

        result = coordinator.auto_assign(lead.id, now=NOW)

        assert result.success is True
        assert result.partner is exclusive
        assert result.eligible_count == 2
        assert result.assignment.lead_price == 30.0
        assert result.assignment.partner_type == "exclusive"
        assert result.assignment.status == AssignmentStatus.PENDING.value

    def test_result_serializes(self, coordinator, make_partner, make_lead):
        make_partner()
        data = coordinator.auto_assign(make_lead().id, now=NOW).to_dict()
        assert data["success"] is True
        assert data["failure"] is None
        assert data["partner"]["partner_type"] == "basic"
        assert data["assignment"]["lead_price"] == 25.0

    def test_counters_incremented(self, coordinator, make_partner, make_lead):
        partner = make_partner(weekly_leads=2)
        coordinator.auto_assign(make_lead().id, now=NOW)
        assert partner.total_leads_received == 1
        assert partner.weekly_leads_received == 3

    def test_counter_restarts_in_new_week(self, coordinator, make_partner, make_lead):
        partner = make_partner(weekly_leads=7)
        coordinator.auto_assign(make_lead().id, now=NOW + timedelta(days=7))
        assert partner.weekly_leads_received == 1

    def test_lead_not_pending_is_not_available(self, coordinator, db_session, make_partner, make_lead, make_accepted):
        """A lead already accepted by a partner is left alone."""
        make_partner()
        lead = make_lead()
        make_accepted(lead, make_partner(company_name="Taken"))

        result = coordinator.auto_assign(lead.id, now=NOW)

        assert result.success is False
        assert result.failure == AssignFailure.LEAD_NOT_AVAILABLE
        assert db_session.query(PartnerAssignment).filter_by(lead_id=lead.id).count() == 1

    def test_no_eligible_partners(self, coordinator, make_partner, make_lead):
        make_partner(preferences={})
        result = coordinator.auto_assign(make_lead().id, now=NOW)
        assert result.success is False
        assert result.failure == AssignFailure.NO_ELIGIBLE_PARTNERS
        assert result.to_dict()["failure"] == "no_eligible_partners"

    def test_missing_lead_raises(self, coordinator):
        with pytest.raises(LeadNotFoundError):
            coordinator.auto_assign(999999, now=NOW)

    def test_notification_failure_keeps_assignment(self, db_session, make_partner, make_lead):
        notifier = RecordingNotifier(delivered=False)
        partner = make_partner()
        lead = make_lead()

        result = LeadAssignmentCoordinator(db_session, notifier=notifier).auto_assign(lead.id, now=NOW)
        db_session.commit()

        assert result.success is True
        assert notifier.sent == [(partner.id, lead.id)]
        assert lead.assignment_for(partner.id) is not None

    def test_notification_sent_only_after_commit(self, coordinator, notifier, db_session, make_partner, make_lead):
        partner = make_partner()
        lead = make_lead()

        coordinator.auto_assign(lead.id, now=NOW)
        assert notifier.sent == []

        db_session.commit()
        assert notifier.sent == [(partner.id, lead.id)]

    def test_rolled_back_assignment_not_notified(self, coordinator, notifier, db_session, make_partner, make_lead):
        make_partner()
        lead = make_lead()

        coordinator.auto_assign(lead.id, now=NOW)
        db_session.rollback()
        db_session.commit()

        assert notifier.sent == []

    def test_failed_step_leaves_no_trace(self, db_session, make_partner, make_lead, monkeypatch):
        partner, lead = make_partner(), make_lead()
        partner_id, lead_id = partner.id, lead.id
        db_session.commit()

        def counter_update_fails(*args, **kwargs):
            raise RuntimeError("counter update failed")

        notifier = RecordingNotifier()
        monkeypatch.setattr(partner_metrics, "record_lead_received", counter_update_fails)
        monkeypatch.setattr(db, "SessionLocal", lambda: db_session)

        with pytest.raises(RuntimeError):
            with db.get_session() as session:
                LeadAssignmentCoordinator(session, notifier=notifier).auto_assign(lead_id, now=NOW)

        assert db_session.query(PartnerAssignment).filter_by(lead_id=lead_id).count() == 0
        stored = db_session.get(Partner, partner_id)
        assert stored.total_leads_received == 0
        assert stored.weekly_leads_received == 0
        assert notifier.sent == []

    def test_audited(self, coordinator, db_session, make_partner, make_lead):
        make_partner()
        lead = make_lead()
        coordinator.auto_assign(lead.id, now=NOW)
        assert actions_for(db_session, lead.id) == [AuditAction.LEAD_AUTO_ASSIGNED]


class TestPriceFreezing:
    """Assignments keep the price and tier they were made at."""

    def test_price_change_does_not_touch_existing_assignment(self, coordinator, db_session, make_partner, make_lead):
        make_partner()
        first = coordinator.auto_assign(make_lead().id, now=NOW).assignment

        SettingsStore(db_session).update_pricing("moving", "basic", 40.0)
        db_session.expire(first)

        assert first.lead_price == 25.0
        second = coordinator.auto_assign(make_lead().id, now=NOW).assignment
        assert second.lead_price == 40.0

    def test_frozen_fields_reject_changes(self, coordinator, make_partner, make_lead):
        make_partner()
        assignment = coordinator.auto_assign(make_lead().id, now=NOW).assignment

        with pytest.raises(ImmutableFieldError):
            assignment.lead_price = 99.0
        with pytest.raises(ImmutableFieldError):
            assignment.partner_type = "exclusive"

    def test_same_value_is_allowed(self, coordinator, make_partner, make_lead):
        make_partner()
        assignment = coordinator.auto_assign(make_lead().id, now=NOW).assignment
        assignment.lead_price = 25.0
        assert assignment.lead_price == 25.0


# ============================================================================
# Manual assignment
# ============================================================================


class TestManualAssignment:
    """Test assign_lead_to_partner."""

    def test_assigns_basic_partners_up_to_limit(self, coordinator, make_partner, make_lead):
        lead = make_lead()
        partners = [make_partner() for _ in range(4)]

        for partner in partners[:3]:
            coordinator.assign_lead_to_partner(lead.id, partner.id, now=NOW)

        assert coordinator.get_lead_status(lead.id, now=NOW)["status"] == "assigned"
        with pytest.raises(LeadNotAvailableError):
            coordinator.assign_lead_to_partner(lead.id, partners[3].id, now=NOW)

    def test_second_partner_makes_partial(self, coordinator, make_partner, make_lead):
        lead = make_lead()
        coordinator.assign_lead_to_partner(lead.id, make_partner().id, now=NOW)
        status = coordinator.get_lead_status(lead.id, now=NOW)
        assert status["status"] == "partial_assigned"
        assert status["can_assign_more"] is True

    def test_duplicate_partner_rejected(self, coordinator, make_partner, make_lead):
        lead = make_lead()
        partner = make_partner()
        coordinator.assign_lead_to_partner(lead.id, partner.id, now=NOW)
        with pytest.raises(DuplicateAssignmentError):
            coordinator.assign_lead_to_partner(lead.id, partner.id, now=NOW)

    def test_exclusive_assignment_closes_lead(self, coordinator, make_partner, make_lead):
        lead = make_lead()
        coordinator.assign_lead_to_partner(lead.id, make_partner(partner_type="exclusive").id, now=NOW)
        with pytest.raises(LeadNotAvailableError):
            coordinator.assign_lead_to_partner(lead.id, make_partner().id, now=NOW)

    def test_inactive_partner_rejected(self, coordinator, make_partner, make_lead):
        with pytest.raises(ValidationError):
            coordinator.assign_lead_to_partner(make_lead().id, make_partner(status="suspended").id, now=NOW)

    def test_wrong_service_type_rejected(self, coordinator, make_partner, make_lead):
        cleaner = make_partner(service_type="cleaning")
        with pytest.raises(ValidationError):
            coordinator.assign_lead_to_partner(make_lead().id, cleaner.id, now=NOW)

    def test_audited_as_admin(self, coordinator, db_session, make_partner, make_lead):
        lead = make_lead()
        coordinator.assign_lead_to_partner(lead.id, make_partner().id, actor_name="ops", now=NOW)
        entry = AuditLogService(db_session).get_logs(lead_id=lead.id)[0]
        assert entry.action == AuditAction.LEAD_ASSIGNED
        assert entry.actor_name == "ops"


# ============================================================================
# Accept / reject
# ============================================================================


class TestStatusUpdates:
    """Test partner responses to an offer."""

    @pytest.fixture
    def offer(self, coordinator, make_partner, make_lead):
        partner = make_partner()
        lead = make_lead()
        coordinator.assign_lead_to_partner(lead.id, partner.id, now=NOW)
        return lead, partner

    def test_accept(self, coordinator, offer):
        lead, partner = offer
        assert coordinator.update_assignment_status(lead.id, partner.id, "accepted", now=NOW + timedelta(hours=3))

        assignment = lead.assignment_for(partner.id)
        assert assignment.status == AssignmentStatus.ACCEPTED.value
        assert assignment.accepted_at is not None
        assert partner.total_leads_accepted == 1
        assert partner.average_response_time == pytest.approx(3.0)
        assert coordinator.get_lead_status(lead.id, now=NOW)["status"] == "assigned"

    def test_reject_frees_lead(self, coordinator, offer):
        lead, partner = offer
        coordinator.update_assignment_status(lead.id, partner.id, AssignmentStatus.REJECTED, reason="Too far", now=NOW)

        assignment = lead.assignment_for(partner.id)
        assert assignment.status == "rejected"
        assert assignment.rejection_reason == "Too far"
        assert coordinator.get_lead_status(lead.id, now=NOW)["status"] == "pending"

    @pytest.mark.parametrize("first, second", [
        ("accepted", "accepted"),
        ("accepted", "rejected"),
        ("rejected", "accepted"),
    ])
    def test_only_pending_can_be_answered(self, coordinator, offer, first, second):
        lead, partner = offer
        coordinator.update_assignment_status(lead.id, partner.id, first, now=NOW)
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.update_assignment_status(lead.id, partner.id, second, now=NOW)

    def test_back_to_pending_not_allowed(self, coordinator, offer):
        lead, partner = offer
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.update_assignment_status(lead.id, partner.id, "pending", now=NOW)

    def test_unknown_status(self, coordinator, offer):
        lead, partner = offer
        with pytest.raises(ValidationError):
            coordinator.update_assignment_status(lead.id, partner.id, "maybe", now=NOW)

    def test_no_assignment_for_partner(self, coordinator, offer, make_partner):
        lead, _ = offer
        with pytest.raises(AssignmentNotFoundError):
            coordinator.update_assignment_status(lead.id, make_partner().id, "accepted", now=NOW)


# ============================================================================
# Cancellation
# ============================================================================


class TestCancellation:
    """Test the two-phase cancellation flow."""

    REASON = "Customer cancelled the move"

    @pytest.fixture
    def accepted(self, make_partner, make_lead, make_accepted):
        partner = make_partner()
        lead = make_lead()
        make_accepted(lead, partner, accepted_at=NOW)
        return lead, partner

    def test_request_within_window(self, coordinator, accepted):
        lead, partner = accepted
        assignment = coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW + timedelta(hours=1))

        assert assignment.status == AssignmentStatus.CANCELLATION_REQUESTED.value
        assert assignment.has_pending_cancellation
        assert assignment.cancellation_reason == self.REASON

    def test_reason_too_short(self, coordinator, accepted):
        lead, partner = accepted
        with pytest.raises(ValidationError):
            coordinator.request_cancellation(lead.id, partner.id, "  no  ", now=NOW)

    def test_window_expired(self, coordinator, accepted):
        lead, partner = accepted
        with pytest.raises(CancellationWindowExpiredError):
            coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW + timedelta(hours=3))

    def test_window_from_settings(self, coordinator, db_session, accepted):
        lead, partner = accepted
        SettingsStore(db_session).update_system(cancellation_time_limit=24)
        coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW + timedelta(hours=3))

    def test_pending_offer_cannot_be_cancelled(self, coordinator, make_partner, make_lead):
        lead, partner = make_lead(), make_partner()
        coordinator.assign_lead_to_partner(lead.id, partner.id, now=NOW)
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)

    def test_second_request_while_pending(self, coordinator, accepted):
        lead, partner = accepted
        coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)

    def test_approve(self, coordinator, db_session, accepted):
        lead, partner = accepted
        BillingAggregator(db_session).record_revenue(lead.id, partner.id)
        assert partner.total_revenue == 25.0

        coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)
        assignment = coordinator.approve_cancellation(lead.id, partner.id, now=NOW)

        assert assignment.status == AssignmentStatus.CANCELLED.value
        assert assignment.cancellation_approved is True
        assert partner.total_leads_cancelled == 1
        assert partner.total_revenue == 0.0
        revenue = db_session.query(Revenue).filter_by(lead_id=lead.id, partner_id=partner.id).one()
        assert revenue.status == RevenueStatus.CANCELLED.value
        assert coordinator.get_lead_status(lead.id, now=NOW)["status"] == "pending"

    def test_reject_keeps_lead_accepted(self, coordinator, db_session, accepted):
        lead, partner = accepted
        coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)
        assignment = coordinator.reject_cancellation(lead.id, partner.id, reason="Move still on", now=NOW)

        assert assignment.status == AssignmentStatus.ACCEPTED.value
        assert assignment.cancellation_rejected is True
        assert assignment.cancellation_rejection_reason == "Move still on"
        assert actions_for(db_session, lead.id) == [
            AuditAction.CANCELLATION_REJECTED,
            AuditAction.CANCELLATION_REQUESTED,
        ]

    def test_no_new_request_after_rejection(self, coordinator, accepted):
        lead, partner = accepted
        coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)
        coordinator.reject_cancellation(lead.id, partner.id, now=NOW)
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.request_cancellation(lead.id, partner.id, self.REASON, now=NOW)

    def test_approve_without_request(self, coordinator, accepted):
        lead, partner = accepted
        with pytest.raises(InvalidStatusTransitionError):
            coordinator.approve_cancellation(lead.id, partner.id, now=NOW)

    def test_status_update_routes_through_cancellation(self, coordinator, accepted):
        lead, partner = accepted
        coordinator.update_assignment_status(
            lead.id, partner.id, "cancellation_requested", reason=self.REASON, now=NOW
        )
        coordinator.update_assignment_status(lead.id, partner.id, "cancelled", now=NOW)
        assert lead.assignment_for(partner.id).status == "cancelled"


class TestLeadQueries:
    """Test status lookup and the unassigned backlog."""

    def test_get_lead_status(self, coordinator, make_partner, make_lead):
        lead = make_lead()
        partner = make_partner()
        coordinator.assign_lead_to_partner(lead.id, partner.id, now=NOW)

        status = coordinator.get_lead_status(lead.id, now=NOW)
        assert status["lead_id"] == lead.id
        assert [a["partner_id"] for a in status["assignments"]] == [partner.id]

    def test_get_lead_status_missing(self, coordinator):
        with pytest.raises(LeadNotFoundError):
            coordinator.get_lead_status(999999)

    def test_find_unassigned(self, coordinator, make_partner, make_lead):
        assigned = make_lead()
        coordinator.assign_lead_to_partner(assigned.id, make_partner().id, now=NOW)
        open_leads = [make_lead(), make_lead()]

        found = coordinator.find_unassigned_lead_ids(10)
        assert assigned.id not in found
        assert set(lead.id for lead in open_leads) <= set(found)
        assert len(coordinator.find_unassigned_lead_ids(1)) == 1

    def test_find_unassigned_puts_untried_leads_first(self, coordinator, db_session, make_lead):
        tried = [make_lead(), make_lead()]
        for lead in tried:
            result = coordinator.auto_assign(lead.id, now=NOW)
            assert result.failure == AssignFailure.NO_ELIGIBLE_PARTNERS
        fresh = make_lead()

        assert coordinator.find_unassigned_lead_ids(2) == [fresh.id, tried[0].id]

    def test_find_unassigned_includes_leads_with_only_rejected_offers(self, coordinator, make_partner, make_lead):
        partner = make_partner()
        rejected = make_lead()
        coordinator.assign_lead_to_partner(rejected.id, partner.id, now=NOW)
        coordinator.update_assignment_status(rejected.id, partner.id, "rejected", reason="Fully booked", now=NOW)

        assert rejected.id in coordinator.find_unassigned_lead_ids(10)

    def test_record_auto_assign_attempt(self, coordinator, db_session, make_lead):
        first, second = make_lead(), make_lead()
        coordinator.record_auto_assign_attempt(first.id, now=NOW)
        db_session.expire_all()

        assert first.auto_assign_attempted_at is not None
        assert coordinator.find_unassigned_lead_ids(1) == [second.id]
