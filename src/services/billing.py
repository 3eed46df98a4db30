"""Invoice and revenue generation.

BillingAggregator is the only writer of Invoice, InvoiceLineItem and
Revenue rows. An accepted assignment is billed at most once: the invoice
that first includes it stamps `invoice_id`/`invoiced_at` on the assignment,
and stamped assignments drop out of every later invoice query. Revenue is
recorded once per (lead, partner); the unique index on that pair backs the
check-then-create.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import Settings, get_settings
from core.exceptions import (
    BillingError,
    BillingInProgressError,
    LeadMarketError,
    NoLeadsToInvoiceError,
    NotFoundError,
    PartnerNotFoundError,
    ValidationError,
)
from core.logging_config import get_logger
from core.models import (
    AssignmentStatus,
    Invoice,
    InvoiceLineItem,
    InvoiceStatus,
    Lead,
    Partner,
    PartnerAssignment,
    Revenue,
    RevenueStatus,
    ServiceType,
)
from core.types import BillingPeriod
from core.utils import enum_value, round_money, utcnow
from domain import partner_metrics
from services.audit_log import AuditAction, AuditLogService
from services.income import IncomeReporter
from services.locking import SchedulerLockService
from services.settings_store import SettingsStore

LOGGER = get_logger(__name__)

# Allowed invoice status moves
INVOICE_TRANSITIONS: Dict[str, frozenset] = {
    InvoiceStatus.DRAFT.value: frozenset({InvoiceStatus.SENT.value, InvoiceStatus.CANCELLED.value}),
    InvoiceStatus.SENT.value: frozenset({
        InvoiceStatus.PAID.value, InvoiceStatus.OVERDUE.value, InvoiceStatus.CANCELLED.value,
    }),
    InvoiceStatus.OVERDUE.value: frozenset({InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value}),
    InvoiceStatus.PAID.value: frozenset(),
    InvoiceStatus.CANCELLED.value: frozenset(),
}


def _service_type(value: Any) -> str:
    value = enum_value(value)
    if value not in {s.value for s in ServiceType}:
        raise ValidationError(f"Unknown service type: {value}")
    return value


@dataclass
class BillingReadyPartner:
    """A partner with unbilled accepted leads in a period."""

    partner_id: int
    partner_name: str
    partner_type: str
    accepted_leads: int
    total_amount: float

    @property
    def avg_lead_price(self) -> float:
        return round_money(self.total_amount / self.accepted_leads) if self.accepted_leads else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner_id": self.partner_id,
            "partner_name": self.partner_name,
            "partner_type": self.partner_type,
            "accepted_leads": self.accepted_leads,
            "total_amount": self.total_amount,
            "avg_lead_price": self.avg_lead_price,
        }


class BillingAggregator:
    """
    Turns accepted assignments into invoices and revenue entries.

    Usage:
        billing = BillingAggregator(session)
        invoice = billing.generate_invoice(partner_id, "moving", BillingPeriod.for_month(2025, 1))
    """

    def __init__(
        self,
        session: Session,
        settings_store: Optional[SettingsStore] = None,
        audit: Optional[AuditLogService] = None,
        app_settings: Optional[Settings] = None,
    ):
        """Initialize the billing aggregator."""
        self.session = session
        self.settings_store = settings_store or SettingsStore(session)
        self.audit = audit or AuditLogService(session)
        self.app_settings = app_settings or get_settings()

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _billable_assignments(self, service_type: str, period: BillingPeriod):
        """Accepted, not yet invoiced assignments accepted within the period."""
        return (
            self.session.query(PartnerAssignment)
            .join(Lead, Lead.id == PartnerAssignment.lead_id)
            .filter(
                Lead.service_type == service_type,
                PartnerAssignment.status == AssignmentStatus.ACCEPTED.value,
                PartnerAssignment.accepted_at >= period.start,
                PartnerAssignment.accepted_at <= period.end,
                PartnerAssignment.invoice_id.is_(None),
            )
        )

    def get_billing_ready_partners(self, service_type: Any, period: BillingPeriod) -> List[BillingReadyPartner]:
        """
        Partners with unbilled accepted leads in the period, largest amount first.

        Args:
            service_type: Service type to bill.
            period: Inclusive window over acceptance time.
        """
        service_type = _service_type(service_type)
        total = func.sum(PartnerAssignment.lead_price)
        rows = (
            self.session.query(
                Partner.id,
                Partner.company_name,
                Partner.partner_type,
                func.count(PartnerAssignment.id),
                total,
            )
            .join(PartnerAssignment, PartnerAssignment.partner_id == Partner.id)
            .join(Lead, Lead.id == PartnerAssignment.lead_id)
            .filter(
                Lead.service_type == service_type,
                PartnerAssignment.status == AssignmentStatus.ACCEPTED.value,
                PartnerAssignment.accepted_at >= period.start,
                PartnerAssignment.accepted_at <= period.end,
                PartnerAssignment.invoice_id.is_(None),
            )
            .group_by(Partner.id, Partner.company_name, Partner.partner_type)
            .order_by(total.desc(), Partner.id)
            .all()
        )
        return [
            BillingReadyPartner(
                partner_id=partner_id,
                partner_name=name,
                partner_type=partner_type,
                accepted_leads=count,
                total_amount=round_money(amount or 0.0),
            )
            for partner_id, name, partner_type, count, amount in rows
        ]

    # -------------------------------------------------------------------------
    # Revenue
    # -------------------------------------------------------------------------

    def record_revenue(
        self,
        lead_id: int,
        partner_id: int,
        amount: Optional[float] = None,
        invoice_id: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> Tuple[Revenue, bool]:
        """
        Record platform revenue for an accepted (lead, partner) pair, once.

        Args:
            lead_id: The lead.
            partner_id: The partner that accepted it.
            amount: Billed amount; defaults to the assignment's frozen price.
            invoice_id: Invoice the revenue belongs to, if any.
            currency: Currency code; defaults to the configured currency.

        Returns:
            (revenue, created). An existing row is returned untouched except
            that an unlinked, uncancelled row is attached to `invoice_id`.

        Raises:
            NotFoundError: No accepted assignment for the pair.
        """
        existing = self.session.query(Revenue).filter(
            Revenue.lead_id == lead_id,
            Revenue.partner_id == partner_id,
        ).first()
        if existing is not None:
            self._link_existing_revenue(existing, invoice_id)
            LOGGER.debug(f"Revenue for lead {lead_id} / partner {partner_id} already recorded")
            return existing, False

        assignment = (
            self.session.query(PartnerAssignment)
            .filter(
                PartnerAssignment.lead_id == lead_id,
                PartnerAssignment.partner_id == partner_id,
                PartnerAssignment.status == AssignmentStatus.ACCEPTED.value,
            )
            .first()
        )
        if assignment is None:
            raise NotFoundError(f"No accepted assignment for lead {lead_id} / partner {partner_id}")

        amount = round_money(assignment.lead_price if amount is None else amount)
        revenue = Revenue(
            lead_id=lead_id,
            partner_id=partner_id,
            invoice_id=invoice_id,
            service_type=assignment.lead.service_type,
            amount=amount,
            commission=round_money(amount * self.app_settings.revenue_commission_rate),
            currency=currency or self.settings_store.get_snapshot().currency,
            status=RevenueStatus.CONFIRMED.value,
            revenue_date=assignment.accepted_at,
        )
        try:
            with self.session.begin_nested():
                self.session.add(revenue)
        except IntegrityError:
            # Another transaction recorded the pair first
            existing = self.session.query(Revenue).filter(
                Revenue.lead_id == lead_id,
                Revenue.partner_id == partner_id,
            ).one()
            self._link_existing_revenue(existing, invoice_id)
            return existing, False

        partner_metrics.add_revenue(self.session, assignment.partner, amount)
        LOGGER.info(
            f"Recorded revenue {amount} for lead {lead_id} / partner {partner_id}",
            extra={"lead_id": lead_id, "partner_id": partner_id, "invoice_id": invoice_id},
        )
        return revenue, True

    def _link_existing_revenue(self, revenue: Revenue, invoice_id: Optional[int]) -> None:
        if invoice_id is None or revenue.invoice_id is not None:
            return
        if revenue.status == RevenueStatus.CANCELLED.value:
            return
        revenue.invoice_id = invoice_id
        revenue.status = RevenueStatus.CONFIRMED.value
        self.session.flush()

    # -------------------------------------------------------------------------
    # Invoices
    # -------------------------------------------------------------------------

    def generate_invoice(
        self,
        partner_id: int,
        service_type: Any,
        period: BillingPeriod,
        selected_lead_ids: Optional[Iterable[int]] = None,
        price_overrides: Optional[Mapping[int, float]] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Invoice:
        """
        Bill a partner's accepted leads for a period.

        Args:
            partner_id: Partner to bill.
            service_type: Service type of the leads.
            period: Inclusive window over acceptance time.
            selected_lead_ids: Bill only these leads. None bills every
                unbilled accepted lead in the period; an empty list bills nothing.
            price_overrides: Per-lead amounts replacing the frozen price on
                this invoice only. The assignment keeps its price.
            notes: Free text stored on the invoice.

        Returns:
            The draft Invoice.

        Raises:
            PartnerNotFoundError: Unknown partner.
            ValidationError: Unknown service type or negative override.
            NoLeadsToInvoiceError: Nothing billable matched.
        """
        now = now or utcnow()
        service_type = _service_type(service_type)
        partner = self.session.get(Partner, partner_id)
        if partner is None:
            raise PartnerNotFoundError(f"Partner {partner_id} not found")

        overrides = {int(k): v for k, v in (price_overrides or {}).items()}
        for lead_id, amount in overrides.items():
            if amount is None or amount < 0:
                raise ValidationError(f"Override for lead {lead_id} must be zero or positive, got {amount}")

        settings = self.settings_store.get_snapshot()

        assignments = (
            self._billable_assignments(service_type, period)
            .filter(PartnerAssignment.partner_id == partner_id)
            .order_by(PartnerAssignment.accepted_at, PartnerAssignment.id)
            .with_for_update()
            .all()
        )

        if selected_lead_ids is not None:
            selected = {int(lead_id) for lead_id in selected_lead_ids}
            assignments = [a for a in assignments if a.lead_id in selected]
            missing = selected - {a.lead_id for a in assignments}
            if missing:
                LOGGER.warning(
                    f"Selected leads not billable for partner {partner_id}: {sorted(missing)}",
                    extra={"partner_id": partner_id},
                )

        if not assignments:
            LOGGER.info(
                f"Nothing to invoice for partner {partner_id} ({service_type}, {period.start.date()}..{period.end.date()})",
                extra={"partner_id": partner_id},
            )
            raise NoLeadsToInvoiceError(
                f"No accepted, unbilled {service_type} leads for partner {partner_id} in the billing period"
            )

        invoice = Invoice(
            partner_id=partner_id,
            service_type=service_type,
            period_start=period.start,
            period_end=period.end,
            tax_rate=settings.tax_rate,
            currency=settings.currency,
            status=InvoiceStatus.DRAFT.value,
            due_at=now + timedelta(days=self.app_settings.invoice_due_days),
            notes=notes,
        )

        subtotal = 0.0
        for assignment in assignments:
            amount = round_money(overrides.get(assignment.lead_id, assignment.lead_price))
            subtotal += amount
            invoice.line_items.append(InvoiceLineItem(
                lead_id=assignment.lead_id,
                assignment_id=assignment.id,
                lead_number=assignment.lead.lead_number,
                service_type=service_type,
                accepted_at=assignment.accepted_at,
                amount=amount,
                description=f"{service_type.capitalize()} lead {assignment.lead.lead_number}",
            ))

        invoice.subtotal = round_money(subtotal)
        invoice.tax_amount = round_money(invoice.subtotal * settings.tax_rate / 100)
        invoice.total = round_money(invoice.subtotal + invoice.tax_amount)

        self.session.add(invoice)
        self.session.flush()

        for assignment in assignments:
            assignment.invoice_id = invoice.id
            assignment.invoiced_at = now
        self.session.flush()

        for item in invoice.line_items:
            self.record_revenue(
                item.lead_id,
                partner_id,
                amount=item.amount,
                invoice_id=invoice.id,
                currency=settings.currency,
            )

        LOGGER.info(
            f"Generated invoice {invoice.invoice_number} for partner {partner_id}: "
            f"{len(invoice.line_items)} leads, total {invoice.total} {invoice.currency}",
            extra={"partner_id": partner_id, "invoice_id": invoice.id},
        )
        self.audit.create_log(
            action=AuditAction.INVOICE_GENERATED,
            message=f"Invoice {invoice.invoice_number} generated for {partner.company_name}",
            service_type=service_type,
            partner_id=partner_id,
            details={
                "invoice_id": invoice.id,
                "lead_ids": [item.lead_id for item in invoice.line_items],
                "total": invoice.total,
                "overrides": {str(k): v for k, v in overrides.items()} or None,
            },
        )
        return invoice

    def generate_bulk_invoices(
        self,
        service_type: Any,
        period: BillingPeriod,
        now: Optional[datetime] = None,
    ) -> List[Invoice]:
        """
        Invoice every billing-ready partner for the period.

        One partner failing is logged and skipped; the rest are still billed.
        Runs for the same service type are serialized by a named lock.

        Raises:
            BillingInProgressError: Another bulk run holds the lock.
        """
        service_type = _service_type(service_type)
        lock_name = f"bulk_invoices_{service_type}"
        locks = SchedulerLockService(self.session)

        invoices: List[Invoice] = []
        with locks.scheduler_lock(lock_name, self.app_settings.bulk_invoice_lock_seconds) as acquired:
            if not acquired:
                raise BillingInProgressError(f"Bulk invoicing for {service_type} is already running")

            ready = self.get_billing_ready_partners(service_type, period)
            LOGGER.info(f"Bulk invoicing {service_type}: {len(ready)} partners ready")

            for entry in ready:
                try:
                    with self.session.begin_nested():
                        invoices.append(self.generate_invoice(entry.partner_id, service_type, period, now=now))
                except BillingError as e:
                    LOGGER.info(
                        f"Nothing billed for partner {entry.partner_id}: {e}",
                        extra={"partner_id": entry.partner_id},
                    )
                except (LeadMarketError, SQLAlchemyError) as e:
                    LOGGER.error(
                        f"Bulk invoicing failed for partner {entry.partner_id}: {e}",
                        extra={"partner_id": entry.partner_id},
                        exc_info=not isinstance(e, LeadMarketError),
                    )

        LOGGER.info(f"Bulk invoicing {service_type}: generated {len(invoices)} invoices")
        return invoices

    def mark_invoice_status(self, invoice_id: int, status: Any, now: Optional[datetime] = None) -> Invoice:
        """
        Move an invoice along draft -> sent -> paid/overdue, or cancel it.

        Cancelling releases its assignments for re-billing and unlinks its
        revenue entries. Paying marks those entries paid.

        Raises:
            NotFoundError: Unknown invoice.
            ValidationError: Unknown status or a move not allowed from the current one.
        """
        now = now or utcnow()
        target = enum_value(status)
        if target not in INVOICE_TRANSITIONS:
            raise ValidationError(f"Unknown invoice status: {target}")

        invoice = self.session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFoundError(f"Invoice {invoice_id} not found")
        if target not in INVOICE_TRANSITIONS[invoice.status]:
            raise ValidationError(f"Invoice {invoice.invoice_number} cannot go from {invoice.status} to {target}")

        previous = invoice.status
        invoice.status = target
        revenues = self.session.query(Revenue).filter(Revenue.invoice_id == invoice.id).all()

        if target == InvoiceStatus.SENT.value:
            invoice.issued_at = now
        elif target == InvoiceStatus.PAID.value:
            invoice.paid_at = now
            for revenue in revenues:
                if revenue.status != RevenueStatus.CANCELLED.value:
                    revenue.status = RevenueStatus.PAID.value
        elif target == InvoiceStatus.CANCELLED.value:
            released = self.session.query(PartnerAssignment).filter(
                PartnerAssignment.invoice_id == invoice.id
            ).all()
            for assignment in released:
                assignment.invoice_id = None
                assignment.invoiced_at = None
            for revenue in revenues:
                revenue.invoice_id = None
                if revenue.status != RevenueStatus.CANCELLED.value:
                    revenue.status = RevenueStatus.PENDING.value

        self.session.flush()
        LOGGER.info(
            f"Invoice {invoice.invoice_number}: {previous} -> {target}",
            extra={"invoice_id": invoice.id},
        )
        self.audit.create_log(
            action=AuditAction.INVOICE_STATUS_CHANGED,
            message=f"Invoice {invoice.invoice_number} moved from {previous} to {target}",
            actor_type="admin",
            actor_name="admin",
            service_type=invoice.service_type,
            partner_id=invoice.partner_id,
            details={"invoice_id": invoice.id, "from": previous, "to": target},
        )
        return invoice

    def get_billing_summary(self, service_type: Any, period: BillingPeriod) -> Dict[str, Any]:
        """Billing-ready partners plus the income report for the same period."""
        service_type = _service_type(service_type)
        ready = self.get_billing_ready_partners(service_type, period)
        income = IncomeReporter(self.session).calculate_income_for_period(period, service_type=service_type)
        invoiced = (
            self.session.query(func.count(Invoice.id), func.coalesce(func.sum(Invoice.total), 0.0))
            .filter(
                Invoice.service_type == service_type,
                Invoice.status != InvoiceStatus.CANCELLED.value,
                Invoice.period_start >= period.start,
                Invoice.period_end <= period.end,
            )
            .one()
        )
        return {
            "service_type": service_type,
            "period": period.as_dict(),
            "ready_partners": [entry.to_dict() for entry in ready],
            "unbilled": {
                "partners": len(ready),
                "leads": sum(entry.accepted_leads for entry in ready),
                "amount": round_money(sum(entry.total_amount for entry in ready)),
            },
            "invoiced": {"invoices": invoiced[0], "total": round_money(invoiced[1] or 0.0)},
            "income": income.to_dict(),
        }


def get_billing_aggregator(session: Session) -> BillingAggregator:
    """Get a BillingAggregator instance."""
    return BillingAggregator(session)


__all__ = [
    "INVOICE_TRANSITIONS",
    "BillingReadyPartner",
    "BillingAggregator",
    "get_billing_aggregator",
]
