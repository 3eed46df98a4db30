"""SQLAlchemy ORM models for leadmarket."""
from __future__ import annotations

from datetime import date, datetime
from typing import Any, Optional

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates
import enum

from core.db import Base
from core.exceptions import ImmutableFieldError
from core.utils import (
    generate_invoice_number,
    generate_lead_number,
    generate_partner_number,
    round_money,
)


# =============================================================================
# Enums
# =============================================================================


class ServiceType(str, enum.Enum):
    """Services a lead can request and a partner can provide."""
    MOVING = "moving"
    CLEANING = "cleaning"


class PartnerType(str, enum.Enum):
    """Partner tiers. Exclusive partners are offered leads before basic ones."""
    BASIC = "basic"
    EXCLUSIVE = "exclusive"


class PartnerStatus(str, enum.Enum):
    """Operational status of a partner account."""
    PENDING = "pending"
    ACTIVE = "active"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


class AssignmentStatus(str, enum.Enum):
    """Outcome of offering a lead to one partner."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLATION_REQUESTED = "cancellation_requested"
    CANCELLED = "cancelled"


# Assignments in these states no longer occupy the lead
INACTIVE_ASSIGNMENT_STATUSES = frozenset({AssignmentStatus.REJECTED.value, AssignmentStatus.CANCELLED.value})


class LeadStatus(str, enum.Enum):
    """Overall lead status, always derived from the assignment list."""
    PENDING = "pending"
    PARTIAL_ASSIGNED = "partial_assigned"
    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    PAID = "paid"
    OVERDUE = "overdue"
    CANCELLED = "cancelled"


class RevenueStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PAID = "paid"
    CANCELLED = "cancelled"


# =============================================================================
# Partner Model
# =============================================================================


def _partner_number_default(context) -> str:
    params = context.get_current_parameters()
    return generate_partner_number(params["service_type"], params["partner_type"])


class Partner(Base):
    """
    A single-service provider account.

    A company offering moving and cleaning is two Partner rows sharing
    contact details.
    """
    __tablename__ = "partner"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    partner_number: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, default=_partner_number_default
    )

    # Company
    company_name: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    contact_person: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    address: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Classification
    service_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    partner_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PartnerType.BASIC.value, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PartnerStatus.PENDING.value, index=True
    )

    # Per-service preferences: {"moving": {"service_area": {...}, "average_leads_per_week": 8}}
    preferences: Mapped[dict] = mapped_column(JSON, default=dict)

    # Metrics (counters are only ever changed with SQL-side increments)
    total_leads_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_leads_accepted: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_leads_cancelled: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weekly_leads_received: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    week_start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    total_revenue: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    average_response_time: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # hours
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    assignments: Mapped[list["PartnerAssignment"]] = relationship(
        "PartnerAssignment", back_populates="partner"
    )
    invoices: Mapped[list["Invoice"]] = relationship("Invoice", back_populates="partner")

    __table_args__ = (
        Index("ix_partner_service_status", "service_type", "status"),
    )

    def weekly_leads_for(self, current_week: date) -> int:
        """Leads received in `current_week`; a counter from an older week reads as zero."""
        if self.week_start_date != current_week:
            return 0
        return self.weekly_leads_received or 0

    @property
    def acceptance_rate(self) -> float:
        if not self.total_leads_received:
            return 0.0
        return round(self.total_leads_accepted / self.total_leads_received * 100, 1)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "partner_number": self.partner_number,
            "company_name": self.company_name,
            "contact_person": self.contact_person,
            "email": self.email,
            "service_type": self.service_type,
            "partner_type": self.partner_type,
            "status": self.status,
            "metrics": {
                "total_leads_received": self.total_leads_received,
                "total_leads_accepted": self.total_leads_accepted,
                "total_leads_cancelled": self.total_leads_cancelled,
                "weekly_leads_received": self.weekly_leads_received,
                "week_start_date": self.week_start_date.isoformat() if self.week_start_date else None,
                "total_revenue": self.total_revenue,
                "average_response_time": self.average_response_time,
                "rating": self.rating,
                "acceptance_rate": self.acceptance_rate,
            },
        }


# =============================================================================
# Lead Model
# =============================================================================


def _lead_number_default(context) -> str:
    return generate_lead_number(context.get_current_parameters()["service_type"])


class Lead(Base):
    """
    A customer service request.

    There is deliberately no status column: the overall status is a
    projection of `assignments`, see domain.lead_status.
    """
    __tablename__ = "lead"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_number: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, default=_lead_number_default
    )
    service_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Customer
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    # Form payload: pickup_address / destination_address / service_address / address / fixed_date ...
    form_data: Mapped[dict] = mapped_column(JSON, default=dict)

    # Pre-form single location {"city", "country", "coordinates": {"lat", "lng"}}
    location: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    # Last scheduled auto-assign attempt; orders the next batch
    auto_assign_attempted_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    assignments: Mapped[list["PartnerAssignment"]] = relationship(
        "PartnerAssignment",
        back_populates="lead",
        order_by="PartnerAssignment.id",
        cascade="all, delete-orphan",
    )

    def assignment_for(self, partner_id: int) -> Optional["PartnerAssignment"]:
        for assignment in self.assignments:
            if assignment.partner_id == partner_id:
                return assignment
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lead_number": self.lead_number,
            "service_type": self.service_type,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "form_data": self.form_data,
            "location": self.location,
            "assignments": [a.to_dict() for a in self.assignments],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


# =============================================================================
# PartnerAssignment Model
# =============================================================================


class PartnerAssignment(Base):
    """
    The offer of one lead to one partner.

    `lead_price` and `partner_type` are historical facts captured at
    assignment time; billing reads them, nothing may rewrite them.
    """
    __tablename__ = "partner_assignment"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("lead.id"), nullable=False, index=True)
    partner_id: Mapped[int] = mapped_column(ForeignKey("partner.id"), nullable=False, index=True)

    status: Mapped[str] = mapped_column(
        String(30), nullable=False, default=AssignmentStatus.PENDING.value, index=True
    )

    # Frozen at assignment time
    lead_price: Mapped[float] = mapped_column(Float, nullable=False)
    partner_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # Lifecycle timestamps
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Two-phase cancellation
    cancellation_requested: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_requested_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancellation_approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancellation_rejected: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cancellation_rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cancellation_rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Set once, when the assignment is first billed
    invoice_id: Mapped[Optional[int]] = mapped_column(ForeignKey("invoice.id"), nullable=True, index=True)
    invoiced_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    lead: Mapped["Lead"] = relationship("Lead", back_populates="assignments")
    partner: Mapped["Partner"] = relationship("Partner", back_populates="assignments")
    invoice: Mapped[Optional["Invoice"]] = relationship("Invoice")

    __table_args__ = (
        Index("ix_assignment_lead_partner", "lead_id", "partner_id", unique=True),
        Index("ix_assignment_partner_status_accepted", "partner_id", "status", "accepted_at"),
    )

    @validates("lead_price", "partner_type")
    def _freeze_assignment_terms(self, key: str, value: Any) -> Any:
        current = getattr(self, key)
        if current is not None and current != value:
            raise ImmutableFieldError(
                f"Assignment {self.id}: {key} is fixed at {current!r} and cannot become {value!r}"
            )
        return value

    @property
    def is_active(self) -> bool:
        return self.status not in INACTIVE_ASSIGNMENT_STATUSES

    @property
    def has_pending_cancellation(self) -> bool:
        return (
            self.cancellation_requested
            and not self.cancellation_approved
            and not self.cancellation_rejected
        )

    def to_dict(self) -> dict[str, Any]:
        def _iso(value: Optional[datetime]) -> Optional[str]:
            return value.isoformat() if value else None

        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "partner_id": self.partner_id,
            "status": self.status,
            "lead_price": self.lead_price,
            "partner_type": self.partner_type,
            "assigned_at": _iso(self.assigned_at),
            "accepted_at": _iso(self.accepted_at),
            "rejected_at": _iso(self.rejected_at),
            "cancellation": {
                "requested": self.cancellation_requested,
                "reason": self.cancellation_reason,
                "requested_at": _iso(self.cancellation_requested_at),
                "approved": self.cancellation_approved,
                "approved_at": _iso(self.cancellation_approved_at),
                "rejected": self.cancellation_rejected,
                "rejection_reason": self.cancellation_rejection_reason,
                "rejected_at": _iso(self.cancellation_rejected_at),
            },
            "invoice_id": self.invoice_id,
            "invoiced_at": _iso(self.invoiced_at),
        }


# =============================================================================
# Invoice Models
# =============================================================================


class Invoice(Base):
    """
    A bill to one partner for accepted leads in a billing period.
    """
    __tablename__ = "invoice"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_number: Mapped[str] = mapped_column(
        String(32), unique=True, nullable=False, default=lambda: generate_invoice_number()
    )
    partner_id: Mapped[int] = mapped_column(ForeignKey("partner.id"), nullable=False, index=True)
    service_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)

    # Billing period
    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    # Amounts
    subtotal: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    tax_rate: Mapped[float] = mapped_column(Float, nullable=False)
    tax_amount: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    total: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=InvoiceStatus.DRAFT.value, index=True
    )
    issued_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    due_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Relationships
    partner: Mapped["Partner"] = relationship("Partner", back_populates="invoices")
    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        "InvoiceLineItem",
        back_populates="invoice",
        order_by="InvoiceLineItem.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        Index("ix_invoice_partner_period", "partner_id", "period_start", "period_end"),
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "partner_id": self.partner_id,
            "service_type": self.service_type,
            "billing_period": {
                "start": self.period_start.isoformat() if self.period_start else None,
                "end": self.period_end.isoformat() if self.period_end else None,
            },
            "items": [item.to_dict() for item in self.line_items],
            "subtotal": self.subtotal,
            "tax_rate": self.tax_rate,
            "tax_amount": self.tax_amount,
            "total": self.total,
            "currency": self.currency,
            "status": self.status,
            "issued_at": self.issued_at.isoformat() if self.issued_at else None,
            "due_at": self.due_at.isoformat() if self.due_at else None,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
        }


class InvoiceLineItem(Base):
    """One billed lead on an invoice."""
    __tablename__ = "invoice_line_item"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    invoice_id: Mapped[int] = mapped_column(ForeignKey("invoice.id"), nullable=False, index=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("lead.id"), nullable=False, index=True)
    assignment_id: Mapped[int] = mapped_column(ForeignKey("partner_assignment.id"), nullable=False)

    lead_number: Mapped[str] = mapped_column(String(32), nullable=False)
    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    accepted_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    invoice: Mapped["Invoice"] = relationship("Invoice", back_populates="line_items")

    def to_dict(self) -> dict[str, Any]:
        return {
            "lead_id": self.lead_id,
            "lead_number": self.lead_number,
            "service_type": self.service_type,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "amount": self.amount,
            "description": self.description,
        }


# =============================================================================
# Revenue Model
# =============================================================================


class Revenue(Base):
    """
    Platform income recognised for one accepted (lead, partner) pair.
    """
    __tablename__ = "revenue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lead_id: Mapped[int] = mapped_column(ForeignKey("lead.id"), nullable=False, index=True)
    partner_id: Mapped[int] = mapped_column(ForeignKey("partner.id"), nullable=False, index=True)
    invoice_id: Mapped[Optional[int]] = mapped_column(ForeignKey("invoice.id"), nullable=True, index=True)

    service_type: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    commission: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    net_revenue: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="EUR")

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RevenueStatus.PENDING.value, index=True
    )
    revenue_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_revenue_lead_partner", "lead_id", "partner_id", unique=True),
    )

    @validates("amount", "commission")
    def _sync_net_revenue(self, key: str, value: float) -> float:
        amount = value if key == "amount" else (self.amount or 0.0)
        commission = value if key == "commission" else (self.commission or 0.0)
        self.net_revenue = round_money(amount - commission)
        return value

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "lead_id": self.lead_id,
            "partner_id": self.partner_id,
            "invoice_id": self.invoice_id,
            "service_type": self.service_type,
            "amount": self.amount,
            "commission": self.commission,
            "net_revenue": self.net_revenue,
            "currency": self.currency,
            "status": self.status,
            "revenue_date": self.revenue_date.isoformat() if self.revenue_date else None,
        }


# =============================================================================
# PlatformSettings Model
# =============================================================================


class PlatformSettings(Base):
    """
    Administrator-editable business settings. A single row, created lazily.
    """
    __tablename__ = "platform_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    pricing: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    system: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


# =============================================================================
# AuditLog Model
# =============================================================================


class AuditLog(Base):
    """
    Append-only record of assignment and billing actions.
    """
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_type: Mapped[str] = mapped_column(String(20), nullable=False, default="system")
    actor_name: Mapped[str] = mapped_column(String(100), nullable=False)
    action: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    service_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    lead_id: Mapped[Optional[int]] = mapped_column(ForeignKey("lead.id"), nullable=True, index=True)
    partner_id: Mapped[Optional[int]] = mapped_column(ForeignKey("partner.id"), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="success")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), index=True
    )


# =============================================================================
# SchedulerLock Model
# =============================================================================


class SchedulerLock(Base):
    """
    Named, expiring lock used to serialize scheduled runs.
    """
    __tablename__ = "scheduler_lock"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    lock_name: Mapped[str] = mapped_column(String(100), unique=True, nullable=False, index=True)
    locked_by: Mapped[str] = mapped_column(String(64), nullable=False)
    locked_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
