"""Income reporting over accepted assignments.

Read-only. Reports the same accepted-assignment facts billing works from,
without writing invoices or revenue rows.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from core.logging_config import get_logger
from core.models import AssignmentStatus, Lead, Partner, PartnerAssignment
from core.types import BillingPeriod
from core.utils import enum_value, round_money

LOGGER = get_logger(__name__)


def _average(income: float, leads: int) -> float:
    return round_money(income / leads) if leads else 0.0


@dataclass
class IncomeSummary:
    """Income for a period, broken down by service type and by partner."""

    period: BillingPeriod
    total_income: float = 0.0
    total_leads: int = 0
    by_service_type: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    by_partner: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def average_lead_price(self) -> float:
        return _average(self.total_income, self.total_leads)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "period": self.period.as_dict(),
            "total_income": self.total_income,
            "total_leads": self.total_leads,
            "average_lead_price": self.average_lead_price,
            "by_service_type": self.by_service_type,
            "by_partner": self.by_partner,
        }


class IncomeReporter:
    """Aggregates income from accepted assignments."""

    def __init__(self, session: Session):
        """Initialize the income reporter."""
        self.session = session

    def calculate_income_for_period(
        self,
        period: BillingPeriod,
        service_type: Any = None,
        partner_id: Optional[int] = None,
    ) -> IncomeSummary:
        """
        Sum accepted-assignment prices whose acceptance falls in `period`.

        Args:
            period: Inclusive window over acceptance time.
            service_type: Only this service type, if given.
            partner_id: Only this partner, if given.

        Returns:
            IncomeSummary with per-service and per-partner breakdowns.
        """
        query = (
            self.session.query(
                Lead.service_type,
                Partner.id,
                Partner.company_name,
                Partner.partner_type,
                func.count(PartnerAssignment.id),
                func.coalesce(func.sum(PartnerAssignment.lead_price), 0.0),
            )
            .join(PartnerAssignment, PartnerAssignment.lead_id == Lead.id)
            .join(Partner, Partner.id == PartnerAssignment.partner_id)
            .filter(
                PartnerAssignment.status == AssignmentStatus.ACCEPTED.value,
                PartnerAssignment.accepted_at >= period.start,
                PartnerAssignment.accepted_at <= period.end,
            )
        )
        if service_type is not None:
            query = query.filter(Lead.service_type == enum_value(service_type))
        if partner_id is not None:
            query = query.filter(PartnerAssignment.partner_id == partner_id)

        rows = query.group_by(
            Lead.service_type, Partner.id, Partner.company_name, Partner.partner_type
        ).all()

        summary = IncomeSummary(period=period)
        partners: Dict[int, Dict[str, Any]] = {}

        for row_service, row_partner_id, name, partner_type, leads, income in rows:
            income = float(income or 0.0)

            service = summary.by_service_type.setdefault(row_service, {"income": 0.0, "leads": 0})
            service["income"] += income
            service["leads"] += leads

            partner = partners.setdefault(row_partner_id, {
                "partner_id": row_partner_id,
                "partner_name": name,
                "partner_type": partner_type,
                "income": 0.0,
                "leads": 0,
            })
            partner["income"] += income
            partner["leads"] += leads

            summary.total_income += income
            summary.total_leads += leads

        for bucket in list(summary.by_service_type.values()) + list(partners.values()):
            bucket["income"] = round_money(bucket["income"])
            bucket["avg_price"] = _average(bucket["income"], bucket["leads"])

        summary.total_income = round_money(summary.total_income)
        summary.by_partner = sorted(partners.values(), key=lambda p: (-p["income"], p["partner_id"]))

        LOGGER.debug(
            f"Income for {period.start.date()}..{period.end.date()}: "
            f"{summary.total_income} from {summary.total_leads} leads"
        )
        return summary


def get_income_reporter(session: Session) -> IncomeReporter:
    """Get an IncomeReporter instance."""
    return IncomeReporter(session)


__all__ = [
    "IncomeSummary",
    "IncomeReporter",
    "get_income_reporter",
]
