"""Eligible-partner lookup for a lead."""
from __future__ import annotations

from datetime import date, datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from core.exceptions import GeoError
from core.logging_config import get_logger
from core.models import Lead, Partner, PartnerStatus
from core.types import SettingsSnapshot
from core.utils import enum_value, week_start
from domain.service_area import ServiceAreaResolver, ServicePreferences

LOGGER = get_logger(__name__)


class EligibilityFilter:
    """
    Finds the partners a lead may be offered to.

    Read-only: partner rows are inspected, never modified.
    """

    def __init__(self, session: Session, resolver: Optional[ServiceAreaResolver] = None):
        self.session = session
        self.resolver = resolver or ServiceAreaResolver()

    def find_eligible_partners(
        self,
        lead: Lead,
        settings: SettingsSnapshot,
        now: Optional[datetime] = None,
    ) -> List[Partner]:
        """
        Active partners of the lead's service type that have weekly capacity
        left and cover the lead's location.

        Partners already holding an assignment on the lead are skipped.
        """
        current_week = week_start(now)
        already_offered = {a.partner_id for a in lead.assignments}

        candidates = (
            self.session.query(Partner)
            .filter(
                Partner.status == PartnerStatus.ACTIVE.value,
                Partner.service_type == enum_value(lead.service_type),
            )
            .order_by(Partner.id)
            .all()
        )

        eligible = []
        for partner in candidates:
            if partner.id in already_offered:
                continue
            if self._is_eligible(partner, lead, settings, current_week):
                eligible.append(partner)

        LOGGER.info(
            f"Lead {lead.id}: {len(eligible)} of {len(candidates)} partners eligible",
            extra={"lead_id": lead.id},
        )
        return eligible

    def _is_eligible(
        self,
        partner: Partner,
        lead: Lead,
        settings: SettingsSnapshot,
        current_week: date,
    ) -> bool:
        try:
            preferences = ServicePreferences.for_partner(partner, lead.service_type)
            if preferences is None or not preferences.service_area:
                LOGGER.debug(f"Partner {partner.id} excluded: no service area configured")
                return False

            quota = preferences.weekly_quota(settings.default_weekly_quota)
            received = partner.weekly_leads_for(current_week)
            if received >= quota:
                LOGGER.debug(f"Partner {partner.id} excluded: weekly quota {received}/{quota} reached")
                return False

            return self.resolver.is_eligible(partner, lead, lead.service_type)
        except (GeoError, ValueError) as e:
            # pydantic's ValidationError is a ValueError
            LOGGER.warning(
                f"Partner {partner.id} excluded from lead {lead.id}: {e}",
                extra={"lead_id": lead.id, "partner_id": partner.id},
            )
            return False


__all__ = ["EligibilityFilter"]
