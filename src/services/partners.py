"""Partner management: service areas, scoring, recommendations and metrics."""
from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from core.exceptions import LeadNotFoundError, PartnerNotFoundError, ValidationError
from core.locations import lookup_city_coordinates, normalize_country
from core.logging_config import get_logger
from core.models import Lead, Partner, PartnerType
from core.types import SettingsSnapshot
from core.utils import week_start
from domain import partner_metrics
from domain.eligibility import EligibilityFilter
from domain.service_area import CountryArea, ServicePreferences
from services.settings_store import SettingsStore

LOGGER = get_logger(__name__)

# Acceptance rate assumed for partners that have not received a lead yet
NEW_PARTNER_ACCEPTANCE_RATE = 0.5


@dataclass
class PartnerRecommendation:
    """A scored candidate for a lead."""

    partner: Partner
    score: int
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "partner_id": self.partner.id,
            "partner_number": self.partner.partner_number,
            "company_name": self.partner.company_name,
            "partner_type": self.partner.partner_type,
            "score": self.score,
            "reasons": self.reasons,
        }


class PartnerService:
    """Service for partner configuration and performance."""

    def __init__(self, session: Session, settings_store: Optional[SettingsStore] = None):
        """Initialize the partner service."""
        self.session = session
        self.settings_store = settings_store or SettingsStore(session)

    def get_partner(self, partner_id: int) -> Partner:
        partner = self.session.get(Partner, partner_id)
        if partner is None:
            raise PartnerNotFoundError(f"Partner {partner_id} not found")
        return partner

    def _weekly_quota(self, partner: Partner, settings: SettingsSnapshot) -> int:
        try:
            preferences = ServicePreferences.for_partner(partner, partner.service_type)
        except ValueError:
            preferences = None
        if preferences is None:
            return settings.default_weekly_quota
        return preferences.weekly_quota(settings.default_weekly_quota)

    # -------------------------------------------------------------------------
    # Service area
    # -------------------------------------------------------------------------

    def configure_service_area(
        self,
        partner_id: int,
        country: str,
        mode: str = "country",
        cities: Optional[Mapping[str, Mapping[str, Any]]] = None,
    ) -> Partner:
        """
        Set the partner's coverage for one country.

        Args:
            partner_id: Partner to configure.
            country: Country name or two-letter code.
            mode: "country" for the whole country, "cities" for named cities.
            cities: {city: {"radius": km, "coordinates": {"lat", "lng"}}}.
                Missing coordinates are filled from the reference table.

        Returns:
            The updated partner.

        Raises:
            ValidationError: Unknown city without coordinates, or invalid values.
        """
        partner = self.get_partner(partner_id)
        country_name = normalize_country(country)
        if not country_name:
            raise ValidationError("Country is required")

        resolved_cities: Dict[str, Dict[str, Any]] = {}
        for city, config in (cities or {}).items():
            config = dict(config or {})
            if not config.get("coordinates"):
                point = lookup_city_coordinates(city)
                if point is None:
                    raise ValidationError(f"No reference coordinates for {city}; supply them explicitly")
                config["coordinates"] = point.as_dict()
            resolved_cities[city] = config

        try:
            area = CountryArea.model_validate({"type": mode, "cities": resolved_cities})
            preferences = ServicePreferences.for_partner(partner, partner.service_type) or ServicePreferences()
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid service area: {e.errors()}") from e
        except ValueError as e:
            raise ValidationError(f"Invalid service area: {e}") from e

        if area.type == "cities" and not area.cities:
            raise ValidationError("City mode needs at least one city")

        preferences.service_area[country_name] = area
        all_preferences = copy.deepcopy(partner.preferences or {})
        all_preferences[partner.service_type] = preferences.model_dump(exclude_none=True)
        partner.preferences = all_preferences
        self.session.flush()

        LOGGER.info(
            f"Partner {partner_id} now serves {country_name} ({area.type}, {len(area.cities)} cities)",
            extra={"partner_id": partner_id},
        )
        return partner

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def calculate_partner_score(
        self,
        partner: Partner,
        settings: Optional[SettingsSnapshot] = None,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Score a partner from 0 to 100.

        Acceptance rate 40, tier 20/15, rating 20, response time 10,
        remaining weekly capacity 10.
        """
        settings = settings or self.settings_store.get_snapshot()
        score = 0.0

        if partner.total_leads_received:
            acceptance = partner.total_leads_accepted / partner.total_leads_received
        else:
            acceptance = NEW_PARTNER_ACCEPTANCE_RATE
        score += acceptance * 40

        score += 20 if partner.partner_type == PartnerType.EXCLUSIVE.value else 15

        score += ((partner.rating or 0) / 5) * 20

        response = partner.average_response_time
        if response is not None and response <= 2:
            score += 10
        elif response is not None and response <= 24:
            score += 5

        quota = self._weekly_quota(partner, settings)
        if quota > 0:
            received = partner.weekly_leads_for(week_start(now))
            score += max(0.0, (quota - received) / quota) * 10

        return round(score)

    def recommendation_reasons(self, partner: Partner) -> List[str]:
        reasons = []
        if partner.partner_type == PartnerType.EXCLUSIVE.value:
            reasons.append("Exclusive partner")
        if partner.total_leads_received and partner.acceptance_rate >= 80:
            reasons.append("High acceptance rate")
        if (partner.rating or 0) >= 4:
            reasons.append("Excellent rating")
        if partner.average_response_time is not None and partner.average_response_time <= 0.5:
            reasons.append("Fast response time")
        reasons.append("Serves the lead's area")
        return reasons

    def get_recommendations(
        self,
        lead_id: int,
        limit: int = 3,
        now: Optional[datetime] = None,
    ) -> List[PartnerRecommendation]:
        """
        Best-scoring eligible partners for a lead.

        Args:
            lead_id: Lead to recommend partners for.
            limit: Maximum number of recommendations.
        """
        settings = self.settings_store.get_snapshot()
        lead = self.session.get(Lead, lead_id)
        if lead is None:
            raise LeadNotFoundError(f"Lead {lead_id} not found")

        eligible = EligibilityFilter(self.session).find_eligible_partners(lead, settings, now)
        scored = [
            PartnerRecommendation(
                partner=partner,
                score=self.calculate_partner_score(partner, settings, now),
                reasons=self.recommendation_reasons(partner),
            )
            for partner in eligible
        ]
        scored.sort(key=lambda r: (-r.score, r.partner.id))
        return scored[:limit]

    # -------------------------------------------------------------------------
    # Metrics
    # -------------------------------------------------------------------------

    def get_performance_summary(self, partner_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Acceptance, volume and capacity figures for a partner."""
        settings = self.settings_store.get_snapshot()
        partner = self.get_partner(partner_id)
        quota = self._weekly_quota(partner, settings)
        weekly = partner.weekly_leads_for(week_start(now))

        return {
            "partner_id": partner.id,
            "partner_number": partner.partner_number,
            "company_name": partner.company_name,
            "partner_type": partner.partner_type,
            "service_type": partner.service_type,
            "total_leads_received": partner.total_leads_received,
            "total_leads_accepted": partner.total_leads_accepted,
            "total_leads_cancelled": partner.total_leads_cancelled,
            "acceptance_rate": partner.acceptance_rate,
            "average_response_time_hours": partner.average_response_time,
            "rating": partner.rating,
            "total_revenue": partner.total_revenue,
            "weekly_leads_received": weekly,
            "weekly_quota": quota,
            "remaining_capacity": max(0, quota - weekly),
        }

    def reset_weekly_counters(self, now: Optional[datetime] = None) -> int:
        """Zero all weekly lead counters. Returns the number of partners reset."""
        return partner_metrics.reset_weekly_counters(self.session, now)


def get_partner_service(session: Session) -> PartnerService:
    """Get a PartnerService instance."""
    return PartnerService(session)


__all__ = [
    "NEW_PARTNER_ACCEPTANCE_RATE",
    "PartnerRecommendation",
    "PartnerService",
    "get_partner_service",
]
