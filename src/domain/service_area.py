"""
Service-area eligibility.

Decides whether a lead falls inside a partner's configured service area.
Partner preferences are stored per service type:

    {"moving": {"service_area": {"Germany": {"type": "cities",
                                             "cities": {"Berlin": {"radius": 10,
                                                                   "coordinates": {"lat": 52.5, "lng": 13.4}}}},
                                 "Austria": {"type": "country", "cities": {}}},
                "average_leads_per_week": 8}}

Each country entry is either whole-country (match on the country name) or a
list of cities with a radius around each city's reference point. When the
lead carries no coordinates at all, city names are compared instead and the
decision is logged as a name fallback.
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable, Dict, Literal, Mapping, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from core.exceptions import InvalidCoordinateError
from core.locations import normalize_country
from core.logging_config import get_logger, log_match_decision
from core.models import Lead, Partner, ServiceType
from core.types import GeoPoint
from core.utils import enum_value
from domain.geo import is_within_radius

LOGGER = get_logger(__name__)


# =============================================================================
# Preference Models
# =============================================================================


class Coordinates(BaseModel):
    lat: float
    lng: float


class CityArea(BaseModel):
    """One served city: a reference point plus a radius in km."""

    radius: float = Field(default=0, ge=0)
    coordinates: Optional[Coordinates] = None

    def center(self, name: str) -> Optional[GeoPoint]:
        if self.coordinates is None:
            return None
        return GeoPoint(lat=self.coordinates.lat, lng=self.coordinates.lng, name=name)


class CountryArea(BaseModel):
    """A served country, either entirely or restricted to named cities."""

    type: Literal["country", "cities"] = "country"
    cities: Dict[str, CityArea] = Field(default_factory=dict)

    @property
    def has_cities(self) -> bool:
        return self.type == "cities" and bool(self.cities)


class ServicePreferences(BaseModel):
    """A partner's preferences for one service type."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    service_area: Dict[str, CountryArea] = Field(default_factory=dict, alias="serviceArea")
    average_leads_per_week: Optional[int] = Field(default=None, ge=0, alias="averageLeadsPerWeek")

    @classmethod
    def for_partner(cls, partner: Partner, service_type: Any) -> Optional["ServicePreferences"]:
        """
        Parse the partner's preferences for `service_type`.

        Returns None when nothing is configured for the service. Malformed
        preference data raises a ValueError (pydantic's ValidationError is one).
        """
        preferences = partner.preferences or {}
        if not isinstance(preferences, Mapping):
            raise ValueError(f"Preferences of partner {partner.id} are not an object: {type(preferences).__name__}")
        raw = preferences.get(enum_value(service_type))
        if not raw:
            return None
        return cls.model_validate(raw)

    def weekly_quota(self, default: int) -> int:
        if self.average_leads_per_week is None:
            return default
        return self.average_leads_per_week


# =============================================================================
# Lead Location Extraction
# =============================================================================


@dataclass(slots=True, frozen=True)
class LeadLocation:
    """Where a lead takes place, as far as its stored data tells."""

    points: Tuple[GeoPoint, ...] = ()
    city: Optional[str] = None
    country: Optional[str] = None


def _address(data: Any) -> Mapping[str, Any]:
    return data if isinstance(data, Mapping) else {}


def _point(address: Mapping[str, Any], label: str) -> Optional[GeoPoint]:
    name = f"{address.get('city') or 'unknown'} ({label})"
    return GeoPoint.from_mapping(address.get("coordinates"), name=name)


def _first(*values: Any) -> Optional[str]:
    for value in values:
        if value:
            return str(value)
    return None


def _moving_location(lead: Lead) -> LeadLocation:
    form = lead.form_data or {}
    pickup = _address(form.get("pickup_address"))
    destination = _address(form.get("destination_address"))
    points = tuple(
        p for p in (_point(pickup, "pickup"), _point(destination, "destination")) if p is not None
    )
    return LeadLocation(
        points=points,
        city=_first(pickup.get("city"), destination.get("city")),
        country=_first(pickup.get("country"), destination.get("country")),
    )


def _cleaning_location(lead: Lead) -> LeadLocation:
    form = lead.form_data or {}
    service = _address(form.get("service_address"))
    address = _address(form.get("address"))
    point = _point(service, "service") or _point(address, "service")
    return LeadLocation(
        points=(point,) if point else (),
        city=_first(service.get("city"), address.get("city")),
        country=_first(service.get("country"), address.get("country")),
    )


# Per-service extractors; a new service type needs an entry here
LOCATION_EXTRACTORS: Dict[str, Callable[[Lead], LeadLocation]] = {
    ServiceType.MOVING.value: _moving_location,
    ServiceType.CLEANING.value: _cleaning_location,
}


def extract_lead_location(lead: Lead, service_type: Any = None) -> LeadLocation:
    """
    Coordinates, city and country of a lead for the given service type.

    The legacy single `location` field fills whatever the form data lacks.
    """
    service_type = enum_value(service_type or lead.service_type)
    extractor = LOCATION_EXTRACTORS.get(service_type)
    found = extractor(lead) if extractor else LeadLocation()

    legacy = _address(lead.location)
    points = found.points
    if not points:
        legacy_point = _point(legacy, "legacy")
        points = (legacy_point,) if legacy_point else ()

    return LeadLocation(
        points=points,
        city=found.city or _first(legacy.get("city")),
        country=normalize_country(found.country or _first(legacy.get("country"))),
    )


# =============================================================================
# Resolver
# =============================================================================


class MatchMode(str, enum.Enum):
    RADIUS = "radius"
    COUNTRY = "country"
    NAME_FALLBACK = "name_fallback"


@dataclass(slots=True, frozen=True)
class AreaMatch:
    """Outcome of a service-area check."""

    eligible: bool
    mode: Optional[MatchMode] = None
    country: Optional[str] = None
    city: Optional[str] = None
    distance_km: Optional[float] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "eligible": self.eligible,
            "mode": self.mode.value if self.mode else None,
            "country": self.country,
            "city": self.city,
            "distance_km": self.distance_km,
            "reason": self.reason,
        }


def _names_overlap(a: Optional[str], b: Optional[str]) -> bool:
    """Case-insensitive substring match in either direction."""
    if not a or not b:
        return False
    a, b = a.strip().lower(), b.strip().lower()
    if not a or not b:
        return False
    return a in b or b in a


def _country_matches(configured: str, lead_country: Optional[str]) -> bool:
    return _names_overlap(normalize_country(configured), normalize_country(lead_country))


class ServiceAreaResolver:
    """Matches leads against partner service areas."""

    def evaluate(self, partner: Partner, lead: Lead, service_type: Any = None) -> AreaMatch:
        service_type = enum_value(service_type or lead.service_type)
        match = self._evaluate(partner, lead, service_type)
        log_match_decision(
            LOGGER,
            lead_id=lead.id,
            partner_id=partner.id,
            mode=match.mode.value if match.mode else None,
            eligible=match.eligible,
            service_type=service_type,
            country=match.country,
            city=match.city,
            distance_km=match.distance_km,
            reason=match.reason,
        )
        return match

    def is_eligible(self, partner: Partner, lead: Lead, service_type: Any = None) -> bool:
        return self.evaluate(partner, lead, service_type).eligible

    def _evaluate(self, partner: Partner, lead: Lead, service_type: str) -> AreaMatch:
        try:
            preferences = ServicePreferences.for_partner(partner, service_type)
        except ValueError as e:
            errors = e.errors() if isinstance(e, PydanticValidationError) else [str(e)]
            LOGGER.warning(
                f"Partner {partner.id} has malformed {service_type} preferences",
                extra={"extra_data": {"errors": errors}, "partner_id": partner.id},
            )
            return AreaMatch(eligible=False, reason="malformed service area preferences")

        if preferences is None or not preferences.service_area:
            return AreaMatch(eligible=False, reason="no service area configured")

        location = extract_lead_location(lead, service_type)
        if location.points:
            return self._match_coordinates(preferences, location)
        return self._match_names(preferences, location)

    def _match_coordinates(self, preferences: ServicePreferences, location: LeadLocation) -> AreaMatch:
        for country, area in preferences.service_area.items():
            if not area.has_cities:
                if _country_matches(country, location.country):
                    return AreaMatch(eligible=True, mode=MatchMode.COUNTRY, country=country)
                continue

            for city, city_area in area.cities.items():
                center = city_area.center(city)
                for point in location.points:
                    try:
                        check = is_within_radius(point, center, city_area.radius)
                    except InvalidCoordinateError as e:
                        LOGGER.debug(f"Skipping unusable coordinate {point.name}: {e}")
                        continue
                    if check.within_radius:
                        return AreaMatch(
                            eligible=True,
                            mode=MatchMode.RADIUS,
                            country=country,
                            city=city,
                            distance_km=check.distance_km,
                        )

        return AreaMatch(
            eligible=False,
            mode=MatchMode.RADIUS,
            reason="no configured city or country covers the lead",
        )

    def _match_names(self, preferences: ServicePreferences, location: LeadLocation) -> AreaMatch:
        for country, area in preferences.service_area.items():
            if not area.has_cities:
                if _country_matches(country, location.country):
                    return AreaMatch(eligible=True, mode=MatchMode.COUNTRY, country=country)
                continue

            for city in area.cities:
                if _names_overlap(city, location.city):
                    return AreaMatch(
                        eligible=True,
                        mode=MatchMode.NAME_FALLBACK,
                        country=country,
                        city=city,
                    )

        return AreaMatch(
            eligible=False,
            mode=MatchMode.NAME_FALLBACK,
            reason="lead has no coordinates and no configured name matches",
        )


__all__ = [
    "Coordinates",
    "CityArea",
    "CountryArea",
    "ServicePreferences",
    "LeadLocation",
    "LOCATION_EXTRACTORS",
    "extract_lead_location",
    "MatchMode",
    "AreaMatch",
    "ServiceAreaResolver",
]
