"""Shared dataclasses and type helpers."""
from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from typing import Any, Dict, Mapping, Optional

from core.exceptions import ConfigurationError, ValidationError
from core.utils import enum_value, ensure_aware, utcnow


@dataclass(slots=True, frozen=True)
class GeoPoint:
    """A latitude/longitude pair, optionally labelled for diagnostics."""

    lat: float
    lng: float
    name: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Any, name: Optional[str] = None) -> Optional["GeoPoint"]:
        """Build a point from a {"lat": .., "lng": ..} payload; None when either is absent."""
        if not isinstance(data, Mapping):
            return None
        lat, lng = data.get("lat"), data.get("lng")
        if lat is None or lng is None:
            return None
        return cls(lat=lat, lng=lng, name=name)

    def as_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lng": self.lng}


@dataclass(slots=True, frozen=True)
class BillingPeriod:
    """Inclusive [start, end] window over assignment acceptance times."""

    start: datetime
    end: datetime

    def __post_init__(self) -> None:
        start, end = ensure_aware(self.start), ensure_aware(self.end)
        if start is None or end is None:
            raise ValidationError("Billing period needs both a start and an end")
        if start > end:
            raise ValidationError(f"Billing period starts after it ends: {start} > {end}")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def from_dates(cls, start: date, end: date) -> "BillingPeriod":
        """Whole days from the first instant of `start` to the last instant of `end`."""
        return cls(
            start=datetime.combine(start, time.min, tzinfo=timezone.utc),
            end=datetime.combine(end, time.max, tzinfo=timezone.utc),
        )

    @classmethod
    def for_month(cls, year: int, month: int) -> "BillingPeriod":
        last_day = calendar.monthrange(year, month)[1]
        return cls.from_dates(date(year, month, 1), date(year, month, last_day))

    @classmethod
    def previous_month(cls, now: Optional[datetime] = None) -> "BillingPeriod":
        now = ensure_aware(now) or utcnow()
        year, month = (now.year, now.month - 1) if now.month > 1 else (now.year - 1, 12)
        return cls.for_month(year, month)

    def as_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}


@dataclass(slots=True, frozen=True)
class SettingsSnapshot:
    """
    Business settings captured once per logical operation.

    Eligibility, selection, status projection and billing all read from the
    same snapshot so a concurrent admin edit cannot split one operation
    across two price lists.
    """

    pricing: Mapping[str, Mapping[str, float]]
    currency: str = "EUR"
    tax_rate: float = 19.0
    basic_partner_lead_limit: int = 3
    cancellation_time_limit_hours: float = 2
    default_weekly_quota: int = 10
    lead_accept_timeout_hours: float = 24

    def price_for(self, service_type: str, partner_type: str) -> float:
        """Per-lead price for a service and partner tier."""
        try:
            price = self.pricing[enum_value(service_type)][enum_value(partner_type)]
        except KeyError as exc:
            raise ConfigurationError(
                f"No lead price configured for {enum_value(service_type)}/{enum_value(partner_type)}"
            ) from exc
        if price is None:
            raise ConfigurationError(
                f"No lead price configured for {enum_value(service_type)}/{enum_value(partner_type)}"
            )
        return float(price)


__all__ = ["GeoPoint", "BillingPeriod", "SettingsSnapshot"]
