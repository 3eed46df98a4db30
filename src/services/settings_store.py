"""Persisted business settings (pricing, tax, limits).

A single PlatformSettings row holds what administrators edit at runtime.
It is created with defaults the first time anything reads it. Engines never
read the row mid-operation; they take one SettingsSnapshot up front.
"""
from __future__ import annotations

import copy
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from core.exceptions import ValidationError
from core.logging_config import get_logger
from core.models import PartnerType, PlatformSettings, ServiceType
from core.types import SettingsSnapshot
from core.utils import enum_value, round_money
from services.audit_log import AuditAction, AuditLogService

LOGGER = get_logger(__name__)

SETTINGS_ROW_ID = 1

DEFAULT_PRICING: Dict[str, Dict[str, float]] = {
    ServiceType.MOVING.value: {PartnerType.BASIC.value: 25.0, PartnerType.EXCLUSIVE.value: 30.0},
    ServiceType.CLEANING.value: {PartnerType.BASIC.value: 15.0, PartnerType.EXCLUSIVE.value: 20.0},
}


class SystemSettings(BaseModel):
    """System constants editable by administrators."""

    model_config = ConfigDict(extra="forbid")

    currency: str = Field(default="EUR", min_length=3, max_length=3)
    tax_rate: float = Field(default=19.0, ge=0, le=100)
    basic_partner_lead_limit: int = Field(default=3, ge=1)
    cancellation_time_limit: float = Field(default=2, ge=0)  # hours
    default_weekly_quota: int = Field(default=10, ge=0)
    lead_accept_timeout: float = Field(default=24, gt=0)  # hours


class SettingsStore:
    """
    Read and update the platform settings singleton.

    Usage:
        snapshot = SettingsStore(session).get_snapshot()
        price = snapshot.price_for("moving", "exclusive")
    """

    def __init__(self, session: Session):
        """Initialize the settings store."""
        self.session = session
        self.audit = AuditLogService(session)

    def get_settings(self) -> PlatformSettings:
        """
        Return the settings row, creating it with defaults if absent.

        Returns:
            The PlatformSettings singleton.
        """
        row = self.session.get(PlatformSettings, SETTINGS_ROW_ID)
        if row is None:
            row = PlatformSettings(
                id=SETTINGS_ROW_ID,
                pricing=copy.deepcopy(DEFAULT_PRICING),
                system=SystemSettings().model_dump(),
            )
            self.session.add(row)
            self.session.flush()
            LOGGER.info("Created platform settings with defaults")
        return row

    def get_snapshot(self) -> SettingsSnapshot:
        """
        Capture the current settings for one logical operation.

        Stored values missing from the row fall back to their defaults.
        """
        row = self.get_settings()
        system = SystemSettings.model_validate({**SystemSettings().model_dump(), **(row.system or {})})

        pricing = copy.deepcopy(DEFAULT_PRICING)
        for service_type, tiers in (row.pricing or {}).items():
            pricing.setdefault(service_type, {}).update(tiers or {})

        return SettingsSnapshot(
            pricing=pricing,
            currency=system.currency,
            tax_rate=system.tax_rate,
            basic_partner_lead_limit=system.basic_partner_lead_limit,
            cancellation_time_limit_hours=system.cancellation_time_limit,
            default_weekly_quota=system.default_weekly_quota,
            lead_accept_timeout_hours=system.lead_accept_timeout,
        )

    def update_pricing(self, service_type: Any, partner_type: Any, per_lead_price: float) -> PlatformSettings:
        """
        Set the per-lead price for a service and tier.

        Applies to assignments made from now on; existing assignments keep
        the price they were made at.

        Raises:
            ValidationError: Unknown service type or tier, or a negative price.
        """
        service_type, partner_type = enum_value(service_type), enum_value(partner_type)
        if service_type not in {s.value for s in ServiceType}:
            raise ValidationError(f"Unknown service type: {service_type}")
        if partner_type not in {t.value for t in PartnerType}:
            raise ValidationError(f"Unknown partner type: {partner_type}")
        if per_lead_price is None or per_lead_price < 0:
            raise ValidationError(f"Lead price must be zero or positive, got {per_lead_price}")

        row = self.get_settings()
        pricing = copy.deepcopy(row.pricing or {})
        pricing.setdefault(service_type, {})[partner_type] = round_money(per_lead_price)
        row.pricing = pricing
        self.session.flush()

        LOGGER.info(
            f"Lead price for {service_type}/{partner_type} set to {pricing[service_type][partner_type]}",
            extra={"extra_data": {"service_type": service_type, "partner_type": partner_type}},
        )
        self.audit.create_log(
            action=AuditAction.SETTINGS_UPDATED,
            message=f"Lead price for {service_type}/{partner_type} set to {pricing[service_type][partner_type]}",
            actor_type="admin",
            actor_name="admin",
            service_type=service_type,
            details={"partner_type": partner_type, "per_lead_price": pricing[service_type][partner_type]},
        )
        return row

    def update_system(self, **values: Any) -> PlatformSettings:
        """
        Update system constants (tax_rate, basic_partner_lead_limit, ...).

        Raises:
            ValidationError: Unknown key or out-of-range value.
        """
        row = self.get_settings()
        merged = {**SystemSettings().model_dump(), **(row.system or {}), **values}
        try:
            system = SystemSettings.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid system settings: {e.errors()}") from e

        row.system = system.model_dump()
        self.session.flush()
        LOGGER.info(f"System settings updated: {sorted(values)}")
        self.audit.create_log(
            action=AuditAction.SETTINGS_UPDATED,
            message=f"System settings updated: {', '.join(sorted(values))}",
            actor_type="admin",
            actor_name="admin",
            details={key: row.system[key] for key in values},
        )
        return row

    def to_dict(self) -> Dict[str, Any]:
        row = self.get_settings()
        return {"pricing": row.pricing, "system": row.system}


def get_settings_store(session: Session) -> SettingsStore:
    """Get a SettingsStore instance."""
    return SettingsStore(session)


__all__ = [
    "DEFAULT_PRICING",
    "SystemSettings",
    "SettingsStore",
    "get_settings_store",
]
