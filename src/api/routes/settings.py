"""Business settings routes (pricing, tax, limits)."""
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_settings_store
from core.logging_config import get_logger
from services.settings_store import SettingsStore

router = APIRouter()
LOGGER = get_logger(__name__)


class PricingUpdate(BaseModel):
    """Request body for a per-lead price change."""

    service_type: str
    partner_type: str
    per_lead_price: float = Field(..., ge=0)


class SystemUpdate(BaseModel):
    """Request body for system constants; omitted fields are left alone."""

    currency: Optional[str] = None
    tax_rate: Optional[float] = None
    basic_partner_lead_limit: Optional[int] = None
    cancellation_time_limit: Optional[float] = None
    default_weekly_quota: Optional[int] = None
    lead_accept_timeout: Optional[float] = None


@router.get("")
def get_platform_settings(store: SettingsStore = Depends(get_settings_store)) -> Dict[str, Any]:
    """Current pricing and system constants."""
    return store.to_dict()


@router.put("/pricing")
def update_pricing(
    body: PricingUpdate,
    store: SettingsStore = Depends(get_settings_store),
) -> Dict[str, Any]:
    """Set the per-lead price for a service and tier. Existing assignments keep their price."""
    store.update_pricing(body.service_type, body.partner_type, body.per_lead_price)
    return store.to_dict()


@router.put("/system")
def update_system(
    body: SystemUpdate,
    store: SettingsStore = Depends(get_settings_store),
) -> Dict[str, Any]:
    """Update system constants."""
    store.update_system(**body.model_dump(exclude_none=True))
    return store.to_dict()
