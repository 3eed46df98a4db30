"""Invoicing routes."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_billing
from core.logging_config import get_logger
from core.types import BillingPeriod
from services.billing import BillingAggregator

router = APIRouter()
LOGGER = get_logger(__name__)


# =============================================================================
# Pydantic Models
# =============================================================================


class InvoiceRequest(BaseModel):
    """Request body for invoicing one partner."""

    partner_id: int
    service_type: str = Field(..., description="moving or cleaning")
    start_date: date
    end_date: date
    selected_lead_ids: Optional[List[int]] = Field(
        None, description="Bill only these leads; omit to bill every unbilled lead"
    )
    price_overrides: Optional[Dict[int, float]] = Field(None, description="lead_id -> billed amount")
    notes: Optional[str] = None


class BulkInvoiceRequest(BaseModel):
    """Request body for invoicing every billing-ready partner."""

    service_type: str
    start_date: date
    end_date: date


class InvoiceStatusUpdate(BaseModel):
    status: str = Field(..., description="sent, paid, overdue or cancelled")


# =============================================================================
# Routes
# =============================================================================


@router.post("/invoices", status_code=201)
def create_invoice(
    body: InvoiceRequest,
    billing: BillingAggregator = Depends(get_billing),
) -> Dict[str, Any]:
    """Invoice a partner's accepted leads for a period."""
    invoice = billing.generate_invoice(
        partner_id=body.partner_id,
        service_type=body.service_type,
        period=BillingPeriod.from_dates(body.start_date, body.end_date),
        selected_lead_ids=body.selected_lead_ids,
        price_overrides=body.price_overrides,
        notes=body.notes,
    )
    return invoice.to_dict()


@router.post("/invoices/bulk", status_code=201)
def create_bulk_invoices(
    body: BulkInvoiceRequest,
    billing: BillingAggregator = Depends(get_billing),
) -> Dict[str, Any]:
    """Invoice every billing-ready partner of a service type."""
    invoices = billing.generate_bulk_invoices(
        body.service_type,
        BillingPeriod.from_dates(body.start_date, body.end_date),
    )
    return {
        "count": len(invoices),
        "total": round(sum(invoice.total for invoice in invoices), 2),
        "items": [invoice.to_dict() for invoice in invoices],
    }


@router.get("/ready-partners")
def get_ready_partners(
    service_type: str = Query(..., description="moving or cleaning"),
    start_date: date = Query(...),
    end_date: date = Query(...),
    billing: BillingAggregator = Depends(get_billing),
) -> Dict[str, Any]:
    """Partners with unbilled accepted leads in the period."""
    ready = billing.get_billing_ready_partners(service_type, BillingPeriod.from_dates(start_date, end_date))
    return {"items": [entry.to_dict() for entry in ready], "total": len(ready)}


@router.get("/summary")
def get_billing_summary(
    service_type: str = Query(...),
    start_date: date = Query(...),
    end_date: date = Query(...),
    billing: BillingAggregator = Depends(get_billing),
) -> Dict[str, Any]:
    """Unbilled and invoiced figures plus income for the period."""
    return billing.get_billing_summary(service_type, BillingPeriod.from_dates(start_date, end_date))


@router.put("/invoices/{invoice_id}/status")
def update_invoice_status(
    invoice_id: int,
    body: InvoiceStatusUpdate,
    billing: BillingAggregator = Depends(get_billing),
) -> Dict[str, Any]:
    """Move an invoice to sent, paid, overdue or cancelled."""
    invoice = billing.mark_invoice_status(invoice_id, body.status)
    return invoice.to_dict()
