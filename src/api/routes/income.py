"""Income reporting routes."""
from __future__ import annotations

from datetime import date
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from api.deps import get_income_reporter
from core.types import BillingPeriod
from services.income import IncomeReporter

router = APIRouter()


@router.get("")
def get_income(
    start_date: date = Query(...),
    end_date: date = Query(...),
    service_type: Optional[str] = Query(default=None),
    partner_id: Optional[int] = Query(default=None),
    reporter: IncomeReporter = Depends(get_income_reporter),
) -> Dict[str, Any]:
    """Income from accepted leads, by service type and by partner."""
    summary = reporter.calculate_income_for_period(
        BillingPeriod.from_dates(start_date, end_date),
        service_type=service_type,
        partner_id=partner_id,
    )
    return summary.to_dict()
