"""Database session and service dependencies for FastAPI routes."""
from __future__ import annotations

from typing import Generator

from fastapi import Depends
from sqlalchemy.orm import Session

from core.db import SessionLocal
from domain.assignment import LeadAssignmentCoordinator
from services.billing import BillingAggregator
from services.income import IncomeReporter
from services.partners import PartnerService
from services.settings_store import SettingsStore


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a database session.

    Commits when the request succeeds, rolls back when it raises.

    Yields:
        SQLAlchemy Session instance.
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_readonly_db() -> Generator[Session, None, None]:
    """
    FastAPI dependency that provides a session whose changes are discarded.

    Yields:
        SQLAlchemy Session instance (read-only mode).
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


def get_coordinator(db: Session = Depends(get_db)) -> LeadAssignmentCoordinator:
    return LeadAssignmentCoordinator(db)


def get_billing(db: Session = Depends(get_db)) -> BillingAggregator:
    return BillingAggregator(db)


def get_income_reporter(db: Session = Depends(get_readonly_db)) -> IncomeReporter:
    return IncomeReporter(db)


def get_partner_service(db: Session = Depends(get_readonly_db)) -> PartnerService:
    return PartnerService(db)


def get_settings_store(db: Session = Depends(get_db)) -> SettingsStore:
    return SettingsStore(db)


__all__ = [
    "get_db",
    "get_readonly_db",
    "get_coordinator",
    "get_billing",
    "get_income_reporter",
    "get_partner_service",
    "get_settings_store",
]
