"""Pytest configuration and fixtures."""
from __future__ import annotations

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
if str(src_path) not in sys.path:
    sys.path.insert(0, str(src_path))

# Set test environment
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("DRY_RUN", "true")
os.environ.setdefault("ENVIRONMENT", "test")

from core.db import Base
from core.models import Lead, Partner, PartnerAssignment, AssignmentStatus
from core.types import SettingsSnapshot
from core.utils import week_start
from services.settings_store import DEFAULT_PRICING


SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

# A Wednesday; its week starts Monday 2025-03-10
NOW = datetime(2025, 3, 12, 10, 0, tzinfo=timezone.utc)

BERLIN = (52.52, 13.405)
POTSDAM = (52.3906, 13.0645)
MUNICH = (48.1351, 11.582)
HAMBURG = (53.5511, 9.9937)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture(scope="session")
def engine():
    """Create a test database engine."""
    engine = create_engine(
        SQLALCHEMY_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


@pytest.fixture(scope="session")
def tables(engine):
    """Create all tables for testing."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(engine, tables) -> Session:
    """
    Returns a SQLAlchemy session for testing.

    Each test gets a fresh transaction that is rolled back after the test.
    Commits inside the code under test only release a savepoint.
    """
    connection = engine.connect()
    transaction = connection.begin()

    TestingSession = sessionmaker(
        autoflush=False,
        bind=connection,
        join_transaction_mode="create_savepoint",
    )
    session = TestingSession()

    yield session

    session.close()
    transaction.rollback()
    connection.close()


# =============================================================================
# Builders
# =============================================================================


def city_area(
    country: str = "Germany",
    cities: Optional[Dict[str, Tuple[float, float, float]]] = None,
    quota: Optional[int] = None,
    service_type: str = "moving",
) -> Dict[str, Any]:
    """Partner preferences serving `cities` ({name: (lat, lng, radius_km)}) in one country."""
    cities = cities if cities is not None else {"Berlin": (*BERLIN, 30)}
    prefs: Dict[str, Any] = {
        "service_area": {
            country: {
                "type": "cities",
                "cities": {
                    name: {"radius": radius, "coordinates": {"lat": lat, "lng": lng}}
                    for name, (lat, lng, radius) in cities.items()
                },
            }
        }
    }
    if quota is not None:
        prefs["average_leads_per_week"] = quota
    return {service_type: prefs}


def country_area(country: str = "Germany", service_type: str = "moving") -> Dict[str, Any]:
    """Partner preferences serving a whole country."""
    return {service_type: {"service_area": {country: {"type": "country", "cities": {}}}}}


def address(city: str = "Berlin", country: str = "Germany", coords: Optional[Tuple[float, float]] = BERLIN):
    data: Dict[str, Any] = {"city": city, "country": country}
    if coords is not None:
        data["coordinates"] = {"lat": coords[0], "lng": coords[1]}
    return data


def moving_form(pickup: Optional[dict] = None, destination: Optional[dict] = None, **extra) -> Dict[str, Any]:
    form = {"pickup_address": pickup if pickup is not None else address()}
    if destination is not None:
        form["destination_address"] = destination
    form.update(extra)
    return form


@pytest.fixture
def settings_snapshot() -> SettingsSnapshot:
    """Default business settings."""
    return SettingsSnapshot(pricing=DEFAULT_PRICING)


@pytest.fixture
def make_partner(db_session):
    """Factory for active partners; defaults to a basic Berlin moving partner."""
    counter = {"n": 0}

    def _make(
        partner_type: str = "basic",
        service_type: str = "moving",
        preferences: Optional[dict] = None,
        weekly_leads: int = 0,
        status: str = "active",
        **fields: Any,
    ) -> Partner:
        counter["n"] += 1
        partner = Partner(
            company_name=fields.pop("company_name", f"Partner {counter['n']}"),
            service_type=service_type,
            partner_type=partner_type,
            status=status,
            preferences=preferences if preferences is not None else city_area(service_type=service_type),
            weekly_leads_received=weekly_leads,
            week_start_date=week_start(NOW),
            **fields,
        )
        db_session.add(partner)
        db_session.flush()
        return partner

    return _make


@pytest.fixture
def make_lead(db_session):
    """Factory for leads; defaults to a moving lead picked up in Berlin."""

    def _make(service_type: str = "moving", form_data: Optional[dict] = None, **fields: Any) -> Lead:
        if form_data is None:
            form_data = moving_form() if service_type == "moving" else {"service_address": address()}
        lead = Lead(service_type=service_type, form_data=form_data, **fields)
        db_session.add(lead)
        db_session.flush()
        return lead

    return _make


@pytest.fixture
def make_accepted(db_session):
    """Factory attaching an accepted assignment to a lead."""

    def _make(lead: Lead, partner: Partner, price: float = 25.0, accepted_at: datetime = NOW) -> PartnerAssignment:
        assignment = PartnerAssignment(
            lead_id=lead.id,
            partner_id=partner.id,
            status=AssignmentStatus.ACCEPTED.value,
            lead_price=price,
            partner_type=partner.partner_type,
            assigned_at=accepted_at,
            accepted_at=accepted_at,
        )
        db_session.add(assignment)
        db_session.flush()
        db_session.expire(lead, ["assignments"])
        return assignment

    return _make
