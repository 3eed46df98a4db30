"""Tests for income reporting."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import NOW, country_area
from core.types import BillingPeriod
from services.income import IncomeReporter

MARCH = BillingPeriod.for_month(2025, 3)


@pytest.fixture
def reporter(db_session) -> IncomeReporter:
    return IncomeReporter(db_session)


class TestIncomeReporter:
    """Test income aggregation over accepted assignments."""

    def test_empty_period(self, reporter):
        summary = reporter.calculate_income_for_period(MARCH)
        assert summary.total_income == 0.0
        assert summary.total_leads == 0
        assert summary.average_lead_price == 0.0
        assert summary.by_partner == []

    def test_totals_and_breakdowns(self, reporter, make_partner, make_lead, make_accepted):
        mover = make_partner()
        exclusive_mover = make_partner(partner_type="exclusive")
        cleaner = make_partner(service_type="cleaning", preferences=country_area(service_type="cleaning"))

        make_accepted(make_lead(), mover, price=25.0)
        make_accepted(make_lead(), mover, price=25.0)
        make_accepted(make_lead(), exclusive_mover, price=30.0)
        make_accepted(make_lead(service_type="cleaning"), cleaner, price=15.0)

        summary = reporter.calculate_income_for_period(MARCH)

        assert summary.total_income == 95.0
        assert summary.total_leads == 4
        assert summary.average_lead_price == 23.75
        assert summary.by_service_type["moving"] == {"income": 80.0, "leads": 3, "avg_price": 26.67}
        assert summary.by_service_type["cleaning"] == {"income": 15.0, "leads": 1, "avg_price": 15.0}
        assert [p["partner_id"] for p in summary.by_partner] == [mover.id, exclusive_mover.id, cleaner.id]

    def test_only_accepted_in_period(self, reporter, db_session, make_partner, make_lead, make_accepted):
        partner = make_partner()
        make_accepted(make_lead(), partner)
        make_accepted(make_lead(), partner, accepted_at=datetime(2025, 4, 1, tzinfo=timezone.utc))
        cancelled = make_accepted(make_lead(), partner)
        cancelled.status = "cancelled"
        db_session.flush()

        summary = reporter.calculate_income_for_period(MARCH)
        assert summary.total_leads == 1
        assert summary.total_income == 25.0

    def test_period_bounds_inclusive(self, reporter, make_partner, make_lead, make_accepted):
        partner = make_partner()
        make_accepted(make_lead(), partner, accepted_at=MARCH.start)
        make_accepted(make_lead(), partner, accepted_at=MARCH.end)
        make_accepted(make_lead(), partner, accepted_at=MARCH.start - timedelta(seconds=1))
        assert reporter.calculate_income_for_period(MARCH).total_leads == 2

    def test_filters(self, reporter, make_partner, make_lead, make_accepted):
        first, second = make_partner(), make_partner()
        make_accepted(make_lead(), first, price=25.0)
        make_accepted(make_lead(), second, price=25.0)

        assert reporter.calculate_income_for_period(MARCH, partner_id=first.id).total_leads == 1
        assert reporter.calculate_income_for_period(MARCH, service_type="cleaning").total_leads == 0

    def test_reported_prices_are_frozen(self, reporter, db_session, make_partner, make_lead, make_accepted):
        from services.settings_store import SettingsStore

        make_accepted(make_lead(), make_partner(), price=25.0)
        SettingsStore(db_session).update_pricing("moving", "basic", 99.0)
        assert reporter.calculate_income_for_period(MARCH).total_income == 25.0

    def test_to_dict(self, reporter, make_partner, make_lead, make_accepted):
        make_accepted(make_lead(), make_partner(), accepted_at=NOW)
        data = reporter.calculate_income_for_period(MARCH).to_dict()
        assert data["period"]["start"].startswith("2025-03-01")
        assert data["total_income"] == 25.0
        assert data["by_partner"][0]["avg_price"] == 25.0
