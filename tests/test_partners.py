"""Tests for partner configuration, scoring and metrics."""
from __future__ import annotations

from datetime import timedelta

import pytest

from conftest import BERLIN, NOW, city_area
from core.exceptions import LeadNotFoundError, PartnerNotFoundError, ValidationError
from core.utils import week_start
from domain.service_area import ServiceAreaResolver
from services.partners import PartnerService


@pytest.fixture
def service(db_session) -> PartnerService:
    return PartnerService(db_session)


class TestConfigureServiceArea:
    """Test service-area configuration."""

    def test_whole_country(self, service, make_partner, make_lead):
        partner = make_partner(preferences={})
        service.configure_service_area(partner.id, "de")

        assert partner.preferences["moving"]["service_area"]["Germany"] == {"type": "country", "cities": {}}
        assert ServiceAreaResolver().is_eligible(partner, make_lead()) is True

    def test_cities_with_reference_coordinates(self, service, make_partner):
        partner = make_partner(preferences={})
        service.configure_service_area(partner.id, "Germany", mode="cities", cities={"Berlin": {"radius": 25}})

        berlin = partner.preferences["moving"]["service_area"]["Germany"]["cities"]["Berlin"]
        assert berlin["radius"] == 25
        assert (berlin["coordinates"]["lat"], berlin["coordinates"]["lng"]) == BERLIN

    def test_explicit_coordinates_kept(self, service, make_partner):
        partner = make_partner(preferences={})
        cities = {"Kleinstadt": {"radius": 5, "coordinates": {"lat": 50.0, "lng": 10.0}}}
        service.configure_service_area(partner.id, "Germany", mode="cities", cities=cities)
        stored = partner.preferences["moving"]["service_area"]["Germany"]["cities"]["Kleinstadt"]
        assert stored["coordinates"] == {"lat": 50.0, "lng": 10.0}

    def test_keeps_other_countries_and_quota(self, service, make_partner):
        partner = make_partner(preferences=city_area(quota=4))
        service.configure_service_area(partner.id, "AT")

        prefs = partner.preferences["moving"]
        assert set(prefs["service_area"]) == {"Germany", "Austria"}
        assert prefs["average_leads_per_week"] == 4

    def test_unknown_city_without_coordinates(self, service, make_partner):
        partner = make_partner(preferences={})
        with pytest.raises(ValidationError):
            service.configure_service_area(partner.id, "Germany", mode="cities", cities={"Atlantis": {"radius": 5}})

    @pytest.mark.parametrize("kwargs", [
        {"mode": "region"},
        {"mode": "cities", "cities": {}},
        {"mode": "cities", "cities": {"Berlin": {"radius": -5}}},
    ])
    def test_invalid_area(self, service, make_partner, kwargs):
        partner = make_partner(preferences={})
        with pytest.raises(ValidationError):
            service.configure_service_area(partner.id, "Germany", **kwargs)

    def test_unknown_partner(self, service):
        with pytest.raises(PartnerNotFoundError):
            service.configure_service_area(999999, "Germany")


class TestPartnerScore:
    """Test partner scoring."""

    def test_new_basic_partner(self, service, make_partner, settings_snapshot):
        # 0.5 * 40 + 15 + 0 + 0 + 10
        assert service.calculate_partner_score(make_partner(), settings_snapshot, NOW) == 45

    def test_strong_exclusive_partner(self, service, make_partner, settings_snapshot):
        partner = make_partner(
            partner_type="exclusive",
            weekly_leads=5,
            total_leads_received=10,
            total_leads_accepted=9,
            rating=5.0,
            average_response_time=1.0,
        )
        # 36 + 20 + 20 + 10 + 5
        assert service.calculate_partner_score(partner, settings_snapshot, NOW) == 91

    def test_slow_response_and_full_quota(self, service, make_partner, settings_snapshot):
        partner = make_partner(
            weekly_leads=12,
            total_leads_received=4,
            total_leads_accepted=1,
            average_response_time=10.0,
        )
        # 10 + 15 + 0 + 5 + 0
        assert service.calculate_partner_score(partner, settings_snapshot, NOW) == 30

    def test_settings_loaded_when_omitted(self, service, make_partner):
        assert service.calculate_partner_score(make_partner(), now=NOW) == 45


class TestRecommendations:
    """Test partner recommendations for a lead."""

    def test_ranked_by_score(self, service, make_partner, make_lead):
        average = make_partner()
        best = make_partner(partner_type="exclusive", rating=4.5, average_response_time=0.25)
        make_partner(preferences={})

        recommendations = service.get_recommendations(make_lead().id, now=NOW)

        assert [r.partner for r in recommendations] == [best, average]
        assert recommendations[0].reasons == [
            "Exclusive partner",
            "Excellent rating",
            "Fast response time",
            "Serves the lead's area",
        ]
        assert recommendations[0].to_dict()["partner_id"] == best.id

    def test_limit(self, service, make_partner, make_lead):
        for _ in range(5):
            make_partner()
        assert len(service.get_recommendations(make_lead().id, limit=3, now=NOW)) == 3

    def test_ties_broken_by_id(self, service, make_partner, make_lead):
        first, second = make_partner(), make_partner()
        recommendations = service.get_recommendations(make_lead().id, now=NOW)
        assert [r.partner.id for r in recommendations] == [first.id, second.id]

    def test_unknown_lead(self, service):
        with pytest.raises(LeadNotFoundError):
            service.get_recommendations(999999)


class TestPerformance:
    """Test performance summaries and weekly resets."""

    def test_summary(self, service, make_partner):
        partner = make_partner(
            preferences=city_area(quota=6),
            weekly_leads=2,
            total_leads_received=8,
            total_leads_accepted=6,
            total_leads_cancelled=1,
        )
        summary = service.get_performance_summary(partner.id, now=NOW)

        assert summary["acceptance_rate"] == 75.0
        assert summary["weekly_quota"] == 6
        assert summary["weekly_leads_received"] == 2
        assert summary["remaining_capacity"] == 4
        assert summary["total_leads_cancelled"] == 1

    def test_summary_next_week(self, service, make_partner):
        partner = make_partner(weekly_leads=9)
        summary = service.get_performance_summary(partner.id, now=NOW + timedelta(days=7))
        assert summary["weekly_leads_received"] == 0
        assert summary["remaining_capacity"] == 10

    def test_reset_weekly_counters(self, service, make_partner):
        partners = [make_partner(weekly_leads=n) for n in (3, 7)]
        next_week = NOW + timedelta(days=7)

        assert service.reset_weekly_counters(now=next_week) >= 2
        for partner in partners:
            assert partner.weekly_leads_received == 0
            assert partner.week_start_date == week_start(next_week)
