"""Tests for the HTTP API."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from api.app import create_app
from api.deps import get_db, get_readonly_db
from core.models import PartnerAssignment

PERIOD = {"start_date": "2025-03-01", "end_date": "2025-03-31"}


@pytest.fixture
def client(db_session):
    """Test client whose requests all run in the test's transaction."""
    app = create_app()

    def override_db():
        yield db_session

    app.dependency_overrides[get_db] = override_db
    app.dependency_overrides[get_readonly_db] = override_db
    return TestClient(app)


class TestHealth:
    """Test health endpoints."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["dry_run"] is True

    def test_detailed(self, client):
        data = client.get("/health/detailed").json()
        assert data["checks"]["database"]["connected"] is True
        assert data["checks"]["notifications"]["live"] is False


class TestLeadRoutes:
    """Test assignment endpoints and error mapping."""

    def test_auto_assign(self, client, make_partner, make_lead):
        partner = make_partner()
        lead = make_lead()

        response = client.post(f"/leads/{lead.id}/auto-assign")

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["partner"]["id"] == partner.id
        assert data["assignment"]["lead_price"] == 25.0

    def test_auto_assign_without_partners(self, client, make_lead):
        data = client.post(f"/leads/{make_lead().id}/auto-assign").json()
        assert data["success"] is False
        assert data["failure"] == "no_eligible_partners"

    def test_unknown_lead_is_404(self, client):
        response = client.post("/leads/999999/auto-assign")
        assert response.status_code == 404
        assert response.json()["error"] == "not_found"

    def test_manual_assignment_and_duplicate(self, client, make_partner, make_lead):
        partner, lead = make_partner(), make_lead()
        url = f"/leads/{lead.id}/assignments"

        created = client.post(url, json={"partner_id": partner.id})
        assert created.status_code == 201
        assert created.json()["status"] == "pending"

        duplicate = client.post(url, json={"partner_id": partner.id})
        assert duplicate.status_code == 409
        assert duplicate.json()["error"] == "conflict"

    def test_inactive_partner_is_400(self, client, make_partner, make_lead):
        response = client.post(
            f"/leads/{make_lead().id}/assignments",
            json={"partner_id": make_partner(status="suspended").id},
        )
        assert response.status_code == 400
        assert response.json()["error"] == "validation_error"

    def test_accept_then_status(self, client, make_partner, make_lead):
        partner, lead = make_partner(), make_lead()
        client.post(f"/leads/{lead.id}/assignments", json={"partner_id": partner.id})

        response = client.put(f"/leads/{lead.id}/assignments/{partner.id}/status", json={"status": "accepted"})

        assert response.status_code == 200
        assert response.json()["status"] == "assigned"
        assert client.get(f"/leads/{lead.id}/status").json()["assignments"][0]["status"] == "accepted"

    def test_invalid_transition_is_409(self, client, make_partner, make_lead):
        partner, lead = make_partner(), make_lead()
        client.post(f"/leads/{lead.id}/assignments", json={"partner_id": partner.id})
        url = f"/leads/{lead.id}/assignments/{partner.id}/status"
        client.put(url, json={"status": "rejected", "reason": "Fully booked"})

        assert client.put(url, json={"status": "accepted"}).status_code == 409

    def test_cancellation_flow(self, client, make_partner, make_lead, make_accepted):
        partner, lead = make_partner(), make_lead()
        make_accepted(lead, partner, accepted_at=datetime.now(timezone.utc) - timedelta(minutes=30))
        base = f"/leads/{lead.id}/assignments/{partner.id}"

        short = client.put(f"{base}/status", json={"status": "cancellation_requested", "reason": "no"})
        assert short.status_code == 400

        requested = client.put(
            f"{base}/status",
            json={"status": "cancellation_requested", "reason": "Customer moved the date"},
        )
        assert requested.status_code == 200

        rejected = client.post(f"{base}/cancellation/reject", json={"reason": "Date change is not a cancellation"})
        assert rejected.status_code == 200
        assert rejected.json()["status"] == "accepted"
        assert rejected.json()["cancellation"]["rejected"] is True

    def test_expired_cancellation_window_is_409(self, client, make_partner, make_lead, make_accepted):
        partner, lead = make_partner(), make_lead()
        make_accepted(lead, partner, accepted_at=datetime.now(timezone.utc) - timedelta(hours=5))
        response = client.put(
            f"/leads/{lead.id}/assignments/{partner.id}/status",
            json={"status": "cancellation_requested", "reason": "Customer cancelled the move"},
        )
        assert response.status_code == 409

    def test_recommendations(self, client, make_partner, make_lead):
        best = make_partner(partner_type="exclusive")
        make_partner()
        data = client.get(f"/leads/{make_lead().id}/recommendations", params={"limit": 1}).json()
        assert [item["partner_id"] for item in data["items"]] == [best.id]


class TestBillingRoutes:
    """Test invoicing endpoints."""

    def test_invoice_flow(self, client, db_session, make_partner, make_lead, make_accepted):
        partner = make_partner()
        leads = [make_lead() for _ in range(3)]
        for lead in leads:
            make_accepted(lead, partner)

        ready = client.get("/billing/ready-partners", params={"service_type": "moving", **PERIOD}).json()
        assert ready["total"] == 1
        assert ready["items"][0]["total_amount"] == 75.0

        response = client.post("/billing/invoices", json={
            "partner_id": partner.id,
            "service_type": "moving",
            "selected_lead_ids": [leads[0].id, leads[2].id],
            "price_overrides": {str(leads[2].id): 20.0},
            **PERIOD,
        })
        assert response.status_code == 201
        invoice = response.json()
        assert invoice["subtotal"] == 45.0
        assert invoice["total"] == 53.55
        assert len(invoice["items"]) == 2

        sent = client.put(f"/billing/invoices/{invoice['id']}/status", json={"status": "sent"})
        assert sent.json()["status"] == "sent"
        assert client.put(f"/billing/invoices/{invoice['id']}/status", json={"status": "draft"}).status_code == 400

        unbilled = db_session.query(PartnerAssignment).filter_by(partner_id=partner.id, invoice_id=None).count()
        assert unbilled == 1

    def test_nothing_to_invoice_is_422(self, client, make_partner):
        response = client.post("/billing/invoices", json={
            "partner_id": make_partner().id,
            "service_type": "moving",
            **PERIOD,
        })
        assert response.status_code == 422
        assert response.json()["error"] == "no_leads_to_invoice"

    def test_inverted_period_is_400(self, client, make_partner):
        response = client.post("/billing/invoices", json={
            "partner_id": make_partner().id,
            "service_type": "moving",
            "start_date": "2025-03-31",
            "end_date": "2025-03-01",
        })
        assert response.status_code == 400

    def test_bulk(self, client, make_partner, make_lead, make_accepted):
        for _ in range(2):
            make_accepted(make_lead(), make_partner())
        data = client.post("/billing/invoices/bulk", json={"service_type": "moving", **PERIOD}).json()
        assert data["count"] == 2
        assert data["total"] == 59.5

    def test_summary(self, client, make_partner, make_lead, make_accepted):
        make_accepted(make_lead(), make_partner())
        data = client.get("/billing/summary", params={"service_type": "moving", **PERIOD}).json()
        assert data["unbilled"]["leads"] == 1
        assert data["income"]["total_income"] == 25.0


class TestIncomeAndSettingsRoutes:
    """Test income reporting and settings endpoints."""

    def test_income(self, client, make_partner, make_lead, make_accepted):
        partner = make_partner()
        make_accepted(make_lead(), partner, price=30.0)
        data = client.get("/income", params=PERIOD).json()
        assert data["total_income"] == 30.0
        assert data["by_partner"][0]["partner_id"] == partner.id

    def test_get_settings(self, client):
        data = client.get("/settings").json()
        assert data["pricing"]["moving"]["exclusive"] == 30.0
        assert data["system"]["tax_rate"] == 19.0

    def test_update_pricing(self, client):
        response = client.put("/settings/pricing", json={
            "service_type": "moving", "partner_type": "basic", "per_lead_price": 27.5,
        })
        assert response.status_code == 200
        assert response.json()["pricing"]["moving"]["basic"] == 27.5

    def test_negative_price_rejected(self, client):
        response = client.put("/settings/pricing", json={
            "service_type": "moving", "partner_type": "basic", "per_lead_price": -1,
        })
        assert response.status_code == 422

    def test_update_system(self, client):
        data = client.put("/settings/system", json={"basic_partner_lead_limit": 4}).json()
        assert data["system"]["basic_partner_lead_limit"] == 4
        assert client.put("/settings/system", json={"tax_rate": 120}).status_code == 400
