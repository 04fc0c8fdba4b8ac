"""
Test checkout, portal, and status flows (service and routes).
"""
import time

import jwt
import pytest

from clinic_billing.core.config import settings
from clinic_billing.core.errors import NotFoundError
from clinic_billing.features.billing.errors import BillingProviderError
from clinic_billing.features.billing.service import (
    get_billing_status,
    register_tenant,
    start_checkout,
    start_portal,
)
from clinic_billing.models.entitlement import PlanTier, SubscriptionStatus
from clinic_billing.tests.mocks import days

JWT_SECRET = "test-jwt-secret-0123456789abcdef0123"


def _token(sub="T1", audience="authenticated", expires_in=3600):
    claims = {"sub": sub, "aud": audience, "exp": int(time.time()) + expires_in}
    return jwt.encode(claims, JWT_SECRET, algorithm="HS256")


def test_start_checkout_passes_tenant_price_and_trial(fake_provider, store):
    url = start_checkout("T1", "owner@clinic.test", provider=fake_provider, store=store)

    assert url == "https://checkout.stripe.test/c/session_1"
    call = fake_provider.checkout_calls[0]
    assert call["tenant_id"] == "T1"
    assert call["price_id"] == "price_pro_monthly"
    assert call["customer_email"] == "owner@clinic.test"
    assert call["customer_ref"] is None
    assert call["trial_days"] == settings.STRIPE_TRIAL_DAYS
    assert call["success_url"].endswith("/dashboard?success=true")
    assert call["cancel_url"].endswith("/?canceled=true")


def test_start_checkout_reuses_stored_customer(fake_provider, store):
    store.upsert("T1", {"billing_customer_ref": "cus_1"})

    start_checkout("T1", "owner@clinic.test", provider=fake_provider, store=store)

    call = fake_provider.checkout_calls[0]
    assert call["customer_ref"] == "cus_1"
    assert call["customer_email"] is None


def test_start_checkout_requires_price(fake_provider, store, monkeypatch):
    monkeypatch.delenv("STRIPE_PRICE_ID", raising=False)
    monkeypatch.setattr(settings, "STRIPE_PRICE_ID", None)

    with pytest.raises(BillingProviderError):
        start_checkout("T1", "owner@clinic.test", provider=fake_provider, store=store)


def test_start_portal_requires_customer(fake_provider, store):
    with pytest.raises(NotFoundError):
        start_portal("T1", provider=fake_provider, store=store)


def test_start_portal_uses_stored_customer(fake_provider, store):
    store.upsert("T1", {"billing_customer_ref": "cus_1"})

    url = start_portal("T1", provider=fake_provider, store=store)

    assert url == "https://billing.stripe.test/p/session_1"
    assert fake_provider.portal_calls[0]["customer_ref"] == "cus_1"
    assert fake_provider.portal_calls[0]["return_url"].endswith("/dashboard")


def test_register_tenant_creates_default(store):
    entitlement = register_tenant("T1", store=store)

    assert entitlement.status == SubscriptionStatus.NONE
    assert entitlement.plan_tier == PlanTier.BASIC


def test_billing_status_for_unknown_tenant_is_default(store):
    status = get_billing_status("T404", store=store)

    assert status == {
        "enabled": False,
        "status": "none",
        "plan_tier": "basic",
        "period_end": None,
        "has_customer": False,
    }


# Routes

def test_checkout_route(client, fake_provider):
    resp = client.post("/api/checkout", json={"email": "owner@clinic.test"}, headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 200
    assert resp.json() == {"url": "https://checkout.stripe.test/c/session_1"}
    assert fake_provider.checkout_calls[0]["tenant_id"] == "T1"


def test_checkout_route_registers_tenant(client, store):
    client.post("/api/checkout", json={"email": "owner@clinic.test"}, headers={"X-Tenant-Id": "T1"})

    assert store.get("T1").status == SubscriptionStatus.NONE


def test_checkout_route_requires_auth(client):
    resp = client.post("/api/checkout", json={"email": "owner@clinic.test"})

    assert resp.status_code == 401
    assert resp.json()["error"]["code"] == "unauthorized"


def test_checkout_route_validates_body(client):
    resp = client.post("/api/checkout", json={}, headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 422


def test_checkout_route_maps_provider_error_to_502(client, fake_provider):
    fake_provider.fail_with = BillingProviderError("card_declined")

    resp = client.post("/api/checkout", json={"email": "owner@clinic.test"}, headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 502
    assert resp.json()["error"]["code"] == "upstream_error"


def test_checkout_route_when_billing_disabled(client):
    from clinic_billing.main import app
    from clinic_billing.features.billing.service import get_provider

    app.dependency_overrides[get_provider] = lambda: None

    resp = client.post("/api/checkout", json={"email": "owner@clinic.test"}, headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 503
    assert resp.json()["error"]["code"] == "billing_disabled"


def test_portal_route_without_customer_is_404(client):
    resp = client.post("/api/portal", headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 404
    assert resp.json()["error"]["code"] == "not_found"


def test_portal_route(client, store):
    store.upsert("T1", {"billing_customer_ref": "cus_1"})

    resp = client.post("/api/portal", headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 200
    assert resp.json()["url"] == "https://billing.stripe.test/p/session_1"


def test_status_route(client, store):
    store.upsert("T1", {
        "billing_customer_ref": "cus_1",
        "billing_subscription_ref": "sub_1",
        "status": SubscriptionStatus.ACTIVE,
        "plan_tier": PlanTier.PRO,
        "period_end": days(30),
    })

    resp = client.get("/api/billing/status", headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "active"
    assert body["plan_tier"] == "pro"
    assert body["has_customer"] is True
    assert body["period_end"].startswith("2026-10-31")


def test_status_route_with_session_jwt(client, monkeypatch):
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", JWT_SECRET)

    resp = client.get("/api/billing/status", headers={"Authorization": f"Bearer {_token('T5')}"})

    assert resp.status_code == 200
    assert resp.json()["status"] == "none"


@pytest.mark.parametrize("token", [
    lambda: _token(expires_in=-60),
    lambda: _token(audience="anon"),
    lambda: jwt.encode({"sub": "T1", "aud": "authenticated"}, "another-jwt-secret-0123456789abcdef", algorithm="HS256"),
    lambda: "not-a-jwt",
])
def test_invalid_session_jwt_is_rejected(client, monkeypatch, token):
    monkeypatch.setattr(settings, "SUPABASE_JWT_SECRET", JWT_SECRET)

    resp = client.get("/api/billing/status", headers={"Authorization": f"Bearer {token()}"})

    assert resp.status_code == 401


def test_tenant_header_rejected_in_production(client, monkeypatch):
    monkeypatch.setattr(settings, "ENV", "production")

    resp = client.get("/api/billing/status", headers={"X-Tenant-Id": "T1"})

    assert resp.status_code == 401
