"""
Test POST /api/webhooks end to end.

Covers the response contract the provider relies on: 200 with an empty body
when handled, 400 for deliveries a retry cannot fix, 5xx when it can.
"""
from contextlib import contextmanager

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

import clinic_billing.features.billing.store as store_module
from clinic_billing.core.database import billing_events, get_db_session
from clinic_billing.features.billing.errors import BillingProviderError
from clinic_billing.models.entitlement import PlanTier, SubscriptionStatus
from clinic_billing.tests.mocks import (
    checkout_event,
    days,
    encode,
    invoice_event,
    signed_headers,
    subscription_event,
)


def _post(client, event, headers=None):
    body = encode(event)
    return client.post("/api/webhooks", content=body, headers=headers or signed_headers(body))


def _ledger_count():
    with get_db_session() as session:
        return session.execute(select(func.count()).select_from(billing_events)).scalar()


def test_checkout_webhook_grants_pro(client, store, fake_provider):
    fake_provider.set_subscription("sub_1", "trialing", period_end=days(7), customer_ref="cus_1")

    resp = _post(client, checkout_event())

    assert resp.status_code == 200
    assert resp.content == b""
    entitlement = store.get("T1")
    assert entitlement.status == SubscriptionStatus.TRIALING
    assert entitlement.plan_tier == PlanTier.PRO
    assert entitlement.billing_customer_ref == "cus_1"


def test_lifecycle_over_http(client, store, fake_provider):
    fake_provider.set_subscription("sub_1", "trialing", period_end=days(7), customer_ref="cus_1")
    assert _post(client, checkout_event()).status_code == 200

    fake_provider.set_subscription("sub_1", "active", period_end=days(37), customer_ref="cus_1")
    assert _post(client, subscription_event(status="active", period_end=days(37), event_id="evt_2")).status_code == 200
    assert store.get("T1").status == SubscriptionStatus.ACTIVE

    assert _post(client, invoice_event(event_id="evt_3")).status_code == 200
    assert store.get("T1").period_end == days(37)

    deleted = subscription_event("customer.subscription.deleted", status="canceled", event_id="evt_4")
    assert _post(client, deleted).status_code == 200
    entitlement = store.get("T1")
    assert entitlement.status == SubscriptionStatus.CANCELED
    assert entitlement.plan_tier == PlanTier.BASIC
    assert entitlement.period_end is None


def test_tampered_body_returns_400_and_leaves_store_untouched(client, store, fake_provider):
    fake_provider.set_subscription("sub_1", "active", period_end=days(30))
    body = encode(checkout_event())
    headers = signed_headers(body)
    forged = encode(checkout_event(tenant_id="T_attacker"))

    resp = client.post("/api/webhooks", content=forged, headers=headers)

    assert resp.status_code == 400
    assert resp.text.startswith("Webhook Error:")
    assert store.get("T_attacker") is None
    assert _ledger_count() == 0
    assert fake_provider.retrieve_calls == []


def test_missing_signature_returns_400(client):
    resp = client.post("/api/webhooks", content=encode(checkout_event()), headers={"Content-Type": "application/json"})

    assert resp.status_code == 400


def test_stale_signature_timestamp_returns_400(client):
    body = encode(checkout_event())

    resp = client.post("/api/webhooks", content=body, headers=signed_headers(body, timestamp=1_000_000_000))

    assert resp.status_code == 400


def test_missing_tenant_returns_400(client, store):
    resp = _post(client, checkout_event(metadata={}))

    assert resp.status_code == 400
    assert "tenant" in resp.text
    assert _ledger_count() == 0


def test_malformed_envelope_returns_400(client):
    resp = _post(client, {"object": "event"})

    assert resp.status_code == 400


def test_unknown_event_type_returns_200(client, store):
    event = subscription_event(event_id="evt_other")
    event["type"] = "customer.created"

    resp = _post(client, event)

    assert resp.status_code == 200
    assert store.get("T1") is None
    assert store.has_processed("evt_other")


def test_unknown_subscription_returns_200_without_change(client, store):
    store.upsert("T1", {"billing_subscription_ref": "sub_1", "status": SubscriptionStatus.ACTIVE, "plan_tier": PlanTier.PRO})

    resp = _post(client, subscription_event(subscription="sub_unknown", status="past_due"))

    assert resp.status_code == 200
    assert store.get("T1").status == SubscriptionStatus.ACTIVE


def test_duplicate_delivery_is_applied_once(client, store, fake_provider):
    fake_provider.set_subscription("sub_1", "trialing", period_end=days(7), customer_ref="cus_1")
    event = checkout_event(event_id="evt_dup")

    first = _post(client, event)
    fake_provider.set_subscription("sub_1", "active", period_end=days(37), customer_ref="cus_1")
    second = _post(client, event)

    assert first.status_code == 200
    assert second.status_code == 200
    assert _ledger_count() == 1
    # Redelivery is skipped, so the provider's newer answer is not consulted
    assert fake_provider.retrieve_calls == ["sub_1"]
    assert store.get("T1").status == SubscriptionStatus.TRIALING


def test_provider_failure_returns_500(client, store, fake_provider):
    fake_provider.fail_with = BillingProviderError("Stripe unavailable")

    resp = _post(client, checkout_event())

    assert resp.status_code == 500
    assert resp.text == "Server Error: provider_error"
    assert store.get("T1") is None
    assert _ledger_count() == 0


def test_store_failure_returns_500(client, monkeypatch):
    @contextmanager
    def broken_session():
        raise OperationalError("SELECT 1", {}, Exception("connection refused"))
        yield  # pragma: no cover

    monkeypatch.setattr(store_module, "get_db_session", broken_session)

    resp = _post(client, checkout_event())

    assert resp.status_code == 500
    assert resp.text == "Server Error: store_unavailable"


def test_webhook_secret_not_configured_returns_503(client, monkeypatch):
    from clinic_billing.core.config import settings

    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", None)

    resp = _post(client, checkout_event())

    assert resp.status_code == 503


def test_webhook_info(client):
    resp = client.get("/api/webhooks")

    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Webhook online"
    assert body["monitored_events"] == [
        "checkout.session.completed",
        "customer.subscription.updated",
        "invoice.payment_succeeded",
        "customer.subscription.deleted",
    ]
