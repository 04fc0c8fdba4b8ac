"""
Test the Stripe provider adapter with a mocked StripeClient (no real API calls).
"""
from unittest.mock import Mock

import pytest
import stripe

from clinic_billing.features.billing.errors import BillingProviderError
from clinic_billing.features.billing.stripe_provider import StripeProvider
from clinic_billing.tests.mocks import days, ts


@pytest.fixture
def stripe_client():
    return Mock()


@pytest.fixture
def provider(stripe_client):
    return StripeProvider(client=stripe_client)


def test_requires_secret_key(monkeypatch):
    monkeypatch.delenv("STRIPE_SECRET_KEY", raising=False)

    with pytest.raises(BillingProviderError):
        StripeProvider()


def test_builds_client_from_key():
    provider = StripeProvider(secret_key="sk_test_123")

    assert isinstance(provider.client, stripe.StripeClient)


def test_retrieve_subscription_normalizes_payload(provider, stripe_client):
    stripe_client.subscriptions.retrieve.return_value.to_dict.return_value = {
        "id": "sub_1",
        "status": "trialing",
        "customer": {"id": "cus_1", "object": "customer"},
        "metadata": {"tenant_id": "T1"},
        "items": {"data": [{"current_period_end": ts(days(7))}]},
    }

    subscription = provider.retrieve_subscription("sub_1")

    stripe_client.subscriptions.retrieve.assert_called_once_with("sub_1")
    assert subscription.subscription_ref == "sub_1"
    assert subscription.status == "trialing"
    assert subscription.current_period_end == days(7)
    assert subscription.customer_ref == "cus_1"
    assert subscription.tenant_id == "T1"


def test_retrieve_subscription_wraps_stripe_errors(provider, stripe_client):
    stripe_client.subscriptions.retrieve.side_effect = stripe.StripeError("No such subscription")

    with pytest.raises(BillingProviderError):
        provider.retrieve_subscription("sub_missing")


def test_checkout_session_params(provider, stripe_client):
    stripe_client.checkout.sessions.create.return_value.url = "https://checkout.stripe.com/c/1"

    url = provider.create_checkout_session(
        tenant_id="T1",
        price_id="price_pro",
        success_url="http://app/dashboard?success=true",
        cancel_url="http://app/?canceled=true",
        customer_email="owner@clinic.test",
        trial_days=7,
    )

    assert url == "https://checkout.stripe.com/c/1"
    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["mode"] == "subscription"
    assert params["line_items"] == [{"price": "price_pro", "quantity": 1}]
    assert params["client_reference_id"] == "T1"
    assert params["metadata"] == {"tenant_id": "T1"}
    assert params["subscription_data"] == {"metadata": {"tenant_id": "T1"}, "trial_period_days": 7}
    assert params["customer_email"] == "owner@clinic.test"
    assert "customer" not in params


def test_checkout_session_prefers_existing_customer(provider, stripe_client):
    provider.create_checkout_session(
        tenant_id="T1",
        price_id="price_pro",
        success_url="s",
        cancel_url="c",
        customer_email="owner@clinic.test",
        customer_ref="cus_1",
    )

    params = stripe_client.checkout.sessions.create.call_args.kwargs["params"]
    assert params["customer"] == "cus_1"
    assert "customer_email" not in params
    assert "trial_period_days" not in params["subscription_data"]


def test_portal_session(provider, stripe_client):
    stripe_client.billing_portal.sessions.create.return_value.url = "https://billing.stripe.com/p/1"

    url = provider.create_portal_session("cus_1", "http://app/dashboard")

    assert url == "https://billing.stripe.com/p/1"
    stripe_client.billing_portal.sessions.create.assert_called_once_with(
        params={"customer": "cus_1", "return_url": "http://app/dashboard"}
    )


def test_session_errors_are_wrapped(provider, stripe_client):
    stripe_client.checkout.sessions.create.side_effect = stripe.StripeError("boom")
    stripe_client.billing_portal.sessions.create.side_effect = stripe.StripeError("boom")

    with pytest.raises(BillingProviderError):
        provider.create_checkout_session(tenant_id="T1", price_id="p", success_url="s", cancel_url="c")
    with pytest.raises(BillingProviderError):
        provider.create_portal_session("cus_1", "r")
