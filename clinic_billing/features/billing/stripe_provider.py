"""
Stripe billing provider implementation.

Implements the BillingProvider protocol with a per-instance StripeClient,
so no module-level API key is set.
"""
import os
from typing import Dict, Any, Optional
import stripe

from clinic_billing.features.billing.errors import BillingProviderError
from clinic_billing.features.billing.events import TENANT_METADATA_KEY, subscription_period_end
from clinic_billing.features.billing.provider import ProviderSubscription


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, client: Optional[stripe.StripeClient] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY env var)
            client: Prebuilt StripeClient (tests, custom HTTP settings)
        """
        if client is not None:
            self.client = client
            return

        self.secret_key = secret_key or os.getenv("STRIPE_SECRET_KEY")
        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        self.client = stripe.StripeClient(self.secret_key)

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        """Fetch a subscription and normalize it."""
        try:
            subscription = self.client.subscriptions.retrieve(subscription_ref)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe subscription retrieval failed: {e}")

        data: Dict[str, Any] = subscription.to_dict()
        customer = data.get("customer")
        if isinstance(customer, dict):
            customer = customer.get("id")

        return ProviderSubscription(
            subscription_ref=data.get("id") or subscription_ref,
            status=data.get("status") or "",
            current_period_end=subscription_period_end(data),
            customer_ref=customer,
            tenant_id=(data.get("metadata") or {}).get(TENANT_METADATA_KEY),
        )

    def create_checkout_session(
        self,
        *,
        tenant_id: str,
        price_id: str,
        success_url: str,
        cancel_url: str,
        customer_email: Optional[str] = None,
        customer_ref: Optional[str] = None,
        trial_days: Optional[int] = None,
    ) -> str:
        """Create Stripe checkout session in subscription mode."""
        subscription_data: Dict[str, Any] = {"metadata": {TENANT_METADATA_KEY: tenant_id}}
        if trial_days:
            subscription_data["trial_period_days"] = trial_days

        params: Dict[str, Any] = {
            "mode": "subscription",
            "payment_method_types": ["card"],
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": tenant_id,
            "metadata": {TENANT_METADATA_KEY: tenant_id},
            "subscription_data": subscription_data,
        }
        # Stripe accepts either an existing customer or an email, not both
        if customer_ref:
            params["customer"] = customer_ref
        elif customer_email:
            params["customer_email"] = customer_email

        try:
            session = self.client.checkout.sessions.create(params=params)
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe checkout session creation failed: {e}")
        return session.url

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create Stripe billing portal session."""
        try:
            session = self.client.billing_portal.sessions.create(
                params={"customer": customer_ref, "return_url": return_url}
            )
        except stripe.StripeError as e:
            raise BillingProviderError(f"Stripe portal session creation failed: {e}")
        return session.url
