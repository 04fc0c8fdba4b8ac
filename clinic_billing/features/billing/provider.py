"""
What the billing backend needs from a payment provider.

StripeBillingProvider is the real implementation; tests pass an in-memory
fake. Callers receive the provider as an argument or a FastAPI dependency,
never from a module global.
"""
from typing import Protocol, Optional
from dataclasses import dataclass
from datetime import datetime

from clinic_billing.features.billing.errors import BillingProviderError


@dataclass(frozen=True)
class ProviderSubscription:
    """A subscription as the provider currently sees it."""
    subscription_ref: str
    status: str  # raw provider status: trialing, active, past_due, unpaid, canceled, ...
    current_period_end: Optional[datetime] = None
    customer_ref: Optional[str] = None
    tenant_id: Optional[str] = None  # echoed from checkout metadata


class BillingProvider(Protocol):
    """Subscription lookup plus hosted checkout and portal sessions.

    Every method raises BillingProviderError when the provider call fails.
    """

    def retrieve_subscription(self, subscription_ref: str) -> ProviderSubscription:
        """Current status and period end; the provider is the source of truth."""
        ...

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
        """Start a subscription checkout and return its hosted URL.

        tenant_id rides along as metadata and comes back on
        checkout.session.completed.
        """
        ...

    def create_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Hosted self-service portal URL for an existing customer."""
        ...


__all__ = ["BillingProvider", "BillingProviderError", "ProviderSubscription"]
