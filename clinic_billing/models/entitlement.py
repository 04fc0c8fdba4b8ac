"""
clinic_billing/models/entitlement.py

Entitlement model: the locally cached belief about a tenant's paid access.

One record per tenant. Read by the access gate, written only by billing
reconciliation.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict


class SubscriptionStatus(str, Enum):
    NONE = "none"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class PlanTier(str, Enum):
    BASIC = "basic"
    PRO = "pro"


# past_due keeps pro while the provider retries the payment
_PRO_STATUSES = {
    SubscriptionStatus.TRIALING,
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
}


def plan_tier_for(status: SubscriptionStatus) -> PlanTier:
    """Plan tier is derived from status, never set independently."""
    return PlanTier.PRO if status in _PRO_STATUSES else PlanTier.BASIC


class Entitlement(BaseModel):
    """
    Entitlement record for a tenant.

    Invariants:
    - status == canceled implies plan_tier == basic and period_end is None
    - billing_subscription_ref is None exactly when status == none
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    billing_customer_ref: Optional[str] = None
    billing_subscription_ref: Optional[str] = None
    status: SubscriptionStatus = SubscriptionStatus.NONE
    plan_tier: PlanTier = PlanTier.BASIC
    period_end: Optional[datetime] = None
    last_event_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
