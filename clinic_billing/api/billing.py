"""
Billing API routes.

Minimal surface:
- POST /api/checkout: Create checkout session
- POST /api/portal: Create portal session
- GET  /api/billing/status: Get tenant billing status
"""
from typing import Optional
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from clinic_billing.core.auth import get_current_tenant_id
from clinic_billing.core.errors import BillingDisabledError, ServiceUnavailableError, UpstreamError
from clinic_billing.features.billing.errors import BillingProviderError, StoreUnavailable
from clinic_billing.features.billing.provider import BillingProvider
from clinic_billing.features.billing.service import (
    get_provider,
    start_checkout,
    start_portal,
    get_billing_status,
)


router = APIRouter(tags=["billing"])


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    email: str = Field(..., min_length=3, max_length=320)


class SessionUrlResponse(BaseModel):
    """Response with a hosted Stripe page URL."""
    url: str


class BillingStatusResponse(BaseModel):
    """Tenant billing status."""
    enabled: bool
    status: str
    plan_tier: str
    period_end: Optional[str]  # ISO8601
    has_customer: bool


@router.post("/checkout", response_model=SessionUrlResponse)
async def create_checkout(
    request: CheckoutRequest,
    tenant_id: str = Depends(get_current_tenant_id),
    provider: Optional[BillingProvider] = Depends(get_provider),
):
    """
    Create Stripe checkout session for the pro plan (with trial).

    Errors:
        401: Not authenticated
        503: Billing disabled or store unavailable
        502: Stripe API error
    """
    try:
        url = start_checkout(tenant_id, request.email, provider=provider)
    except BillingProviderError as e:
        raise UpstreamError(str(e))
    except StoreUnavailable as e:
        raise ServiceUnavailableError(str(e), code=e.code)
    if not url:
        raise BillingDisabledError()
    return {"url": url}


@router.post("/portal", response_model=SessionUrlResponse)
async def create_portal(
    tenant_id: str = Depends(get_current_tenant_id),
    provider: Optional[BillingProvider] = Depends(get_provider),
):
    """
    Create Stripe billing portal session.

    Errors:
        401: Not authenticated
        404: Tenant never checked out
        503: Billing disabled or store unavailable
        502: Stripe API error
    """
    try:
        url = start_portal(tenant_id, provider=provider)
    except BillingProviderError as e:
        raise UpstreamError(str(e))
    except StoreUnavailable as e:
        raise ServiceUnavailableError(str(e), code=e.code)
    if not url:
        raise BillingDisabledError()
    return {"url": url}


@router.get("/billing/status", response_model=BillingStatusResponse)
async def get_status(tenant_id: str = Depends(get_current_tenant_id)):
    """Get the tenant's entitlement as seen by the access gate."""
    try:
        status = get_billing_status(tenant_id)
    except StoreUnavailable as e:
        raise ServiceUnavailableError(str(e), code=e.code)

    period_end_str = None
    if status["period_end"]:
        period_end_str = status["period_end"].isoformat()

    return {
        "enabled": status["enabled"],
        "status": status["status"],
        "plan_tier": status["plan_tier"],
        "period_end": period_end_str,
        "has_customer": status["has_customer"],
    }
