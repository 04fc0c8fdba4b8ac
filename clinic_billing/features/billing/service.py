"""
Billing service orchestrator.

Coordinates:
- Webhook processing (verify -> classify -> reconcile)
- Checkout and billing portal sessions
- Billing status reads and lazy entitlement creation

All Stripe-specific code is in stripe_provider.py. The provider and the
store are parameters so callers (routes, jobs, tests) choose them.
"""
import hashlib
import os
from dataclasses import dataclass
from typing import Optional, Dict, Any

from clinic_billing.core.config import settings
from clinic_billing.core.errors import NotFoundError
from clinic_billing.core.logging import log_event
from clinic_billing.features.billing.errors import (
    BillingProviderError,
    DuplicateEvent,
    InvalidSignature,
    MalformedEvent,
    MissingCorrelation,
)
from clinic_billing.features.billing.events import classify, parse_envelope
from clinic_billing.features.billing.provider import BillingProvider
from clinic_billing.features.billing.reconcile import (
    EventContext,
    Outcome,
    ReconcileOutcome,
    ReconciliationEngine,
)
from clinic_billing.features.billing.signature import verify_event
from clinic_billing.features.billing.store import EntitlementStore
from clinic_billing.features.billing.stripe_provider import StripeProvider
from clinic_billing.models.entitlement import Entitlement


@dataclass(frozen=True)
class WebhookResult:
    event_id: str
    event_type: str
    outcome: ReconcileOutcome


def billing_enabled() -> bool:
    """Billing is on whenever a Stripe secret key is configured."""
    return bool(os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)


def get_webhook_secret() -> Optional[str]:
    return os.getenv("STRIPE_WEBHOOK_SECRET") or settings.STRIPE_WEBHOOK_SECRET


def get_provider() -> Optional[BillingProvider]:
    """FastAPI dependency: the Stripe provider, or None while billing is off."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider(secret_key=os.getenv("STRIPE_SECRET_KEY") or settings.STRIPE_SECRET_KEY)
    except BillingProviderError:
        return None


def strict_ordering_enabled() -> bool:
    raw = os.getenv("BILLING_STRICT_ORDERING")
    if raw is not None:
        return raw.strip().lower() in ("1", "true", "yes")
    return settings.BILLING_STRICT_ORDERING


def process_webhook_event(
    body: bytes,
    signature_header: Optional[str],
    *,
    secret: str,
    provider: Optional[BillingProvider],
    store: Optional[EntitlementStore] = None,
    strict_ordering: Optional[bool] = None,
) -> WebhookResult:
    """
    Process one billing webhook delivery.

    1. Verify signature over the raw body
    2. Decode the envelope and skip events already in the ledger
    3. Classify into a lifecycle transition
    4. Apply it (single store transaction)

    Raises:
        InvalidSignature / MalformedEvent / MissingCorrelation: reject, do not retry
        StoreUnavailable / BillingProviderError: transient, provider should retry
    """
    try:
        event = verify_event(
            body,
            signature_header,
            secret,
            tolerance=settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS,
        )
        envelope = parse_envelope(event)
    except InvalidSignature as e:
        log_event("warning", "billing.webhook.invalid_signature", error_code=e.code, extra={"reason": str(e)})
        raise
    except MalformedEvent as e:
        log_event("warning", "billing.webhook.malformed", error_code=e.code, extra={"reason": str(e)})
        raise

    store = store or EntitlementStore()
    if store.has_processed(envelope.event_id):
        log_event(
            "info",
            "billing.webhook.duplicate",
            event_id=envelope.event_id,
            event_type=envelope.event_type,
        )
        return WebhookResult(envelope.event_id, envelope.event_type, ReconcileOutcome(Outcome.DUPLICATE))

    try:
        transition = classify(envelope)
    except MissingCorrelation as e:
        # Retrying cannot supply the missing identifier
        log_event(
            "error",
            "billing.webhook.missing_correlation",
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            error_code=e.code,
            extra={"reason": str(e)},
        )
        raise

    engine = ReconciliationEngine(
        store,
        provider,
        strict_ordering=strict_ordering_enabled() if strict_ordering is None else strict_ordering,
    )
    context = EventContext(
        event_id=envelope.event_id,
        event_type=envelope.event_type,
        occurred_at=envelope.occurred_at,
        payload_hash=hashlib.sha256(body).hexdigest(),
    )
    try:
        outcome = engine.apply(transition, event=context)
    except DuplicateEvent:
        log_event(
            "info",
            "billing.webhook.duplicate",
            event_id=envelope.event_id,
            event_type=envelope.event_type,
            extra={"reason": "concurrent delivery committed first"},
        )
        outcome = ReconcileOutcome(Outcome.DUPLICATE)

    return WebhookResult(envelope.event_id, envelope.event_type, outcome)


def start_checkout(
    tenant_id: str,
    email: Optional[str],
    *,
    provider: Optional[BillingProvider],
    store: Optional[EntitlementStore] = None,
) -> Optional[str]:
    """
    Start a subscription checkout for a tenant.

    Returns:
        Hosted checkout URL, or None while billing is off

    Raises:
        BillingProviderError: provider rejected the call, or STRIPE_PRICE_ID is unset
    """
    if provider is None:
        return None

    price_id = os.getenv("STRIPE_PRICE_ID") or settings.STRIPE_PRICE_ID
    if not price_id:
        raise BillingProviderError("STRIPE_PRICE_ID not configured")

    store = store or EntitlementStore()
    entitlement = store.get(tenant_id)
    customer_ref = entitlement.billing_customer_ref if entitlement else None

    app_url = settings.APP_URL.rstrip("/")
    url = provider.create_checkout_session(
        tenant_id=tenant_id,
        price_id=price_id,
        success_url=f"{app_url}/dashboard?success=true",
        cancel_url=f"{app_url}/?canceled=true",
        customer_email=None if customer_ref else email,
        customer_ref=customer_ref,
        trial_days=settings.STRIPE_TRIAL_DAYS or None,
    )
    log_event("info", "billing.checkout.created", tenant_id=tenant_id)
    return url


def start_portal(
    tenant_id: str,
    *,
    provider: Optional[BillingProvider],
    store: Optional[EntitlementStore] = None,
) -> Optional[str]:
    """
    Open the hosted billing portal for a tenant that already has a customer.

    Returns:
        Hosted portal URL, or None while billing is off

    Raises:
        NotFoundError: tenant never completed a checkout
        BillingProviderError: provider rejected the call
    """
    if provider is None:
        return None

    store = store or EntitlementStore()
    entitlement = store.get(tenant_id)
    if entitlement is None or not entitlement.billing_customer_ref:
        raise NotFoundError("Billing customer not found. Complete checkout first.")

    return provider.create_portal_session(
        customer_ref=entitlement.billing_customer_ref,
        return_url=f"{settings.APP_URL.rstrip('/')}/dashboard",
    )


def register_tenant(tenant_id: str, store: Optional[EntitlementStore] = None) -> Entitlement:
    """Create the tenant's default entitlement (status=none) if missing."""
    return (store or EntitlementStore()).ensure_default(tenant_id)


def get_billing_status(tenant_id: str, store: Optional[EntitlementStore] = None) -> Dict[str, Any]:
    """Entitlement summary for the dashboard; unknown tenants read as status "none"."""
    entitlement = (store or EntitlementStore()).get(tenant_id) or Entitlement(tenant_id=tenant_id)
    return {
        "enabled": billing_enabled(),
        "status": entitlement.status.value,
        "plan_tier": entitlement.plan_tier.value,
        "period_end": entitlement.period_end,
        "has_customer": entitlement.billing_customer_ref is not None,
    }
