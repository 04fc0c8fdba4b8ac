"""
Billing webhook route.

- POST /api/webhooks: Stripe event delivery
- GET  /api/webhooks: static liveness payload listing monitored events

Responses follow what the provider expects: 200 with an empty body when the
event was applied or deliberately not applied, 4xx text when the delivery
itself is bad, 5xx text when a retry may succeed.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import PlainTextResponse, Response

from clinic_billing.core.logging import log_event
from clinic_billing.features.billing.errors import (
    BillingProviderError,
    BillingWebhookError,
    StoreUnavailable,
)
from clinic_billing.features.billing.events import MONITORED_EVENT_TYPES
from clinic_billing.features.billing.provider import BillingProvider
from clinic_billing.features.billing.service import (
    get_provider,
    get_webhook_secret,
    process_webhook_event,
)
from clinic_billing.features.billing.signature import SIGNATURE_HEADER

logger = logging.getLogger("clinic_billing")

router = APIRouter(tags=["webhooks"])


@router.post("/webhooks")
async def receive_webhook(request: Request, provider: Optional[BillingProvider] = Depends(get_provider)):
    """
    Handle Stripe webhook events.

    Errors:
        400: Invalid signature, malformed event, or missing correlation id
        500: Entitlement store or Stripe unavailable (Stripe retries)
        503: Webhook secret not configured
    """
    secret = get_webhook_secret()
    if not secret:
        logger.error("billing.webhook.disabled: STRIPE_WEBHOOK_SECRET not configured")
        return PlainTextResponse("Webhook Error: billing webhooks not configured", status_code=503)

    # Raw bytes: the signature covers the body exactly as sent
    body = await request.body()

    try:
        result = process_webhook_event(
            body,
            request.headers.get(SIGNATURE_HEADER),
            secret=secret,
            provider=provider,
        )
    except BillingWebhookError as e:
        return PlainTextResponse(f"Webhook Error: {e}", status_code=e.http_status)
    except (StoreUnavailable, BillingProviderError) as e:
        log_event("error", "billing.webhook.failed", error_code=e.code, extra={"reason": str(e)})
        return PlainTextResponse(f"Server Error: {e.code}", status_code=e.http_status)

    log_event(
        "info",
        "billing.webhook.processed",
        tenant_id=result.outcome.tenant_id,
        event_id=result.event_id,
        event_type=result.event_type,
        extra={"outcome": result.outcome.outcome.value},
    )
    return Response(status_code=200)


@router.get("/webhooks")
async def webhook_info():
    """Informational, unauthenticated."""
    return {"message": "Webhook online", "monitored_events": list(MONITORED_EVENT_TYPES)}
