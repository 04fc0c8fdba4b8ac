"""Webhook signature verification for billing events.

Stripe signs each delivery over the exact bytes it sends
(``Stripe-Signature: t=<timestamp>,v1=<hex digest>``). The SDK checks the
signature and the timestamp tolerance; the body is decoded only afterwards.
"""
from __future__ import annotations

import json
from typing import Any, Dict, Optional

import stripe

from clinic_billing.features.billing.errors import InvalidSignature, MalformedEvent

SIGNATURE_HEADER = "Stripe-Signature"
DEFAULT_TOLERANCE_SECONDS = 300


def verify_event(
    payload: bytes,
    signature_header: Optional[str],
    secret: str,
    *,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> Dict[str, Any]:
    """Verify a webhook delivery and return the decoded event.

    stripe.Webhook.construct_event would wrap the result in a StripeObject;
    the classifier works on the plain JSON object, so this calls the SDK's
    verifier and decodes the body itself.

    Raises:
        InvalidSignature: header missing or malformed, timestamp outside the
            tolerance window, or no matching signature.
        MalformedEvent: a body that is not UTF-8, or a correctly signed body
            that is not a JSON object.
    """
    if not signature_header:
        raise InvalidSignature(f"Missing {SIGNATURE_HEADER} header")

    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError as e:
        raise MalformedEvent(f"Invalid payload: {e}")

    try:
        stripe.WebhookSignature.verify_header(text, signature_header, secret, tolerance)
    except stripe.SignatureVerificationError as e:
        raise InvalidSignature(f"Invalid signature: {e}")

    try:
        event = json.loads(text)
    except ValueError as e:
        raise MalformedEvent(f"Invalid payload: {e}")
    if not isinstance(event, dict):
        raise MalformedEvent("Invalid payload: event must be a JSON object")
    return event
