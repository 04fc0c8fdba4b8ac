"""
Billing event classification.

Decodes a verified provider event into one lifecycle transition:
- CheckoutCompleted: first successful checkout (trial start or payment)
- SubscriptionStatusChanged: provider-side status change or renewal
- SubscriptionCanceled: terminal cancellation
- Ignored: anything the reconciliation does not act on

Decoding fails closed: unknown event types and unmappable statuses become
Ignored instead of being trusted with defaults. Events that cannot be tied
to a tenant or subscription raise MissingCorrelation.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Union

from clinic_billing.features.billing.errors import MalformedEvent, MissingCorrelation
from clinic_billing.models.entitlement import SubscriptionStatus

CHECKOUT_COMPLETED = "checkout.session.completed"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"

# Event types the reconciliation acts on (also listed by GET /api/webhooks)
MONITORED_EVENT_TYPES = (
    CHECKOUT_COMPLETED,
    SUBSCRIPTION_UPDATED,
    INVOICE_PAYMENT_SUCCEEDED,
    SUBSCRIPTION_DELETED,
)

# Known but deliberately not applied
ACKNOWLEDGED_EVENT_TYPES = (
    "customer.subscription.created",
    "customer.subscription.trial_will_end",
    "invoice.payment_failed",
)

TENANT_METADATA_KEY = "tenant_id"
LEGACY_TENANT_METADATA_KEY = "userId"

# Provider statuses folded onto the entitlement status set
_STATUS_MAP = {
    "trialing": SubscriptionStatus.TRIALING,
    "active": SubscriptionStatus.ACTIVE,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "paused": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


@dataclass(frozen=True)
class EventEnvelope:
    event_id: str
    event_type: str
    occurred_at: Optional[datetime]
    data_object: Dict[str, Any]


@dataclass(frozen=True)
class CheckoutCompleted:
    tenant_id: str
    subscription_ref: str
    customer_ref: Optional[str] = None


@dataclass(frozen=True)
class SubscriptionStatusChanged:
    """Status change for a known subscription.

    new_status and new_period_end are None for renewals, whose payload
    (an invoice) does not carry them; the engine asks the provider.
    """
    subscription_ref: str
    new_status: Optional[SubscriptionStatus] = None
    new_period_end: Optional[datetime] = None


@dataclass(frozen=True)
class SubscriptionCanceled:
    subscription_ref: str


@dataclass(frozen=True)
class Ignored:
    event_type: str
    reason: str


LifecycleTransition = Union[CheckoutCompleted, SubscriptionStatusChanged, SubscriptionCanceled, Ignored]


def from_timestamp(value: Any) -> Optional[datetime]:
    """Provider unix timestamp -> aware UTC datetime."""
    if value is None or isinstance(value, bool):
        return None
    try:
        return datetime.fromtimestamp(int(value), tz=timezone.utc)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def normalize_status(raw: Optional[str]) -> Optional[SubscriptionStatus]:
    if not raw:
        return None
    return _STATUS_MAP.get(raw)


def _ref(value: Any) -> Optional[str]:
    """Id of a reference field that may be a bare id or an expanded object."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value:
        return value
    return None


def subscription_period_end(subscription: Dict[str, Any]) -> Optional[datetime]:
    """Current period end of a subscription object.

    Newer API versions moved the field from the subscription onto its items.
    """
    period_end = from_timestamp(subscription.get("current_period_end"))
    if period_end is not None:
        return period_end
    items = (subscription.get("items") or {}).get("data") or []
    ends = [from_timestamp(item.get("current_period_end")) for item in items if isinstance(item, dict)]
    ends = [end for end in ends if end is not None]
    return max(ends) if ends else None


def parse_envelope(event: Dict[str, Any]) -> EventEnvelope:
    """Typed decode of the event envelope.

    Raises:
        MalformedEvent: id, type, or data.object missing
    """
    event_id = event.get("id")
    event_type = event.get("type")
    data = event.get("data")
    data_object = data.get("object") if isinstance(data, dict) else None

    if not isinstance(event_id, str) or not event_id:
        raise MalformedEvent("Event is missing its id")
    if not isinstance(event_type, str) or not event_type:
        raise MalformedEvent("Event is missing its type")
    if not isinstance(data_object, dict):
        raise MalformedEvent("Event is missing data.object")

    return EventEnvelope(
        event_id=event_id,
        event_type=event_type,
        occurred_at=from_timestamp(event.get("created")),
        data_object=data_object,
    )


def _classify_checkout(event_type: str, session: Dict[str, Any]) -> LifecycleTransition:
    mode = session.get("mode")
    if mode and mode != "subscription":
        return Ignored(event_type, f"checkout mode {mode!r} does not create a subscription")

    metadata = session.get("metadata") or {}
    tenant_id = (
        metadata.get(TENANT_METADATA_KEY)
        or session.get("client_reference_id")
        or metadata.get(LEGACY_TENANT_METADATA_KEY)
    )
    if not tenant_id:
        raise MissingCorrelation("Checkout session carries no tenant reference")

    subscription_ref = _ref(session.get("subscription"))
    if not subscription_ref:
        raise MissingCorrelation("Checkout session carries no subscription reference")

    return CheckoutCompleted(
        tenant_id=str(tenant_id),
        subscription_ref=subscription_ref,
        customer_ref=_ref(session.get("customer")),
    )


def _classify_subscription_updated(event_type: str, subscription: Dict[str, Any]) -> LifecycleTransition:
    subscription_ref = _ref(subscription.get("id"))
    if not subscription_ref:
        raise MissingCorrelation("Subscription event carries no subscription id")

    raw_status = subscription.get("status")
    status = normalize_status(raw_status)
    if status is None:
        return Ignored(event_type, f"unmapped subscription status {raw_status!r}")

    return SubscriptionStatusChanged(
        subscription_ref=subscription_ref,
        new_status=status,
        new_period_end=subscription_period_end(subscription),
    )


def _classify_invoice_paid(event_type: str, invoice: Dict[str, Any]) -> LifecycleTransition:
    subscription_ref = _ref(invoice.get("subscription"))
    if not subscription_ref:
        details = ((invoice.get("parent") or {}).get("subscription_details") or {})
        subscription_ref = _ref(details.get("subscription"))
    if not subscription_ref:
        return Ignored(event_type, "invoice is not tied to a subscription")
    return SubscriptionStatusChanged(subscription_ref=subscription_ref)


def _classify_subscription_deleted(event_type: str, subscription: Dict[str, Any]) -> LifecycleTransition:
    subscription_ref = _ref(subscription.get("id"))
    if not subscription_ref:
        raise MissingCorrelation("Subscription event carries no subscription id")
    return SubscriptionCanceled(subscription_ref=subscription_ref)


_CLASSIFIERS: Dict[str, Callable[[str, Dict[str, Any]], LifecycleTransition]] = {
    CHECKOUT_COMPLETED: _classify_checkout,
    SUBSCRIPTION_UPDATED: _classify_subscription_updated,
    INVOICE_PAYMENT_SUCCEEDED: _classify_invoice_paid,
    SUBSCRIPTION_DELETED: _classify_subscription_deleted,
}


def classify(event: Union[Dict[str, Any], EventEnvelope]) -> LifecycleTransition:
    """Map a provider event to a lifecycle transition.

    Args:
        event: decoded event dict or an already parsed EventEnvelope

    Raises:
        MalformedEvent: the envelope itself is unusable
        MissingCorrelation: a monitored event lacks its tenant or subscription id
    """
    envelope = event if isinstance(event, EventEnvelope) else parse_envelope(event)
    classifier = _CLASSIFIERS.get(envelope.event_type)
    if classifier is None:
        if envelope.event_type in ACKNOWLEDGED_EVENT_TYPES:
            return Ignored(envelope.event_type, "event type not acted on")
        return Ignored(envelope.event_type, "unrecognized event type")
    return classifier(envelope.event_type, envelope.data_object)
