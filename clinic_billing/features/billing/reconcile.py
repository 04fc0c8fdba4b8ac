"""
Reconciliation engine: applies lifecycle transitions to entitlements.

State machine:

    none -> trialing -> active <-> past_due
    any  -> canceled  (re-opened by a new checkout)

Transition table (TRANSITIONS):

    Current  Event                              Next                     Writes
    any      CheckoutCompleted                  provider's live status   customer_ref (if unset), subscription_ref,
                                                                         status, plan_tier, period_end
    live     CheckoutCompleted (provider: canceled, other ref)  no-op     ledger only
    any      SubscriptionStatusChanged (known)  payload/provider status  status, plan_tier, period_end
    any      SubscriptionStatusChanged (unknown ref)  no-op              ledger only
    any      SubscriptionCanceled (known)       canceled                 status, plan_tier=basic, period_end=None
    any      SubscriptionCanceled (unknown ref) no-op                    ledger only
    any      Ignored                            no-op                    ledger only

Writes keyed by a subscription ref only land while the row still carries
that ref, so a checkout that replaced it in the meantime wins.

Every write is a deterministic function of the lookup, the payload and the
provider's answer, so re-delivering an event rewrites the same values.
Each handler performs its reads first and its single store write last.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional, Type

from clinic_billing.core.logging import log_event
from clinic_billing.features.billing.errors import BillingProviderError
from clinic_billing.features.billing.events import (
    CheckoutCompleted,
    Ignored,
    LifecycleTransition,
    SubscriptionCanceled,
    SubscriptionStatusChanged,
    normalize_status,
)
from clinic_billing.features.billing.provider import BillingProvider
from clinic_billing.features.billing.store import EntitlementStore, EventRecord
from clinic_billing.models.entitlement import (
    Entitlement,
    PlanTier,
    SubscriptionStatus,
    plan_tier_for,
)

logger = logging.getLogger("clinic_billing.billing.reconcile")


class Outcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    UNKNOWN_SUBSCRIPTION = "unknown_subscription"
    STALE = "stale"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class EventContext:
    """Envelope facts the engine records next to a mutation."""
    event_id: str
    event_type: str
    occurred_at: Optional[datetime] = None
    payload_hash: Optional[str] = None


@dataclass(frozen=True)
class ReconcileOutcome:
    outcome: Outcome
    tenant_id: Optional[str] = None
    subscription_ref: Optional[str] = None
    status: Optional[SubscriptionStatus] = None
    reason: Optional[str] = None


TRANSITIONS: Dict[Type, str] = {
    CheckoutCompleted: "_on_checkout_completed",
    SubscriptionStatusChanged: "_on_status_changed",
    SubscriptionCanceled: "_on_canceled",
    Ignored: "_on_ignored",
}


def cancellation_fields() -> Dict[str, Any]:
    return {
        "status": SubscriptionStatus.CANCELED,
        "plan_tier": PlanTier.BASIC,
        "period_end": None,
    }


def status_fields(status: SubscriptionStatus, period_end: Optional[datetime]) -> Dict[str, Any]:
    """Fields written for a status; period_end only when known."""
    if status == SubscriptionStatus.CANCELED:
        return cancellation_fields()
    fields: Dict[str, Any] = {"status": status, "plan_tier": plan_tier_for(status)}
    if period_end is not None:
        fields["period_end"] = period_end
    return fields


class ReconciliationEngine:
    """Applies classified billing events to the entitlement store."""

    def __init__(
        self,
        store: EntitlementStore,
        provider: Optional[BillingProvider] = None,
        *,
        strict_ordering: bool = False,
    ):
        self.store = store
        self.provider = provider
        self.strict_ordering = strict_ordering
        self._handlers: Dict[Type, Callable[..., ReconcileOutcome]] = {
            transition_type: getattr(self, method) for transition_type, method in TRANSITIONS.items()
        }

    def apply(self, transition: LifecycleTransition, *, event: Optional[EventContext] = None) -> ReconcileOutcome:
        """Apply one transition.

        Raises:
            BillingProviderError: the provider could not be consulted (nothing written)
            StoreUnavailable: the store failed (nothing committed)
            DuplicateEvent: a concurrent delivery of the same event won the ledger insert
        """
        handler = self._handlers.get(type(transition))
        if handler is None:
            raise TypeError(f"No transition handler for {type(transition).__name__}")
        return handler(transition, event)

    # Handlers

    def _on_checkout_completed(self, transition: CheckoutCompleted, event: Optional[EventContext]) -> ReconcileOutcome:
        subscription = self._retrieve(transition.subscription_ref)
        status = normalize_status(subscription.status)
        if status is None:
            return self._ignore(
                event,
                f"unmapped subscription status {subscription.status!r}",
                tenant_id=transition.tenant_id,
                subscription_ref=transition.subscription_ref,
            )

        current = self.store.get(transition.tenant_id)
        if self._is_stale(current, event):
            return self._stale(event, transition.tenant_id, transition.subscription_ref)

        if (
            status == SubscriptionStatus.CANCELED
            and current is not None
            and current.billing_subscription_ref not in (None, transition.subscription_ref)
            and current.status != SubscriptionStatus.CANCELED
        ):
            # A late checkout for an ended subscription must not displace the live one
            return self._ignore(
                event,
                f"checkout for canceled subscription; tenant is on {current.billing_subscription_ref}",
                tenant_id=transition.tenant_id,
                subscription_ref=transition.subscription_ref,
            )

        fields = status_fields(status, subscription.current_period_end)
        fields["billing_subscription_ref"] = transition.subscription_ref
        if status != SubscriptionStatus.CANCELED:
            # A replaced subscription must not keep the previous period end
            fields["period_end"] = subscription.current_period_end

        customer_ref = transition.customer_ref or subscription.customer_ref
        if current is None or current.billing_customer_ref is None:
            if customer_ref:
                fields["billing_customer_ref"] = customer_ref
        elif customer_ref and customer_ref != current.billing_customer_ref:
            log_event(
                "warning",
                "billing.checkout.customer_mismatch",
                tenant_id=transition.tenant_id,
                event_id=event.event_id if event else None,
                extra={"stored_customer_ref": current.billing_customer_ref, "event_customer_ref": customer_ref},
            )

        if current is not None and current.billing_subscription_ref not in (None, transition.subscription_ref):
            log_event(
                "info",
                "billing.checkout.subscription_replaced",
                tenant_id=transition.tenant_id,
                event_id=event.event_id if event else None,
                extra={
                    "previous_subscription_ref": current.billing_subscription_ref,
                    "subscription_ref": transition.subscription_ref,
                },
            )

        return self._write(transition.tenant_id, transition.subscription_ref, fields, status, event)

    def _on_status_changed(self, transition: SubscriptionStatusChanged, event: Optional[EventContext]) -> ReconcileOutcome:
        current = self.store.find_by_subscription_ref(transition.subscription_ref)
        if current is None:
            return self._unknown_subscription(transition.subscription_ref, event)

        status = transition.new_status
        period_end = transition.new_period_end
        if status is None:
            # Renewal: the invoice payload carries neither status nor period end
            subscription = self._retrieve(transition.subscription_ref)
            status = normalize_status(subscription.status)
            period_end = subscription.current_period_end
            if status is None:
                return self._ignore(
                    event,
                    f"unmapped subscription status {subscription.status!r}",
                    tenant_id=current.tenant_id,
                    subscription_ref=transition.subscription_ref,
                )

        if self._is_stale(current, event):
            return self._stale(event, current.tenant_id, transition.subscription_ref)

        fields = status_fields(status, period_end)
        return self._write(current.tenant_id, transition.subscription_ref, fields, status, event, bound=True)

    def _on_canceled(self, transition: SubscriptionCanceled, event: Optional[EventContext]) -> ReconcileOutcome:
        current = self.store.find_by_subscription_ref(transition.subscription_ref)
        if current is None:
            return self._unknown_subscription(transition.subscription_ref, event)
        if self._is_stale(current, event):
            return self._stale(event, current.tenant_id, transition.subscription_ref)

        return self._write(
            current.tenant_id,
            transition.subscription_ref,
            cancellation_fields(),
            SubscriptionStatus.CANCELED,
            event,
            bound=True,
        )

    def _on_ignored(self, transition: Ignored, event: Optional[EventContext]) -> ReconcileOutcome:
        return self._ignore(event, transition.reason)

    # Helpers

    def _retrieve(self, subscription_ref: str):
        if self.provider is None:
            raise BillingProviderError("No billing provider configured")
        return self.provider.retrieve_subscription(subscription_ref)

    def _is_stale(self, current: Optional[Entitlement], event: Optional[EventContext]) -> bool:
        if not self.strict_ordering or current is None or event is None:
            return False
        if event.occurred_at is None or current.last_event_at is None:
            return False
        return event.occurred_at < current.last_event_at

    def _write(
        self,
        tenant_id: str,
        subscription_ref: str,
        fields: Dict[str, Any],
        status: SubscriptionStatus,
        event: Optional[EventContext],
        *,
        bound: bool = False,
    ) -> ReconcileOutcome:
        """Single store write. bound=True requires the row to still carry subscription_ref."""
        not_after = None
        if event is not None and event.occurred_at is not None:
            fields["last_event_at"] = event.occurred_at
            if self.strict_ordering:
                not_after = event.occurred_at

        written = self.store.upsert(
            tenant_id,
            fields,
            event=self._record(event, Outcome.APPLIED, tenant_id, subscription_ref),
            not_after=not_after,
            subscription_ref=subscription_ref if bound else None,
        )
        if not written:
            reason = "entitlement changed since lookup" if bound else "newer event already applied"
            log_event(
                "info",
                "billing.event.stale",
                tenant_id=tenant_id,
                event_id=event.event_id if event else None,
                extra={"subscription_ref": subscription_ref, "reason": reason},
            )
            return ReconcileOutcome(Outcome.STALE, tenant_id, subscription_ref, reason=reason)

        log_event(
            "info",
            "billing.entitlement.updated",
            tenant_id=tenant_id,
            event_id=event.event_id if event else None,
            event_type=event.event_type if event else None,
            extra={"subscription_ref": subscription_ref, "status": status.value},
        )
        return ReconcileOutcome(Outcome.APPLIED, tenant_id, subscription_ref, status)

    def _unknown_subscription(self, subscription_ref: str, event: Optional[EventContext]) -> ReconcileOutcome:
        # Usually the checkout for this subscription has not been processed yet
        log_event(
            "warning",
            "billing.event.unknown_subscription",
            event_id=event.event_id if event else None,
            event_type=event.event_type if event else None,
            error_code="unknown_subscription_ref",
            extra={"subscription_ref": subscription_ref},
        )
        self._note(event, Outcome.UNKNOWN_SUBSCRIPTION, None, subscription_ref)
        return ReconcileOutcome(
            Outcome.UNKNOWN_SUBSCRIPTION,
            subscription_ref=subscription_ref,
            reason="subscription not known locally",
        )

    def _stale(self, event: Optional[EventContext], tenant_id: str, subscription_ref: str) -> ReconcileOutcome:
        log_event(
            "info",
            "billing.event.stale",
            tenant_id=tenant_id,
            event_id=event.event_id if event else None,
            extra={"subscription_ref": subscription_ref, "reason": "older than last applied event"},
        )
        self._note(event, Outcome.STALE, tenant_id, subscription_ref)
        return ReconcileOutcome(Outcome.STALE, tenant_id, subscription_ref, reason="older than last applied event")

    def _ignore(
        self,
        event: Optional[EventContext],
        reason: str,
        *,
        tenant_id: Optional[str] = None,
        subscription_ref: Optional[str] = None,
    ) -> ReconcileOutcome:
        log_event(
            "info",
            "billing.event.ignored",
            tenant_id=tenant_id,
            event_id=event.event_id if event else None,
            event_type=event.event_type if event else None,
            extra={"reason": reason},
        )
        self._note(event, Outcome.IGNORED, tenant_id, subscription_ref)
        return ReconcileOutcome(Outcome.IGNORED, tenant_id, subscription_ref, reason=reason)

    def _note(
        self,
        event: Optional[EventContext],
        outcome: Outcome,
        tenant_id: Optional[str],
        subscription_ref: Optional[str],
    ) -> None:
        record = self._record(event, outcome, tenant_id, subscription_ref)
        if record is not None:
            self.store.record_event(record)

    @staticmethod
    def _record(
        event: Optional[EventContext],
        outcome: Outcome,
        tenant_id: Optional[str],
        subscription_ref: Optional[str],
    ) -> Optional[EventRecord]:
        if event is None:
            return None
        return EventRecord(
            event_id=event.event_id,
            event_type=event.event_type,
            outcome=outcome.value,
            tenant_id=tenant_id,
            subscription_ref=subscription_ref,
            payload_hash=event.payload_hash,
            occurred_at=event.occurred_at,
        )
