"""
Scheduled drift reconciliation job.

Webhooks can be dropped (unknown subscription refs) or arrive out of order,
so entitlements are periodically compared against the provider's view of
each subscription. With fix=True the provider's state is written back.

Usage:
    python -m clinic_billing.features.billing.reconcile_job --fix --limit 200
"""
from __future__ import annotations

import argparse
import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional

from clinic_billing.core.config import settings
from clinic_billing.core.logging import configure_logging, log_event
from clinic_billing.features.billing.errors import BillingProviderError, StoreUnavailable
from clinic_billing.features.billing.events import normalize_status
from clinic_billing.features.billing.provider import BillingProvider
from clinic_billing.features.billing.reconcile import status_fields
from clinic_billing.features.billing.store import EntitlementStore

logger = logging.getLogger("clinic_billing.billing.reconcile_job")


def run_reconcile_job(
    now: datetime,
    fix: bool = False,
    limit: int = 100,
    *,
    provider: Optional[BillingProvider] = None,
    store: Optional[EntitlementStore] = None,
) -> Dict[str, Any]:
    if provider is None:
        from clinic_billing.features.billing.service import get_provider

        provider = get_provider()
    if provider is None:
        raise BillingProviderError("Billing not enabled")

    store = store or EntitlementStore()
    checked = drifted = corrected = errors = 0

    for entitlement in store.list_subscribed(limit=limit):
        checked += 1
        try:
            subscription = provider.retrieve_subscription(entitlement.billing_subscription_ref)
        except BillingProviderError as e:
            errors += 1
            log_event(
                "warning",
                "billing.reconcile.provider_error",
                tenant_id=entitlement.tenant_id,
                extra={"subscription_ref": entitlement.billing_subscription_ref, "reason": str(e)},
            )
            continue

        status = normalize_status(subscription.status)
        if status is None:
            errors += 1
            log_event(
                "warning",
                "billing.reconcile.unmapped_status",
                tenant_id=entitlement.tenant_id,
                extra={"subscription_ref": entitlement.billing_subscription_ref, "status": subscription.status},
            )
            continue

        fields = status_fields(status, subscription.current_period_end)
        expected_period_end = fields.get("period_end", entitlement.period_end)
        if entitlement.status == status and entitlement.period_end == expected_period_end:
            continue

        drifted += 1
        log_event(
            "warning",
            "billing.reconcile.drift",
            tenant_id=entitlement.tenant_id,
            extra={
                "subscription_ref": entitlement.billing_subscription_ref,
                "stored_status": entitlement.status.value,
                "provider_status": status.value,
            },
        )
        if fix:
            try:
                written = store.upsert(
                    entitlement.tenant_id,
                    fields,
                    subscription_ref=entitlement.billing_subscription_ref,
                )
            except StoreUnavailable as e:
                errors += 1
                log_event("error", "billing.reconcile.write_failed", tenant_id=entitlement.tenant_id, extra={"reason": str(e)})
                continue
            if not written:
                # A checkout swapped the subscription after it was listed
                log_event(
                    "info",
                    "billing.reconcile.skipped",
                    tenant_id=entitlement.tenant_id,
                    extra={"subscription_ref": entitlement.billing_subscription_ref, "reason": "subscription replaced"},
                )
                continue
            corrected += 1

    result = {
        "checked": checked,
        "drifted": drifted,
        "corrected": corrected,
        "errors": errors,
        "timestamp": now.isoformat(),
    }
    logger.info("[reconcile] run complete", extra={"outcome": json.dumps(result)})
    return result


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Compare entitlements with the billing provider")
    parser.add_argument("--fix", action="store_true", help="write the provider's state back")
    parser.add_argument("--limit", type=int, default=100, help="maximum entitlements to check")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV)
    result = run_reconcile_job(datetime.now(timezone.utc), fix=args.fix, limit=args.limit)
    print(json.dumps(result))
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
