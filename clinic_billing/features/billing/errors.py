"""
Billing error taxonomy.

Each error carries the HTTP status the webhook route answers with, which
tells the provider whether a redelivery can help:
- 4xx: the event itself is bad (forged or missing data); retrying cannot fix it.
- 5xx: a transient failure on our side; the provider should retry.
"""


class BillingError(Exception):
    """Base exception for billing failures."""
    code = "billing_error"
    http_status = 500


class BillingProviderError(BillingError):
    """The billing provider API failed or rejected a call."""
    code = "provider_error"
    http_status = 500


class BillingWebhookError(BillingError):
    """Base exception for rejected webhook deliveries."""
    code = "webhook_error"
    http_status = 400


class InvalidSignature(BillingWebhookError):
    """Signature missing, malformed, stale, or not matching the raw body."""
    code = "invalid_signature"


class MalformedEvent(BillingWebhookError):
    """The body verified but is not a usable event envelope."""
    code = "malformed_event"


class MissingCorrelation(BillingWebhookError):
    """The event cannot be tied to a tenant or subscription."""
    code = "missing_correlation"


class StoreUnavailable(BillingError):
    """The entitlement store could not be read or written."""
    code = "store_unavailable"
    http_status = 500


class DuplicateEvent(BillingError):
    """A concurrent delivery of the same event already committed."""
    code = "duplicate_event"
    http_status = 200
