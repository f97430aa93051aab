"""Stripe billing reconciliation."""

from .identity import BillingIdentity, base_email, normalize_email, resolve_account
from .pricing import derive_tier, subscription_period_end, subscription_price
from .reconcile import ReconciliationError, process_event, sync_account_from_stripe
from .signatures import (
    SignatureVerificationError,
    StripeSignatureVerifier,
    build_webhook_verifiers,
    verify_webhook_signature,
)

__all__ = [
    "BillingIdentity",
    "base_email",
    "normalize_email",
    "resolve_account",
    "derive_tier",
    "subscription_period_end",
    "subscription_price",
    "ReconciliationError",
    "process_event",
    "sync_account_from_stripe",
    "SignatureVerificationError",
    "StripeSignatureVerifier",
    "build_webhook_verifiers",
    "verify_webhook_signature",
]
