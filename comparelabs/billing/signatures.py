"""Stripe webhook signature verification against an ordered list of secrets."""

import hashlib
import hmac
import time
from typing import Dict, List, Sequence

from ..config import (
    STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    STRIPE_WEBHOOK_SECRET_PROD,
    STRIPE_WEBHOOK_SECRET_TEST,
)


class SignatureVerificationError(Exception):
    """No configured secret produced a valid signature."""


def _parse_signature_header(signature_header: str) -> tuple[str | None, List[str]]:
    """Split 't=...,v1=...,v1=...' into the timestamp and every v1 signature."""
    timestamp_text: str | None = None
    signatures: List[str] = []
    for item in signature_header.split(","):
        if "=" not in item:
            continue
        key, value = item.split("=", 1)
        key = key.strip()
        value = value.strip()
        if key == "t":
            timestamp_text = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp_text, signatures


class StripeSignatureVerifier:
    """Checks the Stripe-Signature header with one webhook secret."""

    def __init__(
        self,
        label: str,
        secret: str,
        tolerance_seconds: int = STRIPE_SIGNATURE_TOLERANCE_SECONDS,
    ):
        self.label = label
        self.secret = secret
        self.tolerance_seconds = tolerance_seconds

    def verify(self, payload: bytes, signature_header: str, now: int | None = None) -> bool:
        timestamp_text, signatures = _parse_signature_header(signature_header or "")
        if not timestamp_text or not signatures:
            return False

        try:
            timestamp = int(timestamp_text)
        except ValueError:
            return False

        current_time = int(time.time()) if now is None else now
        if abs(current_time - timestamp) > self.tolerance_seconds:
            return False

        signed_payload = f"{timestamp}.".encode("utf-8") + payload
        expected = hmac.new(
            self.secret.encode("utf-8"),
            signed_payload,
            hashlib.sha256,
        ).hexdigest().encode("ascii")
        return any(
            hmac.compare_digest(expected, signature.encode("utf-8", "ignore"))
            for signature in signatures
        )


def build_webhook_verifiers(
    test_secret: str | None = STRIPE_WEBHOOK_SECRET_TEST,
    live_secret: str | None = STRIPE_WEBHOOK_SECRET_PROD,
) -> List[StripeSignatureVerifier]:
    """Verifiers in the order they are tried: test secret first, then live."""
    configured: Dict[str, str | None] = {"test": test_secret, "live": live_secret}
    return [
        StripeSignatureVerifier(label, secret.strip())
        for label, secret in configured.items()
        if isinstance(secret, str) and secret.strip()
    ]


def verify_webhook_signature(
    payload: bytes,
    signature_header: str | None,
    verifiers: Sequence[StripeSignatureVerifier],
) -> str:
    """
    Try each verifier in order and return the label of the first that accepts.

    Raises:
        SignatureVerificationError: no verifiers, no header, or every secret failed.
    """
    if not verifiers:
        raise SignatureVerificationError("No webhook secret is configured.")
    if not signature_header:
        raise SignatureVerificationError("Missing Stripe-Signature header.")

    for verifier in verifiers:
        if verifier.verify(payload, signature_header):
            return verifier.label
    raise SignatureVerificationError("Invalid signature")
