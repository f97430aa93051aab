"""Tests for Stripe webhook signature verification with test and live secrets."""

import hashlib
import hmac
import time
import unittest

from comparelabs.billing.signatures import (
    SignatureVerificationError,
    StripeSignatureVerifier,
    build_webhook_verifiers,
    verify_webhook_signature,
)


PAYLOAD = b'{"id":"evt_1","type":"invoice.payment_failed"}'


def _signature_header(secret, payload=PAYLOAD, timestamp=None):
    timestamp = int(time.time()) if timestamp is None else timestamp
    signed = f"{timestamp}.".encode("utf-8") + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


class VerifierTests(unittest.TestCase):
    def test_valid_signature_is_accepted(self):
        verifier = StripeSignatureVerifier("test", "whsec_test")
        self.assertTrue(verifier.verify(PAYLOAD, _signature_header("whsec_test")))

    def test_any_v1_entry_may_match(self):
        verifier = StripeSignatureVerifier("live", "whsec_live")
        header = _signature_header("whsec_live")
        timestamp, good = header.split(",")
        self.assertTrue(verifier.verify(PAYLOAD, f"{timestamp},v1=deadbeef,{good}"))

    def test_stale_timestamp_is_rejected(self):
        verifier = StripeSignatureVerifier("test", "whsec_test", tolerance_seconds=300)
        header = _signature_header("whsec_test", timestamp=1_700_000_000)
        self.assertFalse(verifier.verify(PAYLOAD, header, now=1_700_000_301))
        self.assertTrue(verifier.verify(PAYLOAD, header, now=1_700_000_300))

    def test_tampered_payload_is_rejected(self):
        verifier = StripeSignatureVerifier("test", "whsec_test")
        header = _signature_header("whsec_test")
        self.assertFalse(verifier.verify(PAYLOAD + b" ", header))

    def test_malformed_header_is_rejected(self):
        verifier = StripeSignatureVerifier("test", "whsec_test")
        self.assertFalse(verifier.verify(PAYLOAD, "garbage"))
        self.assertFalse(verifier.verify(PAYLOAD, "t=notanumber,v1=abc"))

    def test_non_ascii_signature_is_rejected(self):
        verifier = StripeSignatureVerifier("test", "whsec_test")
        header = f"t={int(time.time())},v1=éé"
        self.assertFalse(verifier.verify(PAYLOAD, header))


class DualSecretTests(unittest.TestCase):
    def setUp(self):
        self.verifiers = build_webhook_verifiers(
            test_secret="whsec_test",
            live_secret="whsec_live",
        )

    def test_verifiers_are_ordered_test_then_live(self):
        self.assertEqual([verifier.label for verifier in self.verifiers], ["test", "live"])

    def test_test_secret_signature(self):
        label = verify_webhook_signature(PAYLOAD, _signature_header("whsec_test"), self.verifiers)
        self.assertEqual(label, "test")

    def test_live_secret_signature_after_test_fails(self):
        label = verify_webhook_signature(PAYLOAD, _signature_header("whsec_live"), self.verifiers)
        self.assertEqual(label, "live")

    def test_unknown_secret_is_rejected(self):
        with self.assertRaises(SignatureVerificationError):
            verify_webhook_signature(PAYLOAD, _signature_header("whsec_other"), self.verifiers)

    def test_garbage_header_raises_verification_error(self):
        header = f"t={int(time.time())},v1=éé,v1=zz"
        with self.assertRaises(SignatureVerificationError):
            verify_webhook_signature(PAYLOAD, header, self.verifiers)

    def test_missing_header_is_rejected(self):
        with self.assertRaises(SignatureVerificationError):
            verify_webhook_signature(PAYLOAD, None, self.verifiers)

    def test_no_configured_secret_rejects_everything(self):
        verifiers = build_webhook_verifiers(test_secret=None, live_secret="  ")
        self.assertEqual(verifiers, [])
        with self.assertRaises(SignatureVerificationError):
            verify_webhook_signature(PAYLOAD, _signature_header("whsec_test"), verifiers)


if __name__ == "__main__":
    unittest.main()
