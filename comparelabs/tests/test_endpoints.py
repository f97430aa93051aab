"""Tests for HTTP endpoint contracts: comparison, webhook, subscription and admin routes."""

import json
import time
import unittest
from unittest.mock import AsyncMock, Mock, patch

from fastapi import HTTPException

from comparelabs import main
from comparelabs.billing import (
    ReconciliationError,
    SignatureVerificationError,
    StripeSignatureVerifier,
)
from comparelabs.ledger import LedgerError, UsageCheck, UsageRejectedError


def _account(**overrides):
    account = {
        "id": "user-1",
        "email": "alice@example.com",
        "subscription_tier": "plus",
        "subscription_status": "active",
        "credits": 500,
        "stripe_customer_id": "cus_1",
        "stripe_subscription_id": "sub_1",
        "current_period_end": None,
    }
    account.update(overrides)
    return account


def _request_stub(body=b"", disconnected=False):
    class RequestStub:
        async def body(self):
            return body

        async def is_disconnected(self):
            return disconnected

    return RequestStub()


def _sse_events(chunks):
    events = []
    for chunk in chunks:
        for frame in chunk.split("\n\n"):
            if frame.startswith("data: "):
                events.append(json.loads(frame[len("data: "):]))
    return events


class ComparisonEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def test_unknown_model_is_bad_request_before_charging(self):
        authorize_mock = AsyncMock()
        with patch.object(main.orchestrator, "authorize", new=authorize_mock):
            with self.assertRaises(HTTPException) as raised:
                await main.chat(
                    request=main.ChatRequest(prompt="Hi", models=["gpt-5", "made-up-model"]),
                    account=_account(),
                )
        self.assertEqual(raised.exception.status_code, 400)
        self.assertIn("made-up-model", raised.exception.detail)
        authorize_mock.assert_not_awaited()

    async def test_blank_prompt_is_bad_request(self):
        with self.assertRaises(HTTPException) as raised:
            await main.chat(
                request=main.ChatRequest(prompt="   ", models=["gpt-5"]),
                account=_account(),
            )
        self.assertEqual(raised.exception.status_code, 400)

    async def test_rejected_usage_maps_to_429_with_remaining_credits(self):
        rejection = UsageRejectedError(
            UsageCheck(
                allowed=False,
                reason="Insufficient credits. You have 30 credits but need 31 for this request.",
                remaining_credits=30,
            )
        )
        with patch.object(main.orchestrator, "authorize", new=AsyncMock(side_effect=rejection)):
            with self.assertRaises(UsageRejectedError) as raised:
                await main.chat(
                    request=main.ChatRequest(prompt="Hi", models=["gpt-5"]),
                    account=_account(credits=30),
                )

        response = await main.usage_rejected_handler(None, raised.exception)
        self.assertEqual(response.status_code, 429)
        self.assertEqual(
            json.loads(response.body),
            {
                "detail": "Insufficient credits. You have 30 credits but need 31 for this request.",
                "remainingCredits": 30,
            },
        )

    async def test_ledger_failure_is_server_error(self):
        with patch.object(
            main.orchestrator,
            "authorize",
            new=AsyncMock(side_effect=LedgerError("Failed to debit credits.")),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.chat(
                    request=main.ChatRequest(prompt="Hi", models=["gpt-5"]),
                    account=_account(),
                )
        self.assertEqual(raised.exception.status_code, 500)

    async def test_batch_returns_results_with_remaining_credits(self):
        result = Mock()
        result.to_public_dict.return_value = {"results": [{"model": "gpt-5", "response": "ok"}]}
        with (
            patch.object(main.orchestrator, "authorize", new=AsyncMock(return_value=475)),
            patch.object(main.orchestrator, "run_batch", new=AsyncMock(return_value=result)) as run_mock,
        ):
            payload = await main.chat(
                request=main.ChatRequest(prompt="Hi", models=["gpt-5"]),
                account=_account(),
            )

        self.assertEqual(payload["remainingCredits"], 475)
        self.assertEqual(payload["results"][0]["response"], "ok")
        run_mock.assert_awaited_once()
        self.assertEqual(run_mock.await_args.args[0], "user-1")

    async def test_stream_ends_with_done_carrying_remaining_credits(self):
        async def fake_stream(account_id, plan, cancel_event=None):
            yield {"type": "chunk", "model": "gpt-5", "chunk": "Hel"}
            yield {"type": "chunk", "model": "gpt-5", "chunk": "lo"}
            yield {"type": "complete", "model": "gpt-5", "response": "Hello"}
            yield {"type": "done"}

        with (
            patch.object(main.orchestrator, "authorize", new=AsyncMock(return_value=475)),
            patch.object(main.orchestrator, "stream", new=fake_stream),
        ):
            response = await main.chat_stream(
                request=main.ChatRequest(prompt="Hi", models=["gpt-5"]),
                http_request=_request_stub(),
                account=_account(),
            )
            chunks = [chunk async for chunk in response.body_iterator]

        self.assertEqual(response.media_type, "text/event-stream")
        events = _sse_events(chunks)
        self.assertEqual([event["type"] for event in events], ["chunk", "chunk", "complete", "done"])
        self.assertEqual(events[-1]["remainingCredits"], 475)

    async def test_stream_failure_emits_error_then_done(self):
        async def broken_stream(account_id, plan, cancel_event=None):
            yield {"type": "chunk", "model": "gpt-5", "chunk": "Hel"}
            raise RuntimeError("queue exploded")

        with (
            patch.object(main.orchestrator, "authorize", new=AsyncMock(return_value=475)),
            patch.object(main.orchestrator, "stream", new=broken_stream),
        ):
            response = await main.chat_stream(
                request=main.ChatRequest(prompt="Hi", models=["gpt-5"]),
                http_request=_request_stub(),
                account=_account(),
            )
            chunks = [chunk async for chunk in response.body_iterator]

        events = _sse_events(chunks)
        self.assertEqual([event["type"] for event in events], ["chunk", "error", "done"])
        self.assertEqual(events[1]["error"], "queue exploded")

    async def test_stream_rejection_happens_before_response_starts(self):
        rejection = UsageRejectedError(
            UsageCheck(allowed=False, reason="Subscription is not active.", remaining_credits=0)
        )
        with patch.object(main.orchestrator, "authorize", new=AsyncMock(side_effect=rejection)):
            with self.assertRaises(UsageRejectedError):
                await main.chat_stream(
                    request=main.ChatRequest(prompt="Hi", models=["gpt-5"]),
                    http_request=_request_stub(),
                    account=_account(subscription_status="past_due"),
                )


class ModelCatalogEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def test_models_are_grouped_by_bucket(self):
        payload = await main.list_models()
        self.assertEqual(set(payload["buckets"]), {"performance", "medium", "quick"})
        self.assertTrue(payload["defaultModels"])
        for bucket, models in payload["buckets"].items():
            for model in models:
                self.assertEqual(model["bucket"], bucket)


class WebhookEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def test_probe(self):
        self.assertEqual(
            await main.stripe_webhook_probe(),
            {"status": "ok", "endpoint": "stripe-webhook"},
        )

    async def test_bad_signature_is_rejected_without_processing(self):
        process_mock = AsyncMock()
        with (
            patch(
                "comparelabs.main.verify_webhook_signature",
                side_effect=SignatureVerificationError("No signature matched."),
            ),
            patch("comparelabs.main.process_event", new=process_mock),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.stripe_webhook(
                    request=_request_stub(body=b'{"id": "evt_1"}'),
                    stripe_signature="t=1,v1=bad",
                )
        self.assertEqual(raised.exception.status_code, 400)
        self.assertEqual(raised.exception.detail, "Invalid signature")
        process_mock.assert_not_awaited()

    async def test_non_ascii_signature_header_is_bad_request(self):
        verifiers = [StripeSignatureVerifier("test", "whsec_test")]
        process_mock = AsyncMock()
        with (
            patch("comparelabs.main.build_webhook_verifiers", return_value=verifiers),
            patch("comparelabs.main.process_event", new=process_mock),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.stripe_webhook(
                    request=_request_stub(body=b'{"id": "evt_1"}'),
                    stripe_signature=f"t={int(time.time())},v1=éé",
                )
        self.assertEqual(raised.exception.status_code, 400)
        process_mock.assert_not_awaited()

    async def test_empty_body_is_rejected(self):
        with self.assertRaises(HTTPException) as raised:
            await main.stripe_webhook(request=_request_stub(body=b""), stripe_signature="t=1,v1=x")
        self.assertEqual(raised.exception.status_code, 400)

    async def test_verified_event_is_processed(self):
        event = {"id": "evt_1", "type": "invoice.payment_failed", "data": {"object": {}}}
        process_mock = AsyncMock(return_value={"received": True, "processed": True})
        with (
            patch("comparelabs.main.verify_webhook_signature", return_value="test"),
            patch("comparelabs.main.process_event", new=process_mock),
        ):
            result = await main.stripe_webhook(
                request=_request_stub(body=json.dumps(event).encode("utf-8")),
                stripe_signature="t=1,v1=ok",
            )
        self.assertEqual(result, {"received": True, "processed": True})
        process_mock.assert_awaited_once_with(event)

    async def test_handler_crash_is_server_error(self):
        with (
            patch("comparelabs.main.verify_webhook_signature", return_value="live"),
            patch(
                "comparelabs.main.process_event",
                new=AsyncMock(side_effect=RuntimeError("db down")),
            ),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.stripe_webhook(
                    request=_request_stub(body=b'{"id": "evt_1", "type": "invoice.payment_failed"}'),
                    stripe_signature="t=1,v1=ok",
                )
        self.assertEqual(raised.exception.status_code, 500)
        self.assertEqual(raised.exception.detail, "Webhook handler failed")

    async def test_non_json_payload_is_rejected(self):
        with patch("comparelabs.main.verify_webhook_signature", return_value="test"):
            with self.assertRaises(HTTPException) as raised:
                await main.stripe_webhook(
                    request=_request_stub(body=b"not json"),
                    stripe_signature="t=1,v1=ok",
                )
        self.assertEqual(raised.exception.status_code, 400)


class AccountEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def test_get_account_shape(self):
        payload = await main.get_account(account=_account(credits=-4))
        self.assertEqual(payload["tier"], "plus")
        self.assertEqual(payload["credits"], 0)
        self.assertEqual(payload["stripeSubscriptionId"], "sub_1")

    async def test_account_load_failure_is_server_error(self):
        with patch(
            "comparelabs.main.storage.ensure_profile",
            new=AsyncMock(side_effect=RuntimeError("boom")),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.get_current_account(user={"id": "user-1", "email": "a@b.com"})
        self.assertEqual(raised.exception.status_code, 500)

    async def test_checkout_rejects_free_tier(self):
        with self.assertRaises(HTTPException) as raised:
            await main.create_checkout(request=main.CheckoutRequest(tier="free"), account=_account())
        self.assertEqual(raised.exception.status_code, 400)

    async def test_checkout_creates_session_for_paid_tier(self):
        session_mock = AsyncMock(return_value={"id": "cs_1", "url": "https://checkout.stripe.com/cs_1"})
        with (
            patch.dict(main.PRICE_IDS_BY_TIER, {"pro": "price_pro"}),
            patch("comparelabs.main.create_subscription_checkout_session", new=session_mock),
        ):
            payload = await main.create_checkout(
                request=main.CheckoutRequest(tier="Pro"),
                account=_account(),
            )

        self.assertEqual(payload, {"sessionId": "cs_1", "url": "https://checkout.stripe.com/cs_1"})
        kwargs = session_mock.await_args.kwargs
        self.assertEqual(kwargs["price_id"], "price_pro")
        self.assertEqual(kwargs["user_id"], "user-1")
        self.assertTrue(kwargs["success_url"].endswith("/dashboard?checkout=success"))

    async def test_cancel_rejects_foreign_subscription(self):
        cancel_mock = AsyncMock()
        with patch("comparelabs.main.cancel_subscription_at_period_end", new=cancel_mock):
            with self.assertRaises(HTTPException) as raised:
                await main.cancel_subscription(
                    request=main.CancelSubscriptionRequest(subscriptionId="sub_other"),
                    account=_account(),
                )
        self.assertEqual(raised.exception.status_code, 403)
        cancel_mock.assert_not_awaited()

    async def test_cancel_marks_cancel_at_period_end(self):
        cancel_mock = AsyncMock()
        update_mock = AsyncMock(
            side_effect=lambda user_id, changes: {**_account(), **changes},
        )
        with (
            patch("comparelabs.main.cancel_subscription_at_period_end", new=cancel_mock),
            patch("comparelabs.main.storage.update_profile", new=update_mock),
        ):
            payload = await main.cancel_subscription(
                request=main.CancelSubscriptionRequest(subscriptionId="sub_1"),
                account=_account(),
            )

        cancel_mock.assert_awaited_once_with("sub_1")
        update_mock.assert_awaited_once_with("user-1", {"subscription_status": "cancel_at_period_end"})
        self.assertEqual(payload["status"], "cancel_at_period_end")
        self.assertEqual(payload["tier"], "plus")


class AdminEndpointTests(unittest.IsolatedAsyncioTestCase):
    async def test_admin_gate_rejects_regular_user(self):
        with self.assertRaises(HTTPException) as raised:
            await main.get_current_admin_user(user={"id": "user-1", "app_metadata": {"role": "user"}})
        self.assertEqual(raised.exception.status_code, 403)
        self.assertEqual(raised.exception.detail, "Admin access required.")

    async def test_admin_gate_accepts_normalized_admin_role(self):
        user = {"id": "admin-1", "app_metadata": {"role": " ADMIN "}}
        self.assertIs(await main.get_current_admin_user(user=user), user)

    async def test_fix_subscription_rejects_unknown_tier(self):
        with self.assertRaises(HTTPException) as raised:
            await main.fix_subscription(
                request=main.FixSubscriptionRequest(email="alice@example.com", tier="gold"),
                admin={"id": "admin-1"},
            )
        self.assertEqual(raised.exception.status_code, 400)

    async def test_fix_subscription_unknown_email_is_not_found(self):
        with patch(
            "comparelabs.main.storage.find_profile_by_email",
            new=AsyncMock(return_value=None),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.fix_subscription(
                    request=main.FixSubscriptionRequest(email="ghost@example.com", tier="pro"),
                    admin={"id": "admin-1"},
                )
        self.assertEqual(raised.exception.status_code, 404)

    async def test_fix_subscription_sets_tier_allotment(self):
        update_mock = AsyncMock(side_effect=lambda user_id, changes: {**_account(), **changes})
        with (
            patch(
                "comparelabs.main.storage.find_profile_by_email",
                new=AsyncMock(return_value=_account()),
            ),
            patch("comparelabs.main.storage.update_profile", new=update_mock),
        ):
            payload = await main.fix_subscription(
                request=main.FixSubscriptionRequest(email=" Alice@Example.com ", tier="pro"),
                admin={"id": "admin-1"},
            )

        self.assertEqual(payload["tier"], "pro")
        self.assertEqual(payload["credits"], 30000)
        self.assertEqual(update_mock.await_args.args[1]["subscription_status"], "active")

    async def test_sync_without_subscription_is_not_found(self):
        with (
            patch(
                "comparelabs.main.storage.find_profile_by_email",
                new=AsyncMock(return_value=_account()),
            ),
            patch(
                "comparelabs.main.sync_account_from_stripe",
                new=AsyncMock(side_effect=ReconciliationError("No active subscription found.")),
            ),
        ):
            with self.assertRaises(HTTPException) as raised:
                await main.sync_subscription(
                    request=main.SyncSubscriptionRequest(email="alice@example.com"),
                    admin={"id": "admin-1"},
                )
        self.assertEqual(raised.exception.status_code, 404)

    async def test_reset_account_returns_free_tier(self):
        update_mock = AsyncMock(side_effect=lambda user_id, changes: {**_account(), **changes})
        with patch("comparelabs.main.storage.update_profile", new=update_mock):
            payload = await main.reset_account(account=_account(), _={"id": "user-1"})

        self.assertEqual(payload["tier"], "free")
        self.assertEqual(payload["credits"], 500)
        self.assertIsNone(payload["stripeSubscriptionId"])


if __name__ == "__main__":
    unittest.main()
