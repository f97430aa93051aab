"""Apply Stripe webhook events to account subscription state.

Each handled event is claimed by id before anything changes, resolved to an
account through a strategy chain, priced from the charged amount, and written
to the webhook audit log whatever the outcome.
"""

from typing import Any, Awaitable, Callable, Dict, Sequence

import httpx
import structlog
from fastapi import HTTPException
from pydantic import BaseModel

from .. import storage, stripe_client
from ..subscriptions import (
    PROVIDER_TERMINAL_STATUSES,
    activate_tier,
    payment_failed,
    subscription_changed,
    subscription_deleted,
)
from .identity import (
    CHECKOUT_CHAIN,
    CUSTOMER_CHAIN,
    INVOICE_PAID_CHAIN,
    BillingIdentity,
    normalize_email,
    resolve_account,
)
from .pricing import (
    derive_tier,
    has_price_data,
    subscription_period_end,
    subscription_price,
)


logger = structlog.get_logger(__name__)


class ReconciliationError(Exception):
    """The event could not be applied; it is audited and acknowledged."""


class ReconciliationOutcome(BaseModel):
    object_id: str | None = None
    customer_email: str | None = None
    account_id: str | None = None
    strategy: str | None = None
    tier: str | None = None
    success: bool = False
    error: str | None = None
    attempted_update: Dict[str, Any] | None = None


def _object_id(value: Any) -> str | None:
    """Stripe expandable fields are either an id string or an object with an id."""
    if isinstance(value, dict):
        value = value.get("id")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _checkout_user_id(checkout_session: Dict[str, Any]) -> str | None:
    """Resolve an app user id from Stripe checkout session payload."""
    metadata = checkout_session.get("metadata") or {}
    if not isinstance(metadata, dict):
        metadata = {}

    user_id = checkout_session.get("client_reference_id") or metadata.get("user_id")
    if isinstance(user_id, str) and user_id.strip():
        return user_id.strip()
    return None


def _invoice_subscription_id(invoice: Dict[str, Any]) -> str | None:
    subscription_id = _object_id(invoice.get("subscription"))
    if subscription_id:
        return subscription_id
    parent = invoice.get("parent") or {}
    details = parent.get("subscription_details") if isinstance(parent, dict) else None
    if isinstance(details, dict):
        return _object_id(details.get("subscription"))
    return None


async def _resolve(
    identity: BillingIdentity,
    chain: Sequence[str],
    outcome: ReconciliationOutcome,
) -> Dict[str, Any]:
    profile, strategy = await resolve_account(identity, chain)
    outcome.customer_email = identity.email
    if profile is None:
        raise ReconciliationError(
            "No account matched the event "
            f"(customer={identity.customer_id or '-'}, email={identity.email or '-'})."
        )
    outcome.account_id = profile.get("id")
    outcome.strategy = strategy
    return profile


async def _fetch_subscription(subscription_id: str) -> Dict[str, Any]:
    try:
        return await stripe_client.retrieve_subscription(subscription_id)
    except HTTPException as error:
        raise ReconciliationError(
            f"Failed to retrieve subscription {subscription_id}: {error.detail}"
        ) from error


def _is_stale_subscription(profile: Dict[str, Any], subscription_id: str | None) -> bool:
    """True when the account already moved on to a different subscription."""
    current = profile.get("stripe_subscription_id")
    return bool(current and subscription_id and current != subscription_id)


async def _apply_update(
    profile: Dict[str, Any],
    update: Dict[str, Any],
    outcome: ReconciliationOutcome,
):
    outcome.attempted_update = update
    try:
        updated = await storage.update_profile(profile["id"], update)
    except (RuntimeError, httpx.HTTPError) as error:
        logger.error(
            "billing_account_update_failed",
            user_id=profile["id"],
            attempted_update=update,
            error=str(error),
        )
        raise ReconciliationError(f"Failed to update account: {error}") from error

    if updated is None:
        logger.error("billing_account_update_missed", user_id=profile["id"], attempted_update=update)
        raise ReconciliationError("Account update matched no rows.")

    outcome.success = True
    outcome.tier = updated.get("subscription_tier") or update.get("subscription_tier")


def _skip_stale(profile: Dict[str, Any], subscription_id: str | None, outcome: ReconciliationOutcome):
    logger.info(
        "stale_subscription_event_skipped",
        user_id=profile.get("id"),
        subscription_id=subscription_id,
        current_subscription_id=profile.get("stripe_subscription_id"),
    )
    outcome.success = True
    outcome.tier = profile.get("subscription_tier")


# Event handlers


async def handle_checkout_completed(session: Dict[str, Any], outcome: ReconciliationOutcome):
    customer_details = session.get("customer_details") or {}
    identity = BillingIdentity(
        user_id=_checkout_user_id(session),
        customer_id=_object_id(session.get("customer")),
        email=normalize_email(
            (customer_details.get("email") if isinstance(customer_details, dict) else None)
            or session.get("customer_email")
        ),
    )
    profile = await _resolve(identity, CHECKOUT_CHAIN, outcome)

    if not identity.customer_id and identity.email:
        try:
            customer = await stripe_client.find_customer_by_email(identity.email)
        except HTTPException as error:
            logger.warning("stripe_customer_search_failed", email=identity.email, error=error.detail)
            customer = None
        identity.customer_id = _object_id(customer)

    subscription_field = session.get("subscription")
    subscription_id = _object_id(subscription_field)
    subscription = subscription_field if has_price_data(subscription_field) else None

    if subscription is None and subscription_id:
        subscription = await _fetch_subscription(subscription_id)
    if subscription is None and identity.customer_id:
        try:
            subscription = await stripe_client.find_active_subscription(identity.customer_id)
        except HTTPException as error:
            raise ReconciliationError(
                f"Failed to list subscriptions for {identity.customer_id}: {error.detail}"
            ) from error
        subscription_id = _object_id(subscription)

    if subscription is not None:
        amount, price_id = subscription_price(subscription)
        period_end = subscription_period_end(subscription)
    else:
        amount, price_id, period_end = session.get("amount_total"), None, None

    tier = derive_tier(amount, price_id)
    update = activate_tier(
        tier,
        customer_id=identity.customer_id,
        subscription_id=subscription_id,
        current_period_end=period_end,
    )
    await _apply_update(profile, update, outcome)


async def handle_subscription_changed(subscription: Dict[str, Any], outcome: ReconciliationOutcome):
    subscription_id = _object_id(subscription)
    identity = BillingIdentity(customer_id=_object_id(subscription.get("customer")))
    profile = await _resolve(identity, CUSTOMER_CHAIN, outcome)

    provider_status = subscription.get("status")
    if provider_status in PROVIDER_TERMINAL_STATUSES and _is_stale_subscription(profile, subscription_id):
        _skip_stale(profile, subscription_id, outcome)
        return

    if not has_price_data(subscription) and subscription_id:
        subscription = await _fetch_subscription(subscription_id)

    amount, price_id = subscription_price(subscription)
    update = subscription_changed(
        derive_tier(amount, price_id),
        provider_status=provider_status,
        cancel_at_period_end=bool(subscription.get("cancel_at_period_end")),
        customer_id=identity.customer_id,
        subscription_id=subscription_id,
        current_period_end=subscription_period_end(subscription),
    )
    await _apply_update(profile, update, outcome)


async def handle_subscription_deleted(subscription: Dict[str, Any], outcome: ReconciliationOutcome):
    subscription_id = _object_id(subscription)
    identity = BillingIdentity(customer_id=_object_id(subscription.get("customer")))
    profile = await _resolve(identity, CUSTOMER_CHAIN, outcome)

    if _is_stale_subscription(profile, subscription_id):
        _skip_stale(profile, subscription_id, outcome)
        return

    await _apply_update(profile, subscription_deleted(), outcome)


async def handle_invoice_paid(invoice: Dict[str, Any], outcome: ReconciliationOutcome):
    identity = BillingIdentity(
        customer_id=_object_id(invoice.get("customer")),
        email=normalize_email(invoice.get("customer_email")),
    )
    profile = await _resolve(identity, INVOICE_PAID_CHAIN, outcome)

    subscription_id = _invoice_subscription_id(invoice)
    if not subscription_id:
        raise ReconciliationError("Invoice is not linked to a subscription.")

    subscription = await _fetch_subscription(subscription_id)
    amount, price_id = subscription_price(subscription)
    if amount is None:
        amount = invoice.get("amount_paid")

    update = activate_tier(
        derive_tier(amount, price_id),
        customer_id=identity.customer_id,
        subscription_id=subscription_id,
        current_period_end=subscription_period_end(subscription),
    )
    await _apply_update(profile, update, outcome)


async def handle_payment_failed(invoice: Dict[str, Any], outcome: ReconciliationOutcome):
    identity = BillingIdentity(
        customer_id=_object_id(invoice.get("customer")),
        email=normalize_email(invoice.get("customer_email")),
    )
    profile = await _resolve(identity, CUSTOMER_CHAIN, outcome)
    await _apply_update(profile, payment_failed(), outcome)


async def sync_account_from_stripe(profile: Dict[str, Any]) -> Dict[str, Any]:
    """
    Pull the account's current Stripe subscription by email and apply it.

    Credits are reset to the derived tier's allotment.

    Raises:
        ReconciliationError: no customer, no active subscription, or the write failed.
        HTTPException: Stripe could not be reached.
    """
    email = normalize_email(profile.get("email"))
    if not email:
        raise ReconciliationError("Account has no email to look up.")

    customer = await stripe_client.find_customer_by_email(email)
    customer_id = _object_id(customer)
    if not customer_id:
        raise ReconciliationError(f"No Stripe customer found for {email}.")

    subscription = await stripe_client.find_active_subscription(customer_id)
    if subscription is None:
        raise ReconciliationError(f"No active subscription found for {email}.")

    amount, price_id = subscription_price(subscription)
    update = activate_tier(
        derive_tier(amount, price_id),
        customer_id=customer_id,
        subscription_id=_object_id(subscription),
        current_period_end=subscription_period_end(subscription),
    )
    outcome = ReconciliationOutcome(object_id=_object_id(subscription), customer_email=email)
    await _apply_update(profile, update, outcome)
    logger.info("account_synced_from_stripe", user_id=profile.get("id"), tier=outcome.tier)
    return {**profile, **update}


Handler = Callable[[Dict[str, Any], ReconciliationOutcome], Awaitable[None]]

EVENT_HANDLERS: Dict[str, Handler] = {
    "checkout.session.completed": handle_checkout_completed,
    "customer.subscription.created": handle_subscription_changed,
    "customer.subscription.updated": handle_subscription_changed,
    "customer.subscription.deleted": handle_subscription_deleted,
    "invoice.payment_succeeded": handle_invoice_paid,
    "invoice.payment_failed": handle_payment_failed,
}


# Engine


async def _write_audit(event: Dict[str, Any], outcome: ReconciliationOutcome):
    entry = {
        "event_id": event.get("id"),
        "event_type": event.get("type"),
        "object_id": outcome.object_id,
        "customer_email": outcome.customer_email,
        "user_id": outcome.account_id,
        "subscription_tier": outcome.tier,
        "success": outcome.success,
        "error_message": outcome.error,
        "attempted_update": outcome.attempted_update,
        "raw_data": event,
    }
    try:
        await storage.insert_webhook_log(entry)
    except Exception as error:
        logger.error("webhook_audit_write_failed", error=str(error), outcome=outcome.model_dump())


async def process_event(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    Reconcile one verified Stripe event.

    Returns the acknowledgement body. Unexpected failures release the event
    claim and propagate so Stripe redelivers.
    """
    event_id = event.get("id")
    event_type = event.get("type")
    data_object = (event.get("data") or {}).get("object")

    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("stripe_event_unhandled")
        return {"received": True}

    if not isinstance(event_id, str) or not event_id or not isinstance(data_object, dict):
        logger.warning("stripe_event_malformed")
        return {"received": True, "ignored": True}

    claimed = await storage.claim_webhook_event(event_id, event_type, bool(event.get("livemode")))
    if not claimed:
        logger.info("stripe_event_duplicate")
        return {"received": True, "duplicate": True}

    outcome = ReconciliationOutcome(object_id=_object_id(data_object))
    try:
        await handler(data_object, outcome)
    except ReconciliationError as error:
        outcome.success = False
        outcome.error = str(error)
        logger.warning("stripe_event_not_reconciled", error=outcome.error, user_id=outcome.account_id)
    except Exception as error:
        outcome.success = False
        outcome.error = f"Unexpected error: {error}"
        logger.exception("stripe_event_crashed")
        await _write_audit(event, outcome)
        try:
            await storage.release_webhook_event(event_id)
        except Exception as release_error:
            logger.error("stripe_event_release_failed", error=str(release_error))
        raise

    await _write_audit(event, outcome)
    if outcome.success:
        logger.info(
            "stripe_event_reconciled",
            user_id=outcome.account_id,
            tier=outcome.tier,
            strategy=outcome.strategy,
        )
    return {"received": True, "processed": outcome.success}
