"""Account subscription states (tier x status) and the updates that move between them.

Every transition returns the profile column update to apply; nothing here
touches storage. Transitions into the free tier always reset credits to the
free allotment.
"""

from typing import Any, Dict


TIER_FREE = "free"
TIER_PLUS = "plus"
TIER_PRO = "pro"
VALID_TIERS = (TIER_FREE, TIER_PLUS, TIER_PRO)

STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
STATUS_CANCEL_AT_PERIOD_END = "cancel_at_period_end"
VALID_STATUSES = (
    STATUS_ACTIVE,
    STATUS_PAST_DUE,
    STATUS_CANCELED,
    STATUS_CANCEL_AT_PERIOD_END,
)

TIER_CREDITS: Dict[str, int] = {
    TIER_FREE: 500,
    TIER_PLUS: 10000,
    TIER_PRO: 30000,
}

# Stripe subscription statuses that end the paid relationship.
PROVIDER_TERMINAL_STATUSES = {"canceled", "incomplete_expired"}
PROVIDER_PAST_DUE_STATUSES = {"past_due", "unpaid"}


class InvalidTransitionError(ValueError):
    """Raised when a requested subscription change is not allowed."""


def normalize_tier(value: Any) -> str:
    """Return a known tier or raise InvalidTransitionError."""
    normalized = value.strip().lower() if isinstance(value, str) else ""
    if normalized not in VALID_TIERS:
        raise InvalidTransitionError(
            f"Invalid tier {value!r}. Must be one of: {', '.join(VALID_TIERS)}."
        )
    return normalized


def credits_for_tier(tier: str) -> int:
    return TIER_CREDITS[normalize_tier(tier)]


def activate_tier(
    tier: str,
    *,
    status: str = STATUS_ACTIVE,
    customer_id: str | None = None,
    subscription_id: str | None = None,
    current_period_end: str | None = None,
) -> Dict[str, Any]:
    """Put the account on tier with a full credit allotment."""
    normalized_tier = normalize_tier(tier)
    if status not in VALID_STATUSES:
        raise InvalidTransitionError(f"Invalid subscription status {status!r}.")

    update: Dict[str, Any] = {
        "subscription_tier": normalized_tier,
        "subscription_status": status,
        "credits": TIER_CREDITS[normalized_tier],
    }
    if customer_id:
        update["stripe_customer_id"] = customer_id
    if subscription_id:
        update["stripe_subscription_id"] = subscription_id
    if current_period_end:
        update["current_period_end"] = current_period_end
    return update


def request_cancellation(profile: Dict[str, Any]) -> Dict[str, Any]:
    """User asked to stop renewing; the tier stays until the provider ends the period."""
    status = profile.get("subscription_status")
    if status == STATUS_CANCELED:
        raise InvalidTransitionError("Subscription is already canceled.")
    if profile.get("subscription_tier") == TIER_FREE:
        raise InvalidTransitionError("Free accounts have no subscription to cancel.")
    return {"subscription_status": STATUS_CANCEL_AT_PERIOD_END}


def reset_to_free() -> Dict[str, Any]:
    """Administrative reset: free tier, active, billing references cleared."""
    return {
        "subscription_tier": TIER_FREE,
        "subscription_status": STATUS_ACTIVE,
        "credits": TIER_CREDITS[TIER_FREE],
        "stripe_customer_id": None,
        "stripe_subscription_id": None,
        "current_period_end": None,
    }


def admin_set_tier(tier: Any) -> Dict[str, Any]:
    """Administrative tier fix. No business rules beyond a known tier."""
    return activate_tier(normalize_tier(tier))


def subscription_deleted() -> Dict[str, Any]:
    """Provider ended the subscription. The customer reference is kept."""
    return {
        "subscription_tier": TIER_FREE,
        "subscription_status": STATUS_CANCELED,
        "credits": TIER_CREDITS[TIER_FREE],
        "stripe_subscription_id": None,
        "current_period_end": None,
    }


def payment_failed() -> Dict[str, Any]:
    """Renewal payment failed. The customer reference is kept."""
    return {
        "subscription_tier": TIER_FREE,
        "subscription_status": STATUS_PAST_DUE,
        "credits": TIER_CREDITS[TIER_FREE],
        "stripe_subscription_id": None,
    }


def status_from_provider(provider_status: Any, cancel_at_period_end: bool) -> str:
    """Map a Stripe subscription status onto an account status."""
    if provider_status in PROVIDER_TERMINAL_STATUSES:
        return STATUS_CANCELED
    if provider_status in PROVIDER_PAST_DUE_STATUSES:
        return STATUS_PAST_DUE
    if cancel_at_period_end:
        return STATUS_CANCEL_AT_PERIOD_END
    return STATUS_ACTIVE


def subscription_changed(
    tier: str,
    *,
    provider_status: Any,
    cancel_at_period_end: bool = False,
    customer_id: str | None = None,
    subscription_id: str | None = None,
    current_period_end: str | None = None,
) -> Dict[str, Any]:
    """Mirror a created/updated provider subscription onto the account."""
    status = status_from_provider(provider_status, cancel_at_period_end)
    if status == STATUS_CANCELED:
        return subscription_deleted()
    return activate_tier(
        tier,
        status=status,
        customer_id=customer_id,
        subscription_id=subscription_id,
        current_period_end=current_period_end,
    )
