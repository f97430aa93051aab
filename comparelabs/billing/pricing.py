"""Tier derivation from Stripe price data."""

from datetime import datetime, timezone
from typing import Any, Dict

from .. import config
from ..subscriptions import TIER_FREE, TIER_PLUS, TIER_PRO


# Minimum monthly unit amounts, in minor currency units.
PRO_MIN_AMOUNT = 2500
PLUS_MIN_AMOUNT = 500


def _to_int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def iso_datetime_from_unix(value: Any) -> str | None:
    """Convert unix timestamp seconds to ISO datetime (UTC)."""
    timestamp = _to_int_or_none(value)
    if timestamp is None or timestamp <= 0:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat()


def derive_tier(
    amount: Any,
    price_id: Any,
    *,
    plus_price_id: str | None = None,
    pro_price_id: str | None = None,
) -> str:
    """
    Tier for a charged amount, falling back to configured price ids.

    The amount decides whenever it names a paid tier. Price ids only matter
    when the amount alone would give the free tier.
    """
    tier = TIER_FREE
    parsed_amount = _to_int_or_none(amount)
    if parsed_amount is not None:
        if parsed_amount >= PRO_MIN_AMOUNT:
            tier = TIER_PRO
        elif parsed_amount >= PLUS_MIN_AMOUNT:
            tier = TIER_PLUS

    if tier == TIER_FREE and isinstance(price_id, str) and price_id:
        configured_plus = plus_price_id if plus_price_id is not None else config.STRIPE_PLUS_PRICE_ID
        configured_pro = pro_price_id if pro_price_id is not None else config.STRIPE_PRO_PRICE_ID
        if configured_plus and price_id == configured_plus:
            tier = TIER_PLUS
        elif configured_pro and price_id == configured_pro:
            tier = TIER_PRO
    return tier


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = subscription.get("items")
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def has_price_data(subscription: Any) -> bool:
    return isinstance(subscription, dict) and bool(_first_item(subscription).get("price"))


def subscription_price(subscription: Dict[str, Any]) -> tuple[int | None, str | None]:
    """Return (unit_amount, price_id) of the subscription's first item."""
    item = _first_item(subscription)
    price = item.get("price")
    if not isinstance(price, dict):
        price = subscription.get("plan") if isinstance(subscription.get("plan"), dict) else {}

    amount = _to_int_or_none(price.get("unit_amount", price.get("amount")))
    price_id = price.get("id")
    return amount, price_id if isinstance(price_id, str) else None


def subscription_period_end(subscription: Dict[str, Any]) -> str | None:
    """current_period_end lives on the subscription or, on newer API versions, its items."""
    return iso_datetime_from_unix(
        subscription.get("current_period_end")
        or _first_item(subscription).get("current_period_end")
    )
