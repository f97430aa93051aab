"""Thin Stripe REST helpers (form-encoded requests with the secret key)."""

from typing import Any, Dict

import httpx
from fastapi import HTTPException

from .config import STRIPE_SECRET_KEY


STRIPE_API_BASE = "https://api.stripe.com"


async def _stripe_request(
    method: str,
    path: str,
    *,
    data: Dict[str, Any] | None = None,
    params: Dict[str, Any] | None = None,
) -> Dict[str, Any]:
    """Execute an authenticated Stripe API request and return parsed JSON."""
    if not STRIPE_SECRET_KEY:
        raise HTTPException(status_code=500, detail="Stripe is not configured on server.")

    url = f"{STRIPE_API_BASE}{path}"
    try:
        async with httpx.AsyncClient(timeout=30) as client:
            response = await client.request(
                method=method,
                url=url,
                data=data,
                params=params,
                headers={"Authorization": f"Bearer {STRIPE_SECRET_KEY}"},
            )
    except httpx.HTTPError as error:
        raise HTTPException(status_code=502, detail=f"Stripe is unreachable: {error}") from error

    if response.status_code >= 400:
        message = "Stripe request failed."
        try:
            payload = response.json()
            message = (
                payload.get("error", {}).get("message")
                or payload.get("message")
                or message
            )
        except ValueError:
            pass
        raise HTTPException(status_code=502, detail=message)

    try:
        payload = response.json()
    except ValueError as error:
        raise HTTPException(status_code=502, detail="Invalid response from Stripe.") from error

    if not isinstance(payload, dict):
        raise HTTPException(status_code=502, detail="Invalid response shape from Stripe.")
    return payload


def _first_list_item(payload: Dict[str, Any]) -> Dict[str, Any] | None:
    items = payload.get("data")
    if isinstance(items, list) and items and isinstance(items[0], dict):
        return items[0]
    return None


async def retrieve_subscription(subscription_id: str) -> Dict[str, Any]:
    return await _stripe_request("GET", f"/v1/subscriptions/{subscription_id}")


async def retrieve_customer(customer_id: str) -> Dict[str, Any]:
    return await _stripe_request("GET", f"/v1/customers/{customer_id}")


async def find_customer_by_email(email: str) -> Dict[str, Any] | None:
    """Return the most recent Stripe customer registered with email."""
    payload = await _stripe_request(
        "GET",
        "/v1/customers",
        params={"email": email, "limit": "1"},
    )
    return _first_list_item(payload)


async def find_active_subscription(customer_id: str) -> Dict[str, Any] | None:
    payload = await _stripe_request(
        "GET",
        "/v1/subscriptions",
        params={"customer": customer_id, "status": "active", "limit": "1"},
    )
    return _first_list_item(payload)


async def cancel_subscription_at_period_end(subscription_id: str) -> Dict[str, Any]:
    """Ask Stripe to stop renewing the subscription at the end of the period."""
    return await _stripe_request(
        "POST",
        f"/v1/subscriptions/{subscription_id}",
        data={"cancel_at_period_end": "true"},
    )


async def create_subscription_checkout_session(
    *,
    price_id: str,
    user_id: str,
    tier: str,
    success_url: str,
    cancel_url: str,
    customer_email: str | None = None,
) -> Dict[str, Any]:
    """Create a subscription-mode Checkout Session linked to user_id."""
    payload = {
        "mode": "subscription",
        "success_url": success_url,
        "cancel_url": cancel_url,
        "payment_method_types[0]": "card",
        "line_items[0][price]": price_id,
        "line_items[0][quantity]": "1",
        "client_reference_id": user_id,
        "metadata[user_id]": user_id,
        "metadata[tier]": tier,
        "allow_promotion_codes": "true",
    }
    if isinstance(customer_email, str) and customer_email:
        payload["customer_email"] = customer_email

    return await _stripe_request("POST", "/v1/checkout/sessions", data=payload)
