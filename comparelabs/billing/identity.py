"""Cascading account resolution for billing events.

Each strategy takes a BillingIdentity and returns a profile row or None. The
chain for an event type is an ordered tuple of strategy names; the first
strategy that matches wins.
"""

import uuid
from typing import Any, Awaitable, Callable, Dict, List, Sequence

import httpx
import structlog
from fastapi import HTTPException
from pydantic import BaseModel

from .. import auth, storage, stripe_client


logger = structlog.get_logger(__name__)


def normalize_email(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip().lower()
    if "@" not in normalized:
        return None
    return normalized


def base_email(value: Any) -> str | None:
    """Strip a +alias from the local part: 'user+promo@x.com' -> 'user@x.com'."""
    normalized = normalize_email(value)
    if normalized is None:
        return None
    local_part, _, domain = normalized.rpartition("@")
    local_part = local_part.split("+", 1)[0]
    if not local_part or not domain:
        return None
    return f"{local_part}@{domain}"


class BillingIdentity(BaseModel):
    """What a billing event tells us about its account."""

    user_id: str | None = None
    customer_id: str | None = None
    email: str | None = None
    email_lookup_done: bool = False


async def ensure_email(identity: BillingIdentity) -> str | None:
    """Fill identity.email from the Stripe customer record when the event carries none."""
    if identity.email or identity.email_lookup_done or not identity.customer_id:
        return identity.email

    identity.email_lookup_done = True
    try:
        customer = await stripe_client.retrieve_customer(identity.customer_id)
    except HTTPException as error:
        logger.warning(
            "stripe_customer_lookup_failed",
            customer_id=identity.customer_id,
            error=error.detail,
        )
        return None

    identity.email = normalize_email(customer.get("email"))
    return identity.email


async def by_client_reference(identity: BillingIdentity) -> Dict[str, Any] | None:
    """Account ids are UUIDs; any other client reference falls through."""
    if not identity.user_id:
        return None
    try:
        uuid.UUID(identity.user_id)
    except ValueError:
        logger.info("client_reference_not_account_id", client_reference=identity.user_id)
        return None

    try:
        return await storage.get_profile(identity.user_id)
    except (RuntimeError, httpx.HTTPError) as error:
        logger.warning(
            "client_reference_lookup_failed",
            client_reference=identity.user_id,
            error=str(error),
        )
        return None


async def by_customer_id(identity: BillingIdentity) -> Dict[str, Any] | None:
    if not identity.customer_id:
        return None
    return await storage.find_profile_by_customer_id(identity.customer_id)


async def by_exact_email(identity: BillingIdentity) -> Dict[str, Any] | None:
    email = await ensure_email(identity)
    if not email:
        return None
    return await storage.find_profile_by_email(email)


async def by_base_email(identity: BillingIdentity) -> Dict[str, Any] | None:
    target = base_email(await ensure_email(identity))
    if not target:
        return None
    local_part, _, domain = target.rpartition("@")
    candidates = await storage.find_profiles_by_local_prefix(local_part, domain)
    for candidate in candidates:
        if base_email(candidate.get("email")) == target:
            return candidate
    return None


async def by_directory_scan(identity: BillingIdentity) -> Dict[str, Any] | None:
    """Scan every auth user: exact email first, then base email."""
    email = await ensure_email(identity)
    if not email:
        return None

    try:
        users = await auth.list_users_admin()
    except HTTPException as error:
        logger.warning("auth_directory_scan_failed", error=error.detail)
        return None

    target_base = base_email(email)
    matched: Dict[str, Any] | None = None
    for user in users:
        if normalize_email(user.get("email")) == email:
            matched = user
            break
    if matched is None and target_base:
        for user in users:
            if base_email(user.get("email")) == target_base:
                matched = user
                break
    if matched is None or not matched.get("id"):
        return None

    return await storage.ensure_profile(matched["id"], matched.get("email"))


Strategy = Callable[[BillingIdentity], Awaitable[Dict[str, Any] | None]]

STRATEGIES: Dict[str, Strategy] = {
    "client_reference": by_client_reference,
    "customer_id": by_customer_id,
    "exact_email": by_exact_email,
    "base_email": by_base_email,
    "directory_scan": by_directory_scan,
}

CHECKOUT_CHAIN = ("client_reference", "exact_email", "base_email", "directory_scan", "customer_id")
INVOICE_PAID_CHAIN = ("exact_email", "base_email", "directory_scan", "customer_id")
CUSTOMER_CHAIN = ("customer_id", "exact_email", "base_email", "directory_scan")


async def resolve_account(
    identity: BillingIdentity,
    chain: Sequence[str],
    strategies: Dict[str, Strategy] | None = None,
) -> tuple[Dict[str, Any] | None, str | None]:
    """
    Try each named strategy in order.

    Returns:
        (profile, strategy name) for the first match, or (None, None).
    """
    registry = STRATEGIES if strategies is None else strategies
    tried: List[str] = []
    for name in chain:
        profile = await registry[name](identity)
        tried.append(name)
        if profile is not None:
            logger.info(
                "billing_account_resolved",
                strategy=name,
                user_id=profile.get("id"),
                customer_id=identity.customer_id,
            )
            return profile, name

    logger.warning(
        "billing_account_unresolved",
        tried=tried,
        customer_id=identity.customer_id,
        email=identity.email,
    )
    return None, None
