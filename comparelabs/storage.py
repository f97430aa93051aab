"""Supabase Postgres storage for accounts, usage and billing records."""

from typing import Any, Dict, List, Optional
from datetime import datetime, timezone

import httpx

from .config import SUPABASE_SECRET_KEY, SUPABASE_URL


FREE_TIER_CREDITS = 500

PROFILE_COLUMNS = (
    "id,email,subscription_tier,subscription_status,credits,"
    "stripe_customer_id,stripe_subscription_id,current_period_end,updated_at"
)


def _to_int(value: Any) -> int:
    """Best-effort integer conversion."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _ensure_supabase_db_config() -> tuple[str, str]:
    """Return validated Supabase REST config values."""
    if not SUPABASE_URL:
        raise RuntimeError(
            "Supabase DB is not configured. Missing SUPABASE_URL (or SUPABASE_PROJECT_URL)."
        )
    if not SUPABASE_SECRET_KEY:
        raise RuntimeError(
            "Supabase DB is not configured. Missing SUPABASE_SERVICE_ROLE_KEY "
            "(or SUPABASE_API_KEY_SECRET)."
        )
    return SUPABASE_URL.rstrip("/"), SUPABASE_SECRET_KEY


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract readable error messages from PostgREST payloads."""
    if isinstance(payload, dict):
        return (
            payload.get("message")
            or payload.get("hint")
            or payload.get("details")
            or fallback
        )
    return fallback


async def _rest_request(
    method: str,
    resource: str,
    *,
    params: Optional[Dict[str, str]] = None,
    json_body: Optional[Any] = None,
    prefer: Optional[str] = None,
):
    """Make an authenticated request to Supabase PostgREST."""
    supabase_url, api_key = _ensure_supabase_db_config()
    url = f"{supabase_url}/rest/v1/{resource}"

    headers: Dict[str, str] = {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
    }
    if json_body is not None:
        headers["Content-Type"] = "application/json"
    if prefer:
        headers["Prefer"] = prefer

    async with httpx.AsyncClient(timeout=20) as client:
        response = await client.request(
            method=method,
            url=url,
            params=params,
            json=json_body,
            headers=headers,
        )

    if response.status_code >= 400:
        try:
            payload = response.json()
        except ValueError:
            payload = None
        raise RuntimeError(
            _extract_error_message(payload, f"Database request failed ({response.status_code}).")
        )

    if not response.content:
        return None

    try:
        return response.json()
    except ValueError:
        return None


def _first_row(rows: Any) -> Dict[str, Any] | None:
    if isinstance(rows, list) and rows and isinstance(rows[0], dict):
        return rows[0]
    return None


def _escape_like(value: str) -> str:
    """Escape PostgREST ilike wildcards so the value matches literally."""
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# Profiles


async def get_profile(user_id: str) -> Dict[str, Any] | None:
    """Load the account profile row for a user id."""
    rows = await _rest_request(
        "GET",
        "profiles",
        params={
            "select": PROFILE_COLUMNS,
            "id": f"eq.{user_id}",
            "limit": "1",
        },
    )
    return _first_row(rows)


async def ensure_profile(user_id: str, email: str | None) -> Dict[str, Any]:
    """Return the profile for user_id, creating the signup default when missing."""
    existing = await get_profile(user_id)
    if existing is not None:
        return existing

    await _rest_request(
        "POST",
        "profiles",
        params={"on_conflict": "id"},
        json_body={
            "id": user_id,
            "email": (email or "").strip().lower() or None,
            "subscription_tier": "free",
            "subscription_status": "active",
            "credits": FREE_TIER_CREDITS,
        },
        prefer="resolution=ignore-duplicates,return=minimal",
    )
    created = await get_profile(user_id)
    if created is None:
        raise RuntimeError("Failed to create account profile.")
    return created


async def find_profile_by_email(email: str) -> Dict[str, Any] | None:
    """Case-insensitive exact email match."""
    rows = await _rest_request(
        "GET",
        "profiles",
        params={
            "select": PROFILE_COLUMNS,
            "email": f"ilike.{_escape_like(email)}",
            "limit": "1",
        },
    )
    return _first_row(rows)


async def find_profiles_by_local_prefix(local_part: str, domain: str) -> List[Dict[str, Any]]:
    """
    Load profiles whose base email is local_part@domain.

    The exact base address is looked up on its own first, so a long list of
    +alias rows can never push it past the result limit.
    """
    exact = await find_profile_by_email(f"{local_part}@{domain}")
    if exact is not None:
        return [exact]

    rows = await _rest_request(
        "GET",
        "profiles",
        params={
            "select": PROFILE_COLUMNS,
            "email": f"ilike.{_escape_like(local_part)}+*@{_escape_like(domain)}",
            "order": "email.asc",
            "limit": "50",
        },
    )
    if not isinstance(rows, list):
        return []
    return [row for row in rows if isinstance(row, dict)]


async def find_profile_by_customer_id(customer_id: str) -> Dict[str, Any] | None:
    """Load the profile linked to a Stripe customer id."""
    rows = await _rest_request(
        "GET",
        "profiles",
        params={
            "select": PROFILE_COLUMNS,
            "stripe_customer_id": f"eq.{customer_id}",
            "limit": "1",
        },
    )
    return _first_row(rows)


async def update_profile(user_id: str, changes: Dict[str, Any]) -> Dict[str, Any] | None:
    """Apply a column update to one profile and return the updated row."""
    rows = await _rest_request(
        "PATCH",
        "profiles",
        params={"id": f"eq.{user_id}"},
        json_body={**changes, "updated_at": _now_iso()},
        prefer="return=representation",
    )
    return _first_row(rows)


# Credits


def _parse_credit_result(result: Any) -> int:
    """Normalize RPC credit result payloads into an integer."""
    if isinstance(result, int):
        return result

    if isinstance(result, dict):
        for key in ("credits", "remaining_credits", "debit_account_credits"):
            value = result.get(key)
            if isinstance(value, int):
                return value

    if isinstance(result, list) and result:
        first = result[0]
        if isinstance(first, int):
            return first
        if isinstance(first, dict):
            return _parse_credit_result(first)

    raise RuntimeError("Unexpected credit response from database.")


async def debit_account_credits(user_id: str, amount: int) -> int:
    """
    Atomically subtract amount from the account balance.

    The RPC performs a single conditional update
    (credits = credits - amount WHERE id = user AND credits >= amount) and
    raises INSUFFICIENT_CREDITS when no row matches.

    Returns:
        The remaining balance after the debit.
    """
    if amount <= 0:
        raise ValueError("Debit amount must be greater than zero.")

    try:
        result = await _rest_request(
            "POST",
            "rpc/debit_account_credits",
            json_body={
                "p_user_id": user_id,
                "p_amount": amount,
            },
        )
    except RuntimeError as error:
        if "INSUFFICIENT_CREDITS" in str(error):
            raise ValueError("Insufficient credits for this request.") from error
        raise
    return _parse_credit_result(result)


# Usage log


async def insert_usage_log(
    user_id: str,
    model_name: str,
    prompt_tokens: int,
    completion_tokens: int,
    cost_usd: float,
):
    """Append one usage event row."""
    await _rest_request(
        "POST",
        "usage_logs",
        json_body={
            "user_id": user_id,
            "model_name": model_name,
            "prompt_tokens": max(0, int(prompt_tokens)),
            "completion_tokens": max(0, int(completion_tokens)),
            "total_tokens": max(0, int(prompt_tokens)) + max(0, int(completion_tokens)),
            "cost_usd": max(0.0, float(cost_usd)),
        },
        prefer="return=minimal",
    )


async def list_usage_logs(user_id: str, limit: int = 100) -> List[Dict[str, Any]]:
    """Return recent usage events for a user, newest first."""
    safe_limit = min(max(limit, 1), 500)
    rows = await _rest_request(
        "GET",
        "usage_logs",
        params={
            "select": "model_name,prompt_tokens,completion_tokens,total_tokens,cost_usd,created_at",
            "user_id": f"eq.{user_id}",
            "order": "created_at.desc",
            "limit": str(safe_limit),
        },
    )
    if not isinstance(rows, list):
        return []
    return rows


# Webhook bookkeeping


async def insert_webhook_log(entry: Dict[str, Any]):
    """Append one reconciliation audit entry."""
    await _rest_request(
        "POST",
        "webhook_logs",
        json_body=entry,
        prefer="return=minimal",
    )


async def claim_webhook_event(event_id: str, event_type: str, livemode: bool) -> bool:
    """
    Record event_id as processed.

    Returns:
        True when this call inserted the row, False when it already existed.
    """
    rows = await _rest_request(
        "POST",
        "processed_webhook_events",
        params={"on_conflict": "event_id"},
        json_body={
            "event_id": event_id,
            "event_type": event_type,
            "livemode": bool(livemode),
            "processed_at": _now_iso(),
        },
        prefer="resolution=ignore-duplicates,return=representation",
    )
    return isinstance(rows, list) and len(rows) > 0


async def release_webhook_event(event_id: str):
    """Forget a claimed event so a redelivery can process it again."""
    await _rest_request(
        "DELETE",
        "processed_webhook_events",
        params={"event_id": f"eq.{event_id}"},
        prefer="return=minimal",
    )
