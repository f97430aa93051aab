"""Supabase authentication helpers."""

from typing import Any, Dict, List

import httpx
from fastapi import HTTPException

from .config import SUPABASE_SECRET_KEY, SUPABASE_URL


ROLE_USER = "user"
ROLE_ADMIN = "admin"
VALID_USER_ROLES = {ROLE_USER, ROLE_ADMIN}


def _ensure_supabase_config() -> tuple[str, str]:
    """Return validated Supabase config values."""
    if not SUPABASE_URL:
        raise HTTPException(
            status_code=500,
            detail=(
                "Supabase is not configured. Missing SUPABASE_URL (or SUPABASE_PROJECT_URL) "
                "in environment."
            ),
        )

    if not SUPABASE_SECRET_KEY:
        raise HTTPException(
            status_code=500,
            detail=(
                "Supabase is not configured. Missing SUPABASE_SERVICE_ROLE_KEY "
                "(or SUPABASE_API_KEY_SECRET) in environment."
            ),
        )

    return SUPABASE_URL.rstrip("/"), SUPABASE_SECRET_KEY


def _extract_error_message(payload: Any, fallback: str) -> str:
    """Extract a readable error from Supabase's auth error shape."""
    if not isinstance(payload, dict):
        return fallback
    return (
        payload.get("msg")
        or payload.get("error_description")
        or payload.get("error")
        or fallback
    )


def _admin_headers(api_key: str) -> Dict[str, str]:
    return {
        "apikey": api_key,
        "Authorization": f"Bearer {api_key}",
        "Content-Type": "application/json",
    }


def normalize_user_role(value: Any) -> str:
    """Normalize role text to the accepted role set."""
    if not isinstance(value, str):
        return ROLE_USER
    normalized = value.strip().lower()
    if normalized in VALID_USER_ROLES:
        return normalized
    return ROLE_USER


def user_role(user: Dict[str, Any]) -> str:
    """Role from the user's app_metadata; anything unrecognized is a plain user."""
    app_metadata = user.get("app_metadata") or {}
    if not isinstance(app_metadata, dict):
        return ROLE_USER
    return normalize_user_role(app_metadata.get("role"))


async def get_user_from_token(access_token: str) -> Dict[str, Any]:
    """Validate access token and return the Supabase auth user."""
    supabase_url, api_key = _ensure_supabase_config()
    url = f"{supabase_url}/auth/v1/user"

    try:
        async with httpx.AsyncClient(timeout=20) as client:
            response = await client.get(
                url,
                headers={
                    "apikey": api_key,
                    "Authorization": f"Bearer {access_token}",
                },
            )
    except httpx.HTTPError as error:
        raise HTTPException(status_code=502, detail="Auth service unavailable.") from error

    if response.status_code >= 400:
        raise HTTPException(status_code=401, detail="Invalid or expired session.")

    data = response.json()
    if not isinstance(data, dict) or not data.get("id"):
        raise HTTPException(status_code=401, detail="Invalid or expired session.")
    return data


async def list_users_admin(per_page: int = 200) -> List[Dict[str, Any]]:
    """List all auth users via Supabase admin API, paginating as needed."""
    supabase_url, api_key = _ensure_supabase_config()
    url = f"{supabase_url}/auth/v1/admin/users"

    safe_per_page = max(1, min(int(per_page), 1000))
    page = 1
    users: List[Dict[str, Any]] = []

    async with httpx.AsyncClient(timeout=20) as client:
        while True:
            try:
                response = await client.get(
                    url,
                    headers=_admin_headers(api_key),
                    params={"page": page, "per_page": safe_per_page},
                )
                data = response.json()
            except httpx.HTTPError as error:
                raise HTTPException(status_code=502, detail="Auth service unavailable.") from error
            except ValueError as error:
                raise HTTPException(
                    status_code=502,
                    detail="Invalid users payload from Supabase.",
                ) from error
            if response.status_code >= 400:
                raise HTTPException(
                    status_code=response.status_code,
                    detail=_extract_error_message(data, "Failed to list users."),
                )

            batch = data.get("users") if isinstance(data, dict) else None
            if not isinstance(batch, list):
                raise HTTPException(
                    status_code=502,
                    detail="Invalid users payload from Supabase.",
                )

            users.extend(user for user in batch if isinstance(user, dict))

            next_page = data.get("next_page")
            if next_page is None or next_page == "":
                if len(batch) < safe_per_page:
                    break
                page += 1
                continue

            try:
                next_page_int = int(next_page)
            except (TypeError, ValueError):
                break

            if next_page_int <= page:
                break
            page = next_page_int

    return users
