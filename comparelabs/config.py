"""Configuration for the CompareLabs backend."""

import os
from dotenv import load_dotenv

load_dotenv()

# OpenRouter API key
OPENROUTER_API_KEY = os.getenv("OPENROUTER_API_KEY")

# Supabase configuration
SUPABASE_URL = os.getenv("SUPABASE_URL") or os.getenv("SUPABASE_PROJECT_URL")
SUPABASE_SECRET_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv(
    "SUPABASE_API_KEY_SECRET"
)

# Runtime environment (development | production)
DEVELOPMENT_ENV_NAMES = {"development", "dev", "local"}


def _strip_wrapping_quotes(raw_value: str) -> str:
    """Trim whitespace and optional matching single/double quotes."""
    normalized_value = raw_value.strip()
    while (
        len(normalized_value) >= 2
        and normalized_value[0] == normalized_value[-1]
        and normalized_value[0] in {"'", '"'}
    ):
        normalized_value = normalized_value[1:-1].strip()
    return normalized_value


def resolve_app_env(
    raw_app_env: str | None,
    raw_environment: str | None,
) -> str:
    """Resolve runtime environment from supported env var fallbacks."""
    raw_value = raw_app_env or raw_environment or "production"
    return _strip_wrapping_quotes(raw_value).lower()


def _parse_csv_list(raw_value: str | None) -> list[str]:
    """Parse a comma-separated list, dropping blanks and duplicates."""
    if not raw_value:
        return []

    normalized_value = _strip_wrapping_quotes(raw_value)
    if not normalized_value:
        return []

    parsed: list[str] = []
    seen: set[str] = set()
    for item in normalized_value.split(","):
        normalized_item = _strip_wrapping_quotes(item)
        if not normalized_item or normalized_item in seen:
            continue
        parsed.append(normalized_item)
        seen.add(normalized_item)
    return parsed


def _parse_cors_origins(raw_origins: str | None) -> list[str]:
    """Parse a comma-separated list of CORS origins."""
    parsed_origins: list[str] = []
    for origin in _parse_csv_list(raw_origins):
        normalized_origin = origin.rstrip("/")
        if normalized_origin == "*":
            raise ValueError(
                "CORS_ALLOW_ORIGINS does not support '*' when credentials are enabled."
            )
        if normalized_origin and normalized_origin not in parsed_origins:
            parsed_origins.append(normalized_origin)
    return parsed_origins


def resolve_cors_allow_origins(
    raw_origins: str | None,
    environment: str,
) -> list[str]:
    """
    Resolve CORS origins using env overrides and environment-aware defaults.

    Development defaults to localhost origins for convenience.
    Production defaults to no cross-origin access unless explicitly configured.
    """
    parsed_origins = _parse_cors_origins(raw_origins)
    if parsed_origins:
        return parsed_origins
    if environment in DEVELOPMENT_ENV_NAMES:
        return ["http://localhost:3000", "http://localhost:5173"]
    return []


def parse_exempt_emails(raw_emails: str | None) -> frozenset[str]:
    """Parse the credit-exempt account allow-list into lowercase emails."""
    return frozenset(email.lower() for email in _parse_csv_list(raw_emails) if "@" in email)


def _parse_positive_float(raw_value: str | None, fallback: float) -> float:
    """Parse a positive float, falling back when missing or invalid."""
    if not raw_value:
        return fallback
    try:
        parsed = float(_strip_wrapping_quotes(raw_value))
    except ValueError:
        return fallback
    if parsed <= 0:
        return fallback
    return parsed


def _parse_bool(raw_value: str | None, fallback: bool) -> bool:
    """Parse common truthy/falsy env values."""
    if raw_value is None:
        return fallback
    normalized_value = _strip_wrapping_quotes(raw_value).lower()
    if normalized_value in {"1", "true", "yes", "on"}:
        return True
    if normalized_value in {"0", "false", "no", "off"}:
        return False
    return fallback


APP_ENV = resolve_app_env(
    os.getenv("APP_ENV"),
    os.getenv("ENVIRONMENT"),
)

CORS_ALLOW_ORIGINS = resolve_cors_allow_origins(
    os.getenv("CORS_ALLOW_ORIGINS"),
    APP_ENV,
)

# Public site URL used for checkout redirects
SITE_URL = (os.getenv("SITE_URL") or "http://localhost:3000").rstrip("/")

# Logging
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
LOG_JSON = _parse_bool(os.getenv("LOG_JSON"), APP_ENV not in DEVELOPMENT_ENV_NAMES)

# OpenRouter API endpoint
OPENROUTER_API_URL = "https://openrouter.ai/api/v1/chat/completions"

# Model call limits
MODEL_CALL_TIMEOUT_SECONDS = _parse_positive_float(
    os.getenv("MODEL_CALL_TIMEOUT_SECONDS"),
    60.0,
)
MODEL_MAX_TOKENS = int(os.getenv("MODEL_MAX_TOKENS") or "8192")
MODEL_TEMPERATURE = _parse_positive_float(os.getenv("MODEL_TEMPERATURE"), 0.7)

# Synthesis model used when the request does not name one
DEFAULT_SYNTHESIS_MODEL = (os.getenv("DEFAULT_SYNTHESIS_MODEL") or "gpt-5-mini").strip()

# Accounts that bypass credit checks and debits (comma-separated emails)
CREDIT_EXEMPT_EMAILS = parse_exempt_emails(os.getenv("CREDIT_EXEMPT_EMAILS"))

# Stripe configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY") or os.getenv("STRIPE_API_KEY_SECRET")
STRIPE_WEBHOOK_SECRET_TEST = os.getenv("STRIPE_WEBHOOK_SECRET_TEST")
STRIPE_WEBHOOK_SECRET_PROD = os.getenv("STRIPE_WEBHOOK_SECRET_PROD") or os.getenv(
    "STRIPE_WEBHOOK_SECRET"
)
STRIPE_PLUS_PRICE_ID = os.getenv("STRIPE_PLUS_PRICE_ID")
STRIPE_PRO_PRICE_ID = os.getenv("STRIPE_PRO_PRICE_ID")

# Stripe recommends a 5-minute tolerance.
STRIPE_SIGNATURE_TOLERANCE_SECONDS = int(
    os.getenv("STRIPE_SIGNATURE_TOLERANCE_SECONDS") or "300"
)
