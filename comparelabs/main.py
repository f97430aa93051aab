"""FastAPI backend for CompareLabs."""

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel
from typing import List, Dict, Any
from contextlib import suppress
import asyncio
import json

import httpx
import structlog

from . import storage
from .auth import ROLE_ADMIN, get_user_from_token, user_role
from .billing import (
    ReconciliationError,
    SignatureVerificationError,
    build_webhook_verifiers,
    normalize_email,
    process_event,
    sync_account_from_stripe,
    verify_webhook_signature,
)
from .config import (
    CORS_ALLOW_ORIGINS,
    CREDIT_EXEMPT_EMAILS,
    LOG_JSON,
    LOG_LEVEL,
    SITE_URL,
    STRIPE_PLUS_PRICE_ID,
    STRIPE_PRO_PRICE_ID,
)
from .ledger import LedgerError, UsageLedger, UsageRejectedError
from .logging_config import configure_logging
from .orchestrator import ComparisonOrchestrator
from .registry import BUCKET_CREDITS, build_default_registry
from .stripe_client import (
    cancel_subscription_at_period_end,
    create_subscription_checkout_session,
)
from .subscriptions import (
    TIER_PLUS,
    TIER_PRO,
    InvalidTransitionError,
    admin_set_tier,
    normalize_tier,
    request_cancellation,
    reset_to_free,
)

configure_logging(log_level=LOG_LEVEL, json_logs=LOG_JSON)
logger = structlog.get_logger(__name__)

app = FastAPI(title="CompareLabs API")
bearer_scheme = HTTPBearer()

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

registry = build_default_registry()
ledger = UsageLedger(registry, exempt_emails=CREDIT_EXEMPT_EMAILS)
orchestrator = ComparisonOrchestrator(registry, ledger)

DISCONNECT_POLL_SECONDS = 0.5


class ChatRequest(BaseModel):
    """Prompt fan-out request for the batch and streaming endpoints."""
    prompt: str
    models: List[str]
    enableSummarization: bool = False
    summarizationModel: str | None = None


class CheckoutRequest(BaseModel):
    tier: str


class CancelSubscriptionRequest(BaseModel):
    subscriptionId: str


class FixSubscriptionRequest(BaseModel):
    email: str
    tier: str


class SyncSubscriptionRequest(BaseModel):
    email: str


class AccountResponse(BaseModel):
    """Account summary for the dashboard."""
    id: str
    email: str | None = None
    tier: str
    status: str
    credits: int
    currentPeriodEnd: str | None = None
    stripeSubscriptionId: str | None = None


PRICE_IDS_BY_TIER = {
    TIER_PLUS: STRIPE_PLUS_PRICE_ID,
    TIER_PRO: STRIPE_PRO_PRICE_ID,
}


def _account_response(profile: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": profile["id"],
        "email": profile.get("email"),
        "tier": profile.get("subscription_tier") or "free",
        "status": profile.get("subscription_status") or "active",
        "credits": max(0, int(profile.get("credits") or 0)),
        "currentPeriodEnd": profile.get("current_period_end"),
        "stripeSubscriptionId": profile.get("stripe_subscription_id"),
    }


def _sse(event: Dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, error: RequestValidationError):
    """Malformed bodies are a plain 400 rather than FastAPI's default 422."""
    return JSONResponse(
        status_code=400,
        content={"detail": "Invalid request parameters", "errors": jsonable_encoder(error.errors())},
    )


@app.exception_handler(UsageRejectedError)
async def usage_rejected_handler(request: Request, error: UsageRejectedError):
    return JSONResponse(
        status_code=429,
        content={
            "detail": error.check.reason,
            "remainingCredits": error.check.remaining_credits,
        },
    )


@app.get("/")
async def root():
    """Health check endpoint."""
    return {"status": "ok", "service": "CompareLabs API"}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(bearer_scheme),
):
    """Validate bearer token with Supabase and return the auth user."""
    return await get_user_from_token(credentials.credentials)


async def get_current_account(
    user: Dict[str, Any] = Depends(get_current_user),
):
    """Load the caller's account profile, creating the free default on first use."""
    try:
        profile = await storage.ensure_profile(user["id"], user.get("email"))
    except (RuntimeError, httpx.HTTPError) as error:
        logger.error("account_load_failed", user_id=user["id"], error=str(error))
        raise HTTPException(status_code=500, detail="Failed to load account.") from error

    if not profile.get("email") and user.get("email"):
        profile = {**profile, "email": user["email"]}
    structlog.contextvars.bind_contextvars(user_id=user["id"])
    return profile


async def get_current_admin_user(
    user: Dict[str, Any] = Depends(get_current_user),
):
    """Validate that the authenticated user has administrator privileges."""
    if user_role(user) != ROLE_ADMIN:
        raise HTTPException(status_code=403, detail="Admin access required.")
    return user


async def _update_account(user_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    try:
        updated = await storage.update_profile(user_id, changes)
    except (RuntimeError, httpx.HTTPError) as error:
        logger.error("account_update_failed", user_id=user_id, changes=changes, error=str(error))
        raise HTTPException(status_code=500, detail="Failed to update account.") from error
    if updated is None:
        raise HTTPException(status_code=404, detail="Account not found.")
    return updated


async def _find_account_by_email(email: str) -> Dict[str, Any]:
    normalized = normalize_email(email)
    if not normalized:
        raise HTTPException(status_code=400, detail="A valid email is required.")
    profile = await storage.find_profile_by_email(normalized)
    if profile is None:
        raise HTTPException(status_code=404, detail=f"No account found for {normalized}.")
    return profile


async def _prepare_comparison(request: ChatRequest, account: Dict[str, Any]):
    """Validate, check access and charge a comparison. Returns (plan, remaining credits)."""
    try:
        plan = orchestrator.plan(
            request.prompt,
            request.models,
            enable_synthesis=request.enableSummarization,
            synthesis_model_id=request.summarizationModel,
        )
    except ValueError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error

    if not orchestrator.check_model_access(account, plan):
        raise HTTPException(status_code=403, detail="Your plan does not include the selected models.")

    try:
        remaining = await orchestrator.authorize(account, plan)
    except LedgerError as error:
        raise HTTPException(status_code=500, detail=str(error)) from error
    return plan, remaining


@app.get("/api/models")
async def list_models():
    """Public model catalog grouped by bucket."""
    return {
        "buckets": {
            bucket: [model.to_public_dict() for model in registry.list_by_bucket(bucket)]
            for bucket in BUCKET_CREDITS
        },
        "defaultModels": registry.default_model_ids(),
    }


@app.post("/api/chat")
async def chat(
    request: ChatRequest,
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Run a comparison and return every model's result in one response."""
    plan, remaining = await _prepare_comparison(request, account)

    comparison = await orchestrator.run_batch(account["id"], plan)
    return {
        **comparison.to_public_dict(),
        "remainingCredits": remaining,
    }


@app.post("/api/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    account: Dict[str, Any] = Depends(get_current_account),
):
    """
    Run a comparison and stream tagged model events.
    Returns Server-Sent Events; the last event is always ``done``.
    """
    plan, remaining = await _prepare_comparison(request, account)

    async def event_generator():
        cancel_event = asyncio.Event()

        async def watch_disconnect():
            while not cancel_event.is_set():
                if await http_request.is_disconnected():
                    cancel_event.set()
                    return
                await asyncio.sleep(DISCONNECT_POLL_SECONDS)

        watcher = asyncio.create_task(watch_disconnect())
        try:
            async for event in orchestrator.stream(account["id"], plan, cancel_event=cancel_event):
                if event["type"] == "done":
                    event = {**event, "remainingCredits": remaining}
                yield _sse(event)
        except asyncio.CancelledError:
            cancel_event.set()
            raise
        except Exception as e:
            logger.exception("comparison_stream_failed", user_id=account["id"])
            yield _sse({"type": "error", "error": str(e)})
            yield _sse({"type": "done", "remainingCredits": remaining})
        finally:
            watcher.cancel()
            with suppress(asyncio.CancelledError):
                await watcher

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        },
    )


@app.get("/api/webhooks/stripe")
async def stripe_webhook_probe():
    """Reachability check for the webhook endpoint."""
    return {"status": "ok", "endpoint": "stripe-webhook"}


@app.post("/api/webhooks/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: str | None = Header(default=None, alias="Stripe-Signature"),
):
    """Handle Stripe webhook events for subscription reconciliation."""
    payload = await request.body()
    if not payload:
        raise HTTPException(status_code=400, detail="Missing webhook payload.")

    try:
        mode = verify_webhook_signature(payload, stripe_signature, build_webhook_verifiers())
    except SignatureVerificationError as error:
        logger.warning("stripe_signature_rejected", reason=str(error))
        raise HTTPException(status_code=400, detail="Invalid signature") from error

    try:
        event = json.loads(payload.decode("utf-8"))
    except ValueError as error:
        raise HTTPException(status_code=400, detail="Invalid webhook payload.") from error

    if not isinstance(event, dict):
        raise HTTPException(status_code=400, detail="Invalid webhook payload shape.")

    structlog.contextvars.bind_contextvars(
        stripe_event_id=event.get("id"),
        stripe_event_type=event.get("type"),
        stripe_mode=mode,
    )
    try:
        return await process_event(event)
    except Exception as error:
        raise HTTPException(status_code=500, detail="Webhook handler failed") from error
    finally:
        structlog.contextvars.unbind_contextvars("stripe_event_id", "stripe_event_type", "stripe_mode")


@app.get("/api/account", response_model=AccountResponse)
async def get_account(account: Dict[str, Any] = Depends(get_current_account)):
    """Tier, status and credit balance of the logged in account."""
    return _account_response(account)


@app.get("/api/account/usage")
async def get_account_usage(
    limit: int = Query(default=100, ge=1, le=500),
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Recent usage events with per-model totals."""
    try:
        return await ledger.usage_summary(account["id"], limit=limit)
    except (RuntimeError, httpx.HTTPError) as error:
        logger.error("usage_summary_failed", user_id=account["id"], error=str(error))
        raise HTTPException(status_code=500, detail="Failed to load usage.") from error


@app.post("/api/create-checkout")
async def create_checkout(
    request: CheckoutRequest,
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Create a Stripe subscription checkout session for a paid tier."""
    try:
        tier = normalize_tier(request.tier)
    except InvalidTransitionError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error

    price_id = PRICE_IDS_BY_TIER.get(tier)
    if tier not in PRICE_IDS_BY_TIER:
        raise HTTPException(status_code=400, detail="Only paid tiers can be purchased.")
    if not price_id:
        raise HTTPException(status_code=500, detail=f"Stripe price for {tier} is not configured.")

    session = await create_subscription_checkout_session(
        price_id=price_id,
        user_id=account["id"],
        tier=tier,
        success_url=f"{SITE_URL}/dashboard?checkout=success",
        cancel_url=f"{SITE_URL}/pricing?checkout=cancelled",
        customer_email=account.get("email"),
    )

    checkout_url = session.get("url")
    if not checkout_url:
        raise HTTPException(status_code=502, detail="Stripe checkout URL not returned.")

    logger.info("checkout_session_created", user_id=account["id"], tier=tier)
    return {"sessionId": session.get("id"), "url": checkout_url}


@app.post("/api/subscription/cancel")
async def cancel_subscription(
    request: CancelSubscriptionRequest,
    account: Dict[str, Any] = Depends(get_current_account),
):
    """Stop renewal at the end of the current period."""
    subscription_id = (request.subscriptionId or "").strip()
    if not subscription_id or subscription_id != account.get("stripe_subscription_id"):
        raise HTTPException(status_code=403, detail="Subscription does not belong to this account.")

    try:
        changes = request_cancellation(account)
    except InvalidTransitionError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error

    await cancel_subscription_at_period_end(subscription_id)
    updated = await _update_account(account["id"], changes)
    logger.info("subscription_cancel_requested", user_id=account["id"], subscription_id=subscription_id)
    return _account_response(updated)


@app.post("/api/subscription/reset-account")
async def reset_account(
    account: Dict[str, Any] = Depends(get_current_account),
    _: Dict[str, Any] = Depends(get_current_admin_user),
):
    """Reset the caller's own account to the free tier."""
    updated = await _update_account(account["id"], reset_to_free())
    logger.info("account_reset", user_id=account["id"])
    return _account_response(updated)


@app.post("/api/admin/fix-subscription")
async def fix_subscription(
    request: FixSubscriptionRequest,
    admin: Dict[str, Any] = Depends(get_current_admin_user),
):
    """Force an account onto a tier with that tier's credit allotment."""
    try:
        changes = admin_set_tier(request.tier)
    except InvalidTransitionError as error:
        raise HTTPException(status_code=400, detail=str(error)) from error

    profile = await _find_account_by_email(request.email)
    updated = await _update_account(profile["id"], changes)
    logger.info(
        "admin_subscription_fixed",
        admin_id=admin.get("id"),
        user_id=profile["id"],
        tier=changes["subscription_tier"],
    )
    return _account_response(updated)


@app.post("/api/admin/sync-subscription")
async def sync_subscription(
    request: SyncSubscriptionRequest,
    admin: Dict[str, Any] = Depends(get_current_admin_user),
):
    """Re-derive an account's tier from its active Stripe subscription."""
    profile = await _find_account_by_email(request.email)
    try:
        synced = await sync_account_from_stripe(profile)
    except ReconciliationError as error:
        raise HTTPException(status_code=404, detail=str(error)) from error

    logger.info("admin_subscription_synced", admin_id=admin.get("id"), user_id=profile["id"])
    return _account_response(synced)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8001)
