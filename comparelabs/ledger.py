"""Credit metering: cost estimation, sufficiency checks, debits and usage events."""

from typing import Any, Dict, Iterable

import httpx
import structlog
from pydantic import BaseModel

from . import storage
from .registry import ModelRegistry
from .subscriptions import STATUS_ACTIVE


logger = structlog.get_logger(__name__)

# Flat fee for the synthesis pass, independent of the synthesis model.
SYNTHESIS_CREDITS = 1


class LedgerError(Exception):
    """Credits could not be verified-deducted."""


class InsufficientCreditsError(LedgerError):
    """The conditional debit matched no row: the balance is too low."""


class UsageCheck(BaseModel):
    allowed: bool
    reason: str | None = None
    remaining_credits: int = 0


class UsageRejectedError(Exception):
    """A request was refused before any credits moved."""

    def __init__(self, check: UsageCheck):
        self.check = check
        super().__init__(check.reason or "Usage not allowed.")


def _to_int(value: Any) -> int:
    """Best-effort integer conversion."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _account_email(account: Dict[str, Any]) -> str:
    email = account.get("email")
    return email.strip().lower() if isinstance(email, str) else ""


def _account_credits(account: Dict[str, Any]) -> int:
    return max(0, _to_int(account.get("credits")))


class UsageLedger:
    """
    Meters requests against an account's prepaid credit balance.

    Args:
        registry: Model catalog used for per-question prices.
        exempt_emails: Accounts that are never checked or debited.
    """

    def __init__(self, registry: ModelRegistry, exempt_emails: Iterable[str] = ()):
        self.registry = registry
        self.exempt_emails = frozenset(email.strip().lower() for email in exempt_emails)

    def is_exempt(self, account: Dict[str, Any]) -> bool:
        email = _account_email(account)
        return bool(email) and email in self.exempt_emails

    def estimate_cost(
        self,
        model_ids: Iterable[str],
        include_synthesis: bool = False,
        synthesis_model_id: str | None = None,
    ) -> int:
        """
        Credits a request will cost, computed before anything runs.

        Synthesis adds a flat credit whenever it is requested alongside two or
        more models, whichever synthesis model is named; a single-model request
        can never produce a synthesis, so it is never charged for one.
        """
        ids = list(model_ids)
        total = self.registry.credits_for(ids)
        if include_synthesis and len(set(ids)) >= 2:
            total += SYNTHESIS_CREDITS
        return total

    def check_sufficiency(self, account: Dict[str, Any], needed_credits: int) -> UsageCheck:
        """Decide whether account may spend needed_credits right now."""
        credits = _account_credits(account)
        if self.is_exempt(account):
            return UsageCheck(allowed=True, remaining_credits=credits)

        if account.get("subscription_status") != STATUS_ACTIVE:
            return UsageCheck(
                allowed=False,
                reason="Subscription is not active",
                remaining_credits=credits,
            )

        if credits < needed_credits:
            return UsageCheck(
                allowed=False,
                reason=(
                    f"Insufficient credits. You have {credits} credits but need "
                    f"{needed_credits} for this request."
                ),
                remaining_credits=credits,
            )

        return UsageCheck(allowed=True, remaining_credits=credits)

    async def debit(self, account: Dict[str, Any], amount: int) -> int:
        """
        Deduct amount in one atomic conditional update.

        Returns:
            The balance left after the debit.

        Raises:
            InsufficientCreditsError: the balance dropped below amount meanwhile.
            LedgerError: the store could not be reached or answered badly.
        """
        if self.is_exempt(account) or amount <= 0:
            return _account_credits(account)

        account_id = account["id"]
        try:
            remaining = await storage.debit_account_credits(account_id, amount)
        except ValueError as error:
            logger.info("credit_debit_rejected", user_id=account_id, amount=amount)
            raise InsufficientCreditsError(str(error)) from error
        except (RuntimeError, httpx.HTTPError) as error:
            logger.error("credit_debit_failed", user_id=account_id, amount=amount, error=str(error))
            raise LedgerError("Failed to deduct credits. Please try again.") from error

        logger.info("credits_debited", user_id=account_id, amount=amount, remaining=remaining)
        return remaining

    async def balance(self, account_id: str) -> int:
        """Current stored balance, or 0 when it cannot be read."""
        try:
            profile = await storage.get_profile(account_id)
        except (RuntimeError, httpx.HTTPError) as error:
            logger.warning("credit_balance_read_failed", user_id=account_id, error=str(error))
            return 0
        return _account_credits(profile or {})

    async def record_usage(
        self,
        account_id: str,
        model_id: str,
        prompt_tokens: int,
        completion_tokens: int,
        cost_usd: float,
    ) -> bool:
        """Append one usage event. Never raises; returns whether it was written."""
        try:
            await storage.insert_usage_log(
                account_id,
                model_id,
                prompt_tokens,
                completion_tokens,
                cost_usd,
            )
        except Exception as error:
            logger.warning(
                "usage_log_write_failed",
                user_id=account_id,
                model_id=model_id,
                error=str(error),
            )
            return False
        return True

    async def usage_summary(self, account_id: str, limit: int = 100) -> Dict[str, Any]:
        """Recent usage events plus per-model totals for the account."""
        events = await storage.list_usage_logs(account_id, limit=limit)

        by_model: Dict[str, Dict[str, Any]] = {}
        totals = {"invocations": 0, "total_tokens": 0, "cost_usd": 0.0}
        for event in events:
            model_name = str(event.get("model_name") or "unknown")
            entry = by_model.setdefault(
                model_name,
                {"model_name": model_name, "invocations": 0, "total_tokens": 0, "cost_usd": 0.0},
            )
            tokens = _to_int(event.get("total_tokens"))
            try:
                cost = float(event.get("cost_usd") or 0.0)
            except (TypeError, ValueError):
                cost = 0.0

            entry["invocations"] += 1
            entry["total_tokens"] += tokens
            entry["cost_usd"] += cost
            totals["invocations"] += 1
            totals["total_tokens"] += tokens
            totals["cost_usd"] += cost

        for entry in by_model.values():
            entry["cost_usd"] = round(entry["cost_usd"], 8)
        totals["cost_usd"] = round(totals["cost_usd"], 8)

        return {
            "events": events,
            "by_model": sorted(by_model.values(), key=lambda item: item["cost_usd"], reverse=True),
            "totals": totals,
        }
