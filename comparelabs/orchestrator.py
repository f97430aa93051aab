"""Comparison orchestration: one prompt fanned out to several models.

Every model call runs as its own task and fails on its own. Batch mode waits
for all of them; streaming mode merges their tagged events into one stream
as they arrive. A synthesis pass runs afterwards when it was requested and
at least two models answered.
"""

import asyncio
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List

import structlog
from pydantic import BaseModel, ConfigDict

from . import gateway
from .config import DEFAULT_SYNTHESIS_MODEL, MODEL_CALL_TIMEOUT_SECONDS
from .gateway import ModelCallError
from .ledger import InsufficientCreditsError, UsageCheck, UsageLedger, UsageRejectedError
from .registry import ModelDescriptor, ModelRegistry, UnknownModelError


logger = structlog.get_logger(__name__)

TIMEOUT_MESSAGE = "Response took too long and was cancelled"
EMPTY_RESPONSE_MESSAGE = "Model produced no content."
UNEXPECTED_FAILURE_MESSAGE = "Unexpected model failure."
MIN_SUCCESSES_FOR_SYNTHESIS = 2

MODEL_TERMINAL_EVENTS = {"complete", "error"}
SYNTHESIS_TERMINAL_EVENTS = {"summary", "summary-error"}

_CANCELLED = object()


class ComparisonCancelled(Exception):
    """The request-scoped cancellation signal fired."""


class ComparisonPlan(BaseModel):
    """A validated, priced comparison request."""

    prompt: str
    models: List[ModelDescriptor]
    synthesis_model: ModelDescriptor | None = None
    cost: int = 0


class ModelCallResult(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    model_name: str
    response: str = ""
    success: bool = False
    error: str | None = None
    finish_reason: str | None = None
    prompt_tokens: int = 0
    completion_tokens: int = 0
    cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def token_usage(self) -> Dict[str, int]:
        return {
            "promptTokens": self.prompt_tokens,
            "completionTokens": self.completion_tokens,
            "totalTokens": self.total_tokens,
        }

    def to_public_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "modelId": self.model_id,
            "modelName": self.model_name,
            "response": self.response if self.success else f"Error: {self.error}",
            "success": self.success,
            "tokenUsage": self.token_usage(),
        }
        if not self.success:
            payload["error"] = self.error
        return payload


class ComparisonResult(BaseModel):
    results: List[ModelCallResult]
    summary: str | None = None
    summary_error: str | None = None

    @property
    def success_count(self) -> int:
        return sum(1 for result in self.results if result.success)

    def to_public_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "results": [result.to_public_dict() for result in self.results],
        }
        if self.summary is not None:
            payload["summary"] = self.summary
        if self.summary_error is not None:
            payload["summaryError"] = self.summary_error
        return payload


def build_synthesis_prompt(prompt: str, results: List[ModelCallResult]) -> str:
    """Deterministic synthesis prompt over the successful responses, in request order."""
    responses_text = "\n\n---\n\n".join(
        f"**{result.model_name}**:\n{result.response}" for result in results
    )

    return f"""You are a synthesis model that combines multiple AI-generated answers into one superior response.

Original Question: {prompt}

Model Responses:
{responses_text}

Your task:
1. Identify where the responses agree, where they disagree, and any unique insight that only one response offers.
2. Write one integrated answer to the original question that keeps the strongest points and resolves the contradictions.
3. Finish with a short rationale (two to four sentences) explaining how you reconciled the responses.

Integrated answer:"""


def _dedupe(model_ids: List[str]) -> List[str]:
    seen: set[str] = set()
    ordered: List[str] = []
    for model_id in model_ids:
        normalized = model_id.strip() if isinstance(model_id, str) else ""
        if normalized and normalized not in seen:
            ordered.append(normalized)
            seen.add(normalized)
    return ordered


class ComparisonOrchestrator:
    """
    Runs comparisons for one registry and ledger.

    Args:
        registry: Model catalog.
        ledger: Credit ledger used for pricing, debits and usage events.
        call_timeout: Per-model ceiling in seconds.
        default_synthesis_model: Registry id used when a request names none.
    """

    def __init__(
        self,
        registry: ModelRegistry,
        ledger: UsageLedger,
        *,
        call_timeout: float = MODEL_CALL_TIMEOUT_SECONDS,
        default_synthesis_model: str = DEFAULT_SYNTHESIS_MODEL,
    ):
        self.registry = registry
        self.ledger = ledger
        self.call_timeout = call_timeout
        self.default_synthesis_model = default_synthesis_model

    # Planning and charging

    def plan(
        self,
        prompt: Any,
        model_ids: Any,
        enable_synthesis: bool = False,
        synthesis_model_id: str | None = None,
    ) -> ComparisonPlan:
        """
        Validate and price a request.

        Raises:
            ValueError: empty prompt or no models.
            UnknownModelError: a model id (or the synthesis model) is not in the catalog.
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("Prompt is required.")
        if not isinstance(model_ids, list):
            raise ValueError("Models must be a list of model ids.")

        ids = _dedupe(model_ids)
        if not ids:
            raise ValueError("At least one model is required.")

        unknown = self.registry.unknown_ids(ids)
        if unknown:
            raise UnknownModelError(unknown)

        synthesis_model = None
        wants_synthesis = bool(enable_synthesis) and len(ids) >= MIN_SUCCESSES_FOR_SYNTHESIS
        if wants_synthesis:
            synthesis_model = self.registry.require(
                (synthesis_model_id or "").strip() or self.default_synthesis_model
            )

        return ComparisonPlan(
            prompt=prompt,
            models=[self.registry.require(model_id) for model_id in ids],
            synthesis_model=synthesis_model,
            cost=self.ledger.estimate_cost(
                ids,
                include_synthesis=wants_synthesis,
                synthesis_model_id=synthesis_model.id if synthesis_model else None,
            ),
        )

    def check_model_access(self, account: Dict[str, Any], plan: ComparisonPlan) -> bool:
        """Every model is open to every account; access is limited by credits only."""
        return True

    async def authorize(self, account: Dict[str, Any], plan: ComparisonPlan) -> int:
        """
        Check and debit the full cost before any model is called.

        Returns:
            Remaining credits after the debit.

        Raises:
            UsageRejectedError: inactive subscription or not enough credits.
            LedgerError: the debit could not be performed.
        """
        check = self.ledger.check_sufficiency(account, plan.cost)
        if not check.allowed:
            raise UsageRejectedError(check)

        try:
            return await self.ledger.debit(account, plan.cost)
        except InsufficientCreditsError as error:
            remaining = await self.ledger.balance(account["id"])
            raise UsageRejectedError(
                UsageCheck(
                    allowed=False,
                    reason=(
                        f"Insufficient credits. You have {remaining} credits but need "
                        f"{plan.cost} for this request."
                    ),
                    remaining_credits=remaining,
                )
            ) from error

    # Single calls

    async def _record(self, account_id: str, usage_label: str, result: ModelCallResult):
        await self.ledger.record_usage(
            account_id,
            usage_label,
            result.prompt_tokens,
            result.completion_tokens,
            result.cost_usd,
        )

    def _fill_success(self, result: ModelCallResult, descriptor: ModelDescriptor, text: str, usage: Dict[str, Any]):
        result.success = True
        result.response = text
        result.prompt_tokens = int(usage.get("prompt_tokens") or 0)
        result.completion_tokens = int(usage.get("completion_tokens") or 0)
        result.cost_usd = self.registry.cost_usd(
            descriptor.id,
            result.prompt_tokens,
            result.completion_tokens,
        )

    async def _completed_call(self, descriptor: ModelDescriptor, prompt: str) -> ModelCallResult:
        """Run one non-streaming call; failures become an error result."""
        result = ModelCallResult(model_id=descriptor.id, model_name=descriptor.display_name)
        try:
            reply = await asyncio.wait_for(
                gateway.complete(descriptor.backend_model, prompt, timeout=self.call_timeout),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError:
            result.error = TIMEOUT_MESSAGE
        except ModelCallError as error:
            result.error = str(error)
        except Exception:
            logger.exception("model_call_crashed", model_id=descriptor.id)
            result.error = UNEXPECTED_FAILURE_MESSAGE
        else:
            result.finish_reason = reply.get("finish_reason")
            self._fill_success(result, descriptor, reply["content"], reply.get("usage") or {})

        if result.error:
            logger.warning("model_call_failed", model_id=descriptor.id, error=result.error)
        return result

    async def _streamed_call(
        self,
        descriptor: ModelDescriptor,
        prompt: str,
        on_text: Callable[[str], Awaitable[None]],
    ) -> ModelCallResult:
        """Run one streaming call, handing each fragment to on_text as it arrives."""
        result = ModelCallResult(model_id=descriptor.id, model_name=descriptor.display_name)
        parts: List[str] = []
        usage: Dict[str, Any] = {}

        async def consume():
            nonlocal usage
            async for item in gateway.stream_completion(
                descriptor.backend_model,
                prompt,
                timeout=self.call_timeout,
            ):
                if item["type"] == "delta":
                    parts.append(item["text"])
                    await on_text(item["text"])
                elif item["type"] == "finish":
                    usage = item.get("usage") or {}
                    result.finish_reason = item.get("finish_reason")

        try:
            await asyncio.wait_for(consume(), timeout=self.call_timeout)
        except asyncio.TimeoutError:
            result.error = TIMEOUT_MESSAGE
        except ModelCallError as error:
            if "".join(parts).strip():
                # Keep what already arrived.
                logger.warning("model_stream_interrupted", model_id=descriptor.id, error=str(error))
            else:
                result.error = str(error)
        except Exception:
            logger.exception("model_stream_crashed", model_id=descriptor.id)
            result.error = UNEXPECTED_FAILURE_MESSAGE

        text = "".join(parts)
        if result.error is None and not text.strip():
            result.error = EMPTY_RESPONSE_MESSAGE
        if result.error is None:
            self._fill_success(result, descriptor, text, usage)
        else:
            logger.warning("model_call_failed", model_id=descriptor.id, error=result.error)
        return result

    # Batch mode

    async def _invoke(self, account_id: str, descriptor: ModelDescriptor, prompt: str) -> ModelCallResult:
        result = await self._completed_call(descriptor, prompt)
        await self._record(account_id, descriptor.id, result)
        return result

    async def run_batch(self, account_id: str, plan: ComparisonPlan) -> ComparisonResult:
        """Call every model concurrently and wait for all of them to settle."""
        results = await asyncio.gather(
            *(self._invoke(account_id, descriptor, plan.prompt) for descriptor in plan.models)
        )
        comparison = ComparisonResult(results=list(results))

        successes = [result for result in comparison.results if result.success]
        if plan.synthesis_model is not None and len(successes) >= MIN_SUCCESSES_FOR_SYNTHESIS:
            synthesis = await self._completed_call(
                plan.synthesis_model,
                build_synthesis_prompt(plan.prompt, successes),
            )
            await self._record(account_id, f"{plan.synthesis_model.id}_summary", synthesis)
            if synthesis.success:
                comparison.summary = synthesis.response
            else:
                comparison.summary_error = synthesis.error

        logger.info(
            "comparison_completed",
            user_id=account_id,
            models=len(comparison.results),
            succeeded=comparison.success_count,
            summarized=comparison.summary is not None,
        )
        return comparison

    # Streaming mode

    async def _stream_model_task(
        self,
        account_id: str,
        descriptor: ModelDescriptor,
        prompt: str,
        queue: asyncio.Queue,
    ) -> ModelCallResult:
        async def on_text(text: str):
            await queue.put(
                {
                    "type": "chunk",
                    "modelId": descriptor.id,
                    "modelName": descriptor.display_name,
                    "chunk": text,
                }
            )

        try:
            result = await self._streamed_call(descriptor, prompt, on_text)
        except asyncio.CancelledError:
            cancelled = ModelCallResult(
                model_id=descriptor.id,
                model_name=descriptor.display_name,
                error="Cancelled",
            )
            await asyncio.shield(self._record(account_id, descriptor.id, cancelled))
            raise

        if result.success:
            await queue.put(
                {
                    "type": "complete",
                    "modelId": descriptor.id,
                    "modelName": descriptor.display_name,
                    "response": result.response,
                    "finishReason": result.finish_reason,
                    "tokenUsage": result.token_usage(),
                }
            )
        else:
            await queue.put(
                {
                    "type": "error",
                    "modelId": descriptor.id,
                    "modelName": descriptor.display_name,
                    "error": result.error,
                }
            )
        await asyncio.shield(self._record(account_id, descriptor.id, result))
        return result

    async def _stream_synthesis_task(
        self,
        account_id: str,
        plan: ComparisonPlan,
        successes: List[ModelCallResult],
        queue: asyncio.Queue,
    ) -> ModelCallResult:
        synthesis_model = plan.synthesis_model
        usage_label = f"{synthesis_model.id}_summary"

        async def on_text(text: str):
            await queue.put({"type": "summary-chunk", "chunk": text})

        try:
            result = await self._streamed_call(
                synthesis_model,
                build_synthesis_prompt(plan.prompt, successes),
                on_text,
            )
        except asyncio.CancelledError:
            cancelled = ModelCallResult(
                model_id=synthesis_model.id,
                model_name=synthesis_model.display_name,
                error="Cancelled",
            )
            await asyncio.shield(self._record(account_id, usage_label, cancelled))
            raise

        if result.success:
            await queue.put(
                {
                    "type": "summary",
                    "summary": result.response,
                    "modelId": synthesis_model.id,
                    "modelName": synthesis_model.display_name,
                    "tokenUsage": result.token_usage(),
                }
            )
        else:
            await queue.put({"type": "summary-error", "error": result.error})
        await asyncio.shield(self._record(account_id, usage_label, result))
        return result

    @staticmethod
    async def _drain(
        queue: asyncio.Queue,
        expected_terminals: int,
        terminal_types: set[str],
    ) -> AsyncIterator[Dict[str, Any]]:
        settled = 0
        while settled < expected_terminals:
            item = await queue.get()
            if item is _CANCELLED:
                raise ComparisonCancelled()
            if item["type"] in terminal_types:
                settled += 1
            yield item

    async def stream(
        self,
        account_id: str,
        plan: ComparisonPlan,
        cancel_event: asyncio.Event | None = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """
        Stream tagged events from every model as they arrive.

        Per-model chunk order is preserved; nothing is promised across models.
        The stream ends with a ``done`` event unless cancel_event fires, in
        which case every in-flight call is cancelled and the stream stops.
        """
        queue: asyncio.Queue = asyncio.Queue()
        tasks: List[asyncio.Task] = [
            asyncio.create_task(self._stream_model_task(account_id, descriptor, plan.prompt, queue))
            for descriptor in plan.models
        ]

        watcher: asyncio.Task | None = None
        if cancel_event is not None:
            watcher = asyncio.create_task(cancel_event.wait())

            def _signal_cancel(task: asyncio.Task):
                if not task.cancelled():
                    queue.put_nowait(_CANCELLED)

            watcher.add_done_callback(_signal_cancel)

        try:
            async for event in self._drain(queue, len(tasks), MODEL_TERMINAL_EVENTS):
                yield event

            results: List[ModelCallResult] = list(await asyncio.gather(*tasks))
            successes = [result for result in results if result.success]

            if plan.synthesis_model is not None and len(successes) >= MIN_SUCCESSES_FOR_SYNTHESIS:
                tasks.append(
                    asyncio.create_task(
                        self._stream_synthesis_task(account_id, plan, successes, queue)
                    )
                )
                async for event in self._drain(queue, 1, SYNTHESIS_TERMINAL_EVENTS):
                    yield event

            logger.info(
                "comparison_streamed",
                user_id=account_id,
                models=len(results),
                succeeded=len(successes),
            )
            yield {"type": "done"}
        except ComparisonCancelled:
            logger.info("comparison_cancelled", user_id=account_id)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            if watcher is not None:
                watcher.cancel()
