"""OpenRouter API client for single-prompt completions, batch and streaming."""

import json
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import structlog

from .config import (
    MODEL_CALL_TIMEOUT_SECONDS,
    MODEL_MAX_TOKENS,
    MODEL_TEMPERATURE,
    OPENROUTER_API_KEY,
    OPENROUTER_API_URL,
)


logger = structlog.get_logger(__name__)


class ModelCallError(Exception):
    """A model backend failed to produce a usable answer."""


def _to_int(value: Any) -> int:
    """Convert a value to int, returning 0 when conversion is not possible."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


def _to_float(value: Any) -> Optional[float]:
    """Convert a value to float, returning None when conversion is not possible."""
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _normalize_usage(raw_usage: Any) -> Dict[str, Any]:
    """
    Normalize usage payloads across OpenRouter/OpenAI-compatible key variants.

    Returns:
        Dict with prompt_tokens, completion_tokens, total_tokens, and provider cost.
    """
    usage = raw_usage if isinstance(raw_usage, dict) else {}

    prompt_tokens = _to_int(usage.get("prompt_tokens", usage.get("input_tokens")))
    completion_tokens = _to_int(
        usage.get("completion_tokens", usage.get("output_tokens"))
    )
    total_tokens = _to_int(usage.get("total_tokens"))
    if total_tokens <= 0:
        total_tokens = prompt_tokens + completion_tokens

    cost: Optional[float] = None
    for key in ("cost", "total_cost"):
        parsed = _to_float(usage.get(key))
        if parsed is not None:
            cost = parsed
            break

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
        "cost": cost,
    }


def _headers() -> Dict[str, str]:
    if not OPENROUTER_API_KEY:
        raise ModelCallError("Model gateway is not configured. Missing OPENROUTER_API_KEY.")
    return {
        "Authorization": f"Bearer {OPENROUTER_API_KEY}",
        "Content-Type": "application/json",
    }


def _build_payload(backend_model: str, prompt: str, *, stream: bool) -> Dict[str, Any]:
    messages: List[Dict[str, Any]] = [{"role": "user", "content": prompt}]
    payload: Dict[str, Any] = {
        "model": backend_model,
        "messages": messages,
        "max_tokens": MODEL_MAX_TOKENS,
        "temperature": MODEL_TEMPERATURE,
    }
    if stream:
        payload["stream"] = True
        payload["stream_options"] = {"include_usage": True}
    return payload


def _error_detail(payload: Any, fallback: str) -> str:
    """Pull a readable message out of an OpenRouter error body."""
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if payload.get("message"):
            return str(payload["message"])
    return fallback


async def complete(
    backend_model: str,
    prompt: str,
    timeout: float = MODEL_CALL_TIMEOUT_SECONDS,
) -> Dict[str, Any]:
    """
    Query a single model via OpenRouter and wait for the whole answer.

    Args:
        backend_model: OpenRouter model identifier (e.g., "openai/gpt-5")
        prompt: User prompt text
        timeout: Request timeout in seconds

    Returns:
        Dict with 'content', 'finish_reason' and normalized 'usage'.

    Raises:
        ModelCallError: non-2xx status, transport failure, malformed or empty body.
    """
    headers = _headers()
    payload = _build_payload(backend_model, prompt, stream=False)

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            response = await client.post(
                OPENROUTER_API_URL,
                headers=headers,
                json=payload,
            )
    except httpx.HTTPError as error:
        raise ModelCallError(f"Request to {backend_model} failed: {error}") from error

    try:
        data = response.json()
    except ValueError:
        data = None

    if response.status_code >= 400:
        raise ModelCallError(
            _error_detail(data, f"Model request failed ({response.status_code}).")
        )

    try:
        choice = data["choices"][0]
        content = choice["message"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError) as error:
        raise ModelCallError(
            _error_detail(data, "Malformed response from model backend.")
        ) from error

    if not isinstance(content, str) or not content.strip():
        raise ModelCallError("Model produced no content.")

    return {
        "content": content,
        "finish_reason": choice.get("finish_reason"),
        "usage": _normalize_usage(data.get("usage")),
    }


def _parse_stream_line(line: str) -> Dict[str, Any] | None:
    """Decode one SSE line; None for comments, blanks and the [DONE] marker."""
    stripped = line.strip()
    if not stripped or stripped.startswith(":") or not stripped.startswith("data:"):
        return None
    data = stripped[len("data:"):].strip()
    if not data or data == "[DONE]":
        return None
    try:
        parsed = json.loads(data)
    except ValueError:
        logger.debug("stream_line_unparseable", line=stripped[:200])
        return None
    return parsed if isinstance(parsed, dict) else None


async def stream_completion(
    backend_model: str,
    prompt: str,
    timeout: float = MODEL_CALL_TIMEOUT_SECONDS,
) -> AsyncIterator[Dict[str, Any]]:
    """
    Stream a single model's answer from OpenRouter.

    Yields:
        {"type": "delta", "text": str} for each text fragment, in order, then
        one {"type": "finish", "finish_reason": str | None, "usage": dict}.

    Raises:
        ModelCallError: non-2xx status, transport failure or an in-stream error.
    """
    headers = _headers()
    payload = _build_payload(backend_model, prompt, stream=True)

    usage = _normalize_usage(None)
    finish_reason: str | None = None

    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            async with client.stream(
                "POST",
                OPENROUTER_API_URL,
                headers=headers,
                json=payload,
            ) as response:
                if response.status_code >= 400:
                    body = await response.aread()
                    try:
                        error_payload = json.loads(body)
                    except ValueError:
                        error_payload = None
                    raise ModelCallError(
                        _error_detail(
                            error_payload,
                            f"Model request failed ({response.status_code}).",
                        )
                    )

                async for line in response.aiter_lines():
                    chunk = _parse_stream_line(line)
                    if chunk is None:
                        continue

                    if chunk.get("error"):
                        raise ModelCallError(_error_detail(chunk, "Model stream failed."))

                    if chunk.get("usage"):
                        usage = _normalize_usage(chunk["usage"])

                    choices = chunk.get("choices")
                    if not isinstance(choices, list) or not choices:
                        continue
                    choice = choices[0] if isinstance(choices[0], dict) else {}
                    if choice.get("finish_reason"):
                        finish_reason = choice["finish_reason"]

                    delta = choice.get("delta") or {}
                    text = delta.get("content") if isinstance(delta, dict) else None
                    if isinstance(text, str) and text:
                        yield {"type": "delta", "text": text}
    except httpx.HTTPError as error:
        raise ModelCallError(f"Stream from {backend_model} failed: {error}") from error

    yield {"type": "finish", "finish_reason": finish_reason, "usage": usage}
