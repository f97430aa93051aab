"""Catalog of comparable model backends with pricing and bucket metadata."""

from typing import Dict, Iterable, List

from pydantic import BaseModel, ConfigDict


BUCKET_PERFORMANCE = "performance"
BUCKET_MEDIUM = "medium"
BUCKET_QUICK = "quick"

# Flat credit fee per question, decided by bucket alone.
BUCKET_CREDITS: Dict[str, int] = {
    BUCKET_PERFORMANCE: 25,
    BUCKET_MEDIUM: 5,
    BUCKET_QUICK: 1,
}


class UnknownModelError(ValueError):
    """Raised when a requested model id is not in the registry."""

    def __init__(self, model_ids: Iterable[str]):
        self.model_ids = list(model_ids)
        super().__init__(f"Unknown model id(s): {', '.join(self.model_ids)}")


class ModelDescriptor(BaseModel):
    """Static description of one model backend."""

    model_config = ConfigDict(frozen=True)

    id: str
    display_name: str
    bucket: str
    backend_model: str
    input_cost_per_million_tokens: float
    output_cost_per_million_tokens: float
    description: str = ""
    context_window: int = 0
    is_default: bool = False

    @property
    def credits_per_question(self) -> int:
        return BUCKET_CREDITS[self.bucket]

    def to_public_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "name": self.display_name,
            "description": self.description,
            "bucket": self.bucket,
            "creditsPerQuestion": self.credits_per_question,
            "contextWindow": self.context_window,
            "isDefault": self.is_default,
        }


class ModelRegistry:
    """Lookup over a fixed set of model descriptors."""

    def __init__(self, descriptors: Iterable[ModelDescriptor]):
        self._models: Dict[str, ModelDescriptor] = {}
        for descriptor in descriptors:
            if descriptor.bucket not in BUCKET_CREDITS:
                raise ValueError(
                    f"Model {descriptor.id} has unknown bucket {descriptor.bucket!r}."
                )
            if descriptor.id in self._models:
                raise ValueError(f"Duplicate model id {descriptor.id!r}.")
            self._models[descriptor.id] = descriptor

    def __contains__(self, model_id: object) -> bool:
        return model_id in self._models

    def __len__(self) -> int:
        return len(self._models)

    def lookup(self, model_id: str) -> ModelDescriptor | None:
        """Return the descriptor for model_id, or None when unknown."""
        return self._models.get(model_id)

    def require(self, model_id: str) -> ModelDescriptor:
        """Return the descriptor for model_id or raise UnknownModelError."""
        descriptor = self._models.get(model_id)
        if descriptor is None:
            raise UnknownModelError([model_id])
        return descriptor

    def list_by_bucket(self, bucket: str) -> List[ModelDescriptor]:
        """Return every model in a bucket, in catalog order."""
        if bucket not in BUCKET_CREDITS:
            raise ValueError(f"Unknown bucket {bucket!r}.")
        return [model for model in self._models.values() if model.bucket == bucket]

    def catalog(self) -> List[ModelDescriptor]:
        return list(self._models.values())

    def default_model_ids(self) -> List[str]:
        return [model.id for model in self._models.values() if model.is_default]

    def unknown_ids(self, model_ids: Iterable[str]) -> List[str]:
        """Return the ids that do not resolve, preserving request order."""
        unknown: List[str] = []
        for model_id in model_ids:
            if model_id not in self._models and model_id not in unknown:
                unknown.append(model_id)
        return unknown

    def credits_for(self, model_ids: Iterable[str]) -> int:
        """
        Sum the per-question credit price of each model id.

        Unknown ids cost nothing here; callers use unknown_ids() to reject them.
        """
        total = 0
        for model_id in model_ids:
            descriptor = self._models.get(model_id)
            if descriptor is not None:
                total += descriptor.credits_per_question
        return total

    def cost_usd(self, model_id: str, prompt_tokens: int, completion_tokens: int) -> float:
        """Provider cost of one call from token counts and per-million rates."""
        descriptor = self._models.get(model_id)
        if descriptor is None:
            return 0.0
        cost = (
            max(0, prompt_tokens) / 1_000_000 * descriptor.input_cost_per_million_tokens
            + max(0, completion_tokens) / 1_000_000 * descriptor.output_cost_per_million_tokens
        )
        return round(cost, 8)


DEFAULT_MODELS: List[ModelDescriptor] = [
    # Performance bucket (frontier reasoning + strongest outputs)
    ModelDescriptor(
        id="gpt-5",
        display_name="GPT-5",
        description="OpenAI GPT-5",
        bucket=BUCKET_PERFORMANCE,
        backend_model="openai/gpt-5",
        context_window=400_000,
        input_cost_per_million_tokens=1.25,
        output_cost_per_million_tokens=10.0,
        is_default=True,
    ),
    ModelDescriptor(
        id="gemini-2.5-pro",
        display_name="Gemini 2.5 Pro",
        description="Google Gemini 2.5 Pro",
        bucket=BUCKET_PERFORMANCE,
        backend_model="google/gemini-2.5-pro",
        context_window=1_000_000,
        input_cost_per_million_tokens=1.25,
        output_cost_per_million_tokens=10.0,
        is_default=True,
    ),
    ModelDescriptor(
        id="claude-sonnet-4.5",
        display_name="Claude Sonnet 4.5",
        description="Anthropic Claude Sonnet 4.5",
        bucket=BUCKET_PERFORMANCE,
        backend_model="anthropic/claude-sonnet-4.5",
        context_window=200_000,
        input_cost_per_million_tokens=3.0,
        output_cost_per_million_tokens=15.0,
        is_default=True,
    ),
    ModelDescriptor(
        id="grok-4",
        display_name="Grok 4",
        description="xAI Grok 4",
        bucket=BUCKET_PERFORMANCE,
        backend_model="x-ai/grok-4",
        context_window=256_000,
        input_cost_per_million_tokens=3.0,
        output_cost_per_million_tokens=15.0,
        is_default=True,
    ),
    # Medium bucket (solid capability, balanced pricing)
    ModelDescriptor(
        id="gpt-5-mini",
        display_name="GPT-5 Mini",
        description="OpenAI GPT-5 Mini",
        bucket=BUCKET_MEDIUM,
        backend_model="openai/gpt-5-mini",
        context_window=400_000,
        input_cost_per_million_tokens=0.25,
        output_cost_per_million_tokens=2.0,
    ),
    ModelDescriptor(
        id="grok-3-mini",
        display_name="Grok 3 Mini",
        description="xAI Grok 3 Mini",
        bucket=BUCKET_MEDIUM,
        backend_model="x-ai/grok-3-mini",
        context_window=131_072,
        input_cost_per_million_tokens=0.3,
        output_cost_per_million_tokens=0.5,
    ),
    ModelDescriptor(
        id="gemini-2.5-flash",
        display_name="Gemini 2.5 Flash",
        description="Google Gemini 2.5 Flash",
        bucket=BUCKET_MEDIUM,
        backend_model="google/gemini-2.5-flash",
        context_window=1_000_000,
        input_cost_per_million_tokens=0.3,
        output_cost_per_million_tokens=2.5,
    ),
    ModelDescriptor(
        id="deepseek-v3.2-exp",
        display_name="DeepSeek v3.2 Exp",
        description="DeepSeek v3.2 Experimental",
        bucket=BUCKET_MEDIUM,
        backend_model="deepseek/deepseek-v3.2-exp",
        context_window=164_000,
        input_cost_per_million_tokens=0.27,
        output_cost_per_million_tokens=0.41,
    ),
    ModelDescriptor(
        id="claude-3.5-haiku",
        display_name="Claude 3.5 Haiku",
        description="Anthropic Claude 3.5 Haiku",
        bucket=BUCKET_MEDIUM,
        backend_model="anthropic/claude-3.5-haiku",
        context_window=200_000,
        input_cost_per_million_tokens=0.8,
        output_cost_per_million_tokens=4.0,
    ),
    # Quick bucket (best efficiency / scale)
    ModelDescriptor(
        id="llama-4-maverick",
        display_name="Llama 4 Maverick",
        description="Meta Llama 4 Maverick",
        bucket=BUCKET_QUICK,
        backend_model="meta-llama/llama-4-maverick",
        context_window=1_048_576,
        input_cost_per_million_tokens=0.15,
        output_cost_per_million_tokens=0.6,
    ),
    ModelDescriptor(
        id="grok-4-fast",
        display_name="Grok 4 Fast",
        description="xAI Grok 4 Fast",
        bucket=BUCKET_QUICK,
        backend_model="x-ai/grok-4-fast",
        context_window=2_000_000,
        input_cost_per_million_tokens=0.2,
        output_cost_per_million_tokens=0.5,
    ),
    ModelDescriptor(
        id="gemini-2.5-flash-lite",
        display_name="Gemini 2.5 Flash Lite",
        description="Google Gemini 2.5 Flash Lite",
        bucket=BUCKET_QUICK,
        backend_model="google/gemini-2.5-flash-lite",
        context_window=1_000_000,
        input_cost_per_million_tokens=0.1,
        output_cost_per_million_tokens=0.4,
    ),
    ModelDescriptor(
        id="gpt-4.1-nano",
        display_name="GPT-4.1 Nano",
        description="OpenAI GPT-4.1 Nano",
        bucket=BUCKET_QUICK,
        backend_model="openai/gpt-4.1-nano",
        context_window=1_000_000,
        input_cost_per_million_tokens=0.1,
        output_cost_per_million_tokens=0.4,
    ),
]


def build_default_registry() -> ModelRegistry:
    return ModelRegistry(DEFAULT_MODELS)
