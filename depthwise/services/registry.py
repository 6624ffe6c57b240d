from __future__ import annotations

from dataclasses import asdict, dataclass

from depthwise.config import settings

DEFAULT_CONTEXT_WINDOW = 128000


@dataclass(frozen=True)
class ModelSpec:
    id: str  # provider:model, as carried in the selected-model cookie
    name: str
    provider: str
    openrouter_id: str
    context_window: int = DEFAULT_CONTEXT_WINDOW
    tool_calls: bool = True
    reasoning: bool = False


MODELS: tuple[ModelSpec, ...] = (
    ModelSpec("openai:gpt-4o-mini", "GPT-4o mini", "openai", "openai/gpt-4o-mini"),
    ModelSpec("openai:gpt-4o", "GPT-4o", "openai", "openai/gpt-4o"),
    ModelSpec("openai:o3-mini", "o3-mini", "openai", "openai/o3-mini", 200000, reasoning=True),
    ModelSpec(
        "anthropic:claude-3-5-sonnet-latest",
        "Claude 3.5 Sonnet",
        "anthropic",
        "anthropic/claude-3.5-sonnet",
        200000,
    ),
    ModelSpec(
        "google:gemini-2.0-flash-001",
        "Gemini 2.0 Flash",
        "google",
        "google/gemini-2.0-flash-001",
        1048576,
    ),
    ModelSpec("deepseek:deepseek-chat", "DeepSeek V3", "deepseek", "deepseek/deepseek-chat", 64000),
    ModelSpec(
        "deepseek:deepseek-r1",
        "DeepSeek R1",
        "deepseek",
        "deepseek/deepseek-r1",
        64000,
        tool_calls=False,
        reasoning=True,
    ),
)

_BY_ID = {m.id: m for m in MODELS}

REASONING_MARKERS = ("o1", "o3", "r1", "reasoner")


def parse_model_id(model_id: str) -> tuple[str, str]:
    """Split ``provider:model``; a bare name is treated as an openai model."""
    provider, sep, name = model_id.partition(":")
    if not sep:
        return "openai", model_id
    return provider.strip().lower(), name.strip()


def get_model_spec(model_id: str) -> ModelSpec:
    """Look up a model, synthesizing an entry for ids outside the catalogue."""
    known = _BY_ID.get(model_id)
    if known is not None:
        return known
    provider, name = parse_model_id(model_id)
    lowered = name.lower()
    return ModelSpec(
        id=model_id,
        name=name,
        provider=provider,
        openrouter_id=f"{provider}/{name}",
        reasoning=any(marker in lowered for marker in REASONING_MARKERS),
    )


def is_provider_enabled(provider: str) -> bool:
    return provider.strip().lower() in settings.enabled_provider_list


def is_tool_call_supported(model_id: str) -> bool:
    return get_model_spec(model_id).tool_calls


def is_reasoning_model(model_id: str) -> bool:
    return get_model_spec(model_id).reasoning


def to_openrouter_id(model_id: str) -> str:
    return get_model_spec(model_id).openrouter_id


def get_max_allowed_tokens(model_id: str) -> int:
    """Prompt budget: the model's window less room for the answer, capped by config."""
    model = get_model_spec(model_id)
    budget = model.context_window - settings.max_output_tokens
    return max(min(budget, settings.max_context_tokens), 1)


def get_available_models() -> list[dict]:
    return [
        {**asdict(m), "enabled": is_provider_enabled(m.provider)}
        for m in MODELS
    ]
