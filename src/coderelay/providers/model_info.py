"""Model information, capabilities and per-minute token budgets."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Mapping

DEFAULT_PROVIDER = "google"


@dataclass(frozen=True)
class ModelInfo:
    """Model capabilities and limits.

    Attributes:
        context_window: Maximum input tokens the model can process.
        supports_tools: Whether the model supports tool/function calling.
        supports_vision: Whether the model can process images.
        tokens_per_minute: Per-minute token budget, or None when unmetered.
    """

    context_window: int
    supports_tools: bool = True
    supports_vision: bool = False
    tokens_per_minute: int | None = None


@dataclass(frozen=True)
class ModelProperties:
    """Known properties for a specific model.

    Attributes:
        context_window: Maximum input tokens the model can process.
        supports_vision: Whether the model can process images.
        supports_tools: Whether the model supports tool/function calling.
        tokens_per_minute: Free-tier per-minute token budget (None if unknown).
    """

    context_window: int
    supports_vision: bool = False
    supports_tools: bool = True
    tokens_per_minute: int | None = None


# Known model properties by provider and model name.
KNOWN_MODELS: dict[str, dict[str, ModelProperties]] = {
    "google": {
        "gemini-flash-latest": ModelProperties(
            context_window=1_000_000, supports_vision=True, tokens_per_minute=250_000
        ),
        "gemini-2.5-flash": ModelProperties(
            context_window=1_000_000, supports_vision=True, tokens_per_minute=250_000
        ),
        "gemini-2.5-pro": ModelProperties(
            context_window=1_000_000, supports_vision=True, tokens_per_minute=125_000
        ),
        "gemini-2.0-flash": ModelProperties(
            context_window=1_000_000, supports_vision=True, tokens_per_minute=1_000_000
        ),
    },
    "openai": {
        "gpt-5-mini": ModelProperties(context_window=400_000, supports_vision=True),
        "gpt-4o": ModelProperties(context_window=128_000, supports_vision=True),
        "gpt-4o-mini": ModelProperties(context_window=128_000, supports_vision=True),
    },
    "anthropic": {
        "claude-sonnet-4-20250514": ModelProperties(context_window=200_000, supports_vision=True),
        "claude-opus-4-20250514": ModelProperties(context_window=200_000, supports_vision=True),
    },
    "ollama": {
        "qwen3:8b": ModelProperties(context_window=32_768),
        "qwen2.5-coder:7b": ModelProperties(context_window=32_768),
    },
}

# Default context window when model is not in known list.
DEFAULT_CONTEXT_WINDOW = 32_768


def parse_model_spec(model_spec: str) -> tuple[str, str]:
    """Split a ``provider/model`` spec.

    A bare model name is assumed to belong to the default provider.

    Args:
        model_spec: Spec like ``google/gemini-2.5-pro`` or ``gemini-2.5-pro``.

    Returns:
        Tuple of (provider, model).

    Raises:
        ValueError: If the provider or model part is empty.
    """
    provider, sep, model = model_spec.partition("/")
    if not sep:
        provider, model = DEFAULT_PROVIDER, model_spec
    provider = provider.strip().lower()
    model = model.strip()
    if not provider or not model:
        raise ValueError(f"Invalid model spec: {model_spec!r}")
    if provider == "gemini":
        provider = "google"
    return provider, model


def get_model_info(provider: str, model: str) -> ModelInfo:
    """Get model information from known values or defaults.

    Args:
        provider: Provider name (e.g., "google", "openai").
        model: Model name (e.g., "gemini-2.5-pro").

    Returns:
        ModelInfo with context window, capabilities and token budget.
    """
    props = KNOWN_MODELS.get(provider.lower(), {}).get(model)
    if props is None:
        return ModelInfo(context_window=DEFAULT_CONTEXT_WINDOW)

    return ModelInfo(
        context_window=props.context_window,
        supports_tools=props.supports_tools,
        supports_vision=props.supports_vision,
        tokens_per_minute=props.tokens_per_minute,
    )


def get_rate_limits(overrides: Mapping[str, int] | None = None) -> dict[str, int]:
    """Build the per-model token budget table.

    Known budgets are keyed by bare model name. Overrides replace or extend
    them; an override of 0 or less removes the budget for that model.

    Args:
        overrides: Model name to tokens-per-minute, usually from project config.

    Returns:
        Mapping of model name to tokens-per-minute budget.
    """
    limits = {
        name: props.tokens_per_minute
        for models in KNOWN_MODELS.values()
        for name, props in models.items()
        if props.tokens_per_minute is not None
    }
    for name, value in (overrides or {}).items():
        if value <= 0:
            limits.pop(name, None)
        else:
            limits[name] = value
    return limits
