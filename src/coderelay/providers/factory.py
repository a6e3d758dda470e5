"""Factory for creating LangChain chat models.

Uses LangChain's init_chat_model abstraction for unified provider
instantiation. Provider-specific configuration (API keys, hosts) is
resolved from the environment before the unified call.
"""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any

from coderelay.observability.logging import get_logger
from coderelay.providers.base import ProviderError
from coderelay.providers.model_info import parse_model_spec

if TYPE_CHECKING:
    from langchain_core.language_models import BaseChatModel

log = get_logger(__name__)

# Known provider names for validation
_KNOWN_PROVIDERS = frozenset({"ollama", "openai", "anthropic", "google"})

# Environment variable holding each cloud provider's API key
_API_KEY_ENV: dict[str, str] = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}


def create_chat_model(provider_name: str, model: str, **kwargs: Any) -> BaseChatModel:
    """Create a LangChain BaseChatModel.

    Args:
        provider_name: Provider identifier (ollama, openai, anthropic, google).
        model: Model name/identifier.
        **kwargs: Additional provider-specific options.

    Returns:
        Configured BaseChatModel.

    Raises:
        ProviderError: If provider unavailable or misconfigured.
    """
    provider = provider_name.lower()
    if provider == "gemini":
        provider = "google"

    if provider not in _KNOWN_PROVIDERS:
        log.error("provider_unknown", provider=provider)
        raise ProviderError(provider, f"Unknown provider: {provider}")

    kwargs = _preprocess_provider_kwargs(provider, kwargs)

    try:
        chat_model = _init_chat_model_safe(_map_provider_for_init(provider), model, **kwargs)
    except ImportError as e:
        package = _get_package_for_provider(provider)
        log.error("provider_import_error", provider=provider, package=package)
        raise ProviderError(provider, f"{package} not installed. Run: pip install {package}") from e

    log.info("chat_model_created", provider=provider, model=model)
    return chat_model


def _init_chat_model_safe(provider: str, model: str, **kwargs: Any) -> BaseChatModel:
    """Call init_chat_model, letting ImportError surface for missing integrations."""
    from langchain.chat_models import init_chat_model

    result: BaseChatModel = init_chat_model(model=model, model_provider=provider, **kwargs)
    return result


def _preprocess_provider_kwargs(provider: str, kwargs: dict[str, Any]) -> dict[str, Any]:
    """Resolve API keys and hosts from kwargs or the environment.

    Args:
        provider: Normalized provider name.
        kwargs: Input kwargs (copied, not mutated).

    Returns:
        Processed kwargs.

    Raises:
        ProviderError: If required configuration is missing.
    """
    kwargs = dict(kwargs)

    if provider == "ollama":
        host = kwargs.pop("host", None) or os.getenv("OLLAMA_HOST")
        if not host:
            log.error("provider_config_error", provider="ollama", missing="OLLAMA_HOST")
            raise ProviderError(
                "ollama",
                "OLLAMA_HOST not configured. Set OLLAMA_HOST environment variable.",
            )
        kwargs["base_url"] = host
        return kwargs

    env_var = _API_KEY_ENV[provider]
    api_key = kwargs.pop("google_api_key", None) if provider == "google" else None
    api_key = api_key or kwargs.get("api_key") or os.getenv(env_var)
    if not api_key:
        log.error("provider_config_error", provider=provider, missing=env_var)
        raise ProviderError(provider, f"API key required. Set {env_var} environment variable.")
    kwargs["api_key"] = api_key
    return kwargs


def _map_provider_for_init(provider: str) -> str:
    # init_chat_model expects 'google_genai' not 'google'
    if provider == "google":
        return "google_genai"
    return provider


def _get_package_for_provider(provider: str) -> str:
    packages = {
        "ollama": "langchain-ollama",
        "openai": "langchain-openai",
        "anthropic": "langchain-anthropic",
        "google": "langchain-google-genai",
    }
    return packages.get(provider, f"langchain-{provider}")


class ChatModelResolver:
    """Resolves ``provider/model`` specs to chat models, caching instances.

    Instances are callable so they can be handed to the call gateway as its
    model resolver.
    """

    def __init__(self, **model_kwargs: Any) -> None:
        self._model_kwargs = model_kwargs
        self._cache: dict[str, BaseChatModel] = {}

    def __call__(self, model_spec: str) -> BaseChatModel:
        cached = self._cache.get(model_spec)
        if cached is not None:
            return cached
        try:
            provider, model = parse_model_spec(model_spec)
        except ValueError as e:
            raise ProviderError("unknown", str(e)) from e
        chat_model = create_chat_model(provider, model, **self._model_kwargs)
        self._cache[model_spec] = chat_model
        return chat_model
