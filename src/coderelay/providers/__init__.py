"""LLM provider integrations using LangChain."""

from coderelay.providers.base import (
    ModelCallError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
)
from coderelay.providers.factory import ChatModelResolver, create_chat_model
from coderelay.providers.model_info import (
    ModelInfo,
    get_model_info,
    get_rate_limits,
    parse_model_spec,
)

__all__ = [
    "ChatModelResolver",
    "ModelCallError",
    "ModelInfo",
    "ProviderConnectionError",
    "ProviderError",
    "ProviderRateLimitError",
    "create_chat_model",
    "get_model_info",
    "get_rate_limits",
    "parse_model_spec",
]
