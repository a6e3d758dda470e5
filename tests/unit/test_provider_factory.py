"""Tests for provider factory."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from coderelay.providers.base import ProviderError
from coderelay.providers.factory import (
    ChatModelResolver,
    _get_package_for_provider,
    _map_provider_for_init,
    create_chat_model,
)

_INIT = "coderelay.providers.factory._init_chat_model_safe"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("GOOGLE_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "OLLAMA_HOST"):
        monkeypatch.delenv(var, raising=False)


def test_unknown_provider_raises() -> None:
    with pytest.raises(ProviderError, match="Unknown provider"):
        create_chat_model("mystery", "model-x")


def test_missing_api_key_raises() -> None:
    with pytest.raises(ProviderError, match="GOOGLE_API_KEY"):
        create_chat_model("google", "gemini-2.5-pro")


def test_google_uses_env_key_and_genai_provider(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "g-key")
    chat = MagicMock()

    with patch(_INIT, return_value=chat) as init:
        result = create_chat_model("gemini", "gemini-2.5-pro", temperature=0.2)

    assert result is chat
    init.assert_called_once_with(
        "google_genai", "gemini-2.5-pro", temperature=0.2, api_key="g-key"
    )


def test_explicit_key_wins_over_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "env-key")

    with patch(_INIT, return_value=MagicMock()) as init:
        create_chat_model("openai", "gpt-4o", api_key="explicit")

    assert init.call_args.kwargs["api_key"] == "explicit"


def test_ollama_requires_host() -> None:
    with pytest.raises(ProviderError, match="OLLAMA_HOST"):
        create_chat_model("ollama", "qwen3:8b")


def test_ollama_host_becomes_base_url(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OLLAMA_HOST", "http://localhost:11434")

    with patch(_INIT, return_value=MagicMock()) as init:
        create_chat_model("ollama", "qwen3:8b")

    assert init.call_args.kwargs == {"base_url": "http://localhost:11434"}


def test_missing_integration_package(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ANTHROPIC_API_KEY", "a-key")

    with (
        patch(_INIT, side_effect=ImportError("no module")),
        pytest.raises(ProviderError, match="langchain-anthropic not installed"),
    ):
        create_chat_model("anthropic", "claude-sonnet-4-20250514")


def test_provider_name_mapping() -> None:
    assert _map_provider_for_init("google") == "google_genai"
    assert _map_provider_for_init("openai") == "openai"
    assert _get_package_for_provider("ollama") == "langchain-ollama"
    assert _get_package_for_provider("other") == "langchain-other"


# --- ChatModelResolver ---


def test_resolver_caches_per_spec(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "g-key")

    with patch(_INIT, side_effect=lambda *a, **k: MagicMock()) as init:
        resolver = ChatModelResolver()
        first = resolver("google/gemini-2.5-pro")
        again = resolver("google/gemini-2.5-pro")
        other = resolver("gemini-flash-latest")

    assert first is again
    assert other is not first
    assert init.call_count == 2
    assert init.call_args.args == ("google_genai", "gemini-flash-latest")


def test_resolver_passes_model_kwargs(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "o-key")

    with patch(_INIT, return_value=MagicMock()) as init:
        ChatModelResolver(temperature=0)("openai/gpt-4o")

    assert init.call_args.kwargs["temperature"] == 0


def test_resolver_rejects_bad_spec() -> None:
    with pytest.raises(ProviderError):
        ChatModelResolver()("google/")
