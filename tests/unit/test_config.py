"""Tests for project configuration loading."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from coderelay.pipeline.config import (
    DEFAULT_FAST_PROVIDER,
    DEFAULT_PHASE_COUNT,
    DEFAULT_STRONG_PROVIDER,
    PipelineConfig,
    ProjectConfig,
    ProjectConfigError,
    ProvidersConfig,
    cycles_for_phase_count,
    load_project_config,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("CODERELAY_PROVIDER_FAST", "CODERELAY_PROVIDER_STRONG", "CODERELAY_PHASE_COUNT"):
        monkeypatch.delenv(var, raising=False)


def test_missing_file_uses_defaults(tmp_path: Path) -> None:
    config = load_project_config(tmp_path)

    assert config.name == tmp_path.name
    assert config.providers.fast == DEFAULT_FAST_PROVIDER
    assert config.providers.strong == DEFAULT_STRONG_PROVIDER
    assert config.pipeline.phase_count == DEFAULT_PHASE_COUNT
    assert config.pipeline.replicas == 3
    assert config.pipeline.mode == "advanced"
    assert config.rate_limits == {}


def test_load_full_config(tmp_path: Path) -> None:
    (tmp_path / "project.yaml").write_text(
        "name: demo\n"
        "providers:\n"
        "  fast: openai/gpt-4o-mini\n"
        "  strong: anthropic/claude-sonnet-4-20250514\n"
        "pipeline:\n"
        "  phase_count: 12\n"
        "  replicas: 2\n"
        "  mode: simple\n"
        "rate_limits:\n"
        "  gpt-4o-mini: 40000\n"
    )

    config = load_project_config(tmp_path)

    assert config.name == "demo"
    assert config.providers.get_fast_provider() == "openai/gpt-4o-mini"
    assert config.providers.get_strong_provider() == "anthropic/claude-sonnet-4-20250514"
    assert config.pipeline.phase_count == 12
    assert config.pipeline.cycles == 3
    assert config.pipeline.replicas == 2
    assert config.pipeline.mode == "simple"
    assert config.rate_limits == {"gpt-4o-mini": 40000}


@pytest.mark.parametrize(
    "content",
    ["", "- just\n- a list\n", "pipeline:\n  phase_count: 7\n", "pipeline:\n  mode: turbo\n"],
)
def test_invalid_config_raises(tmp_path: Path, content: str) -> None:
    (tmp_path / "project.yaml").write_text(content)

    with pytest.raises(ProjectConfigError) as exc_info:
        load_project_config(tmp_path)

    assert exc_info.value.path == tmp_path / "project.yaml"


def test_environment_overrides_providers(monkeypatch: pytest.MonkeyPatch) -> None:
    providers = ProvidersConfig(fast="google/a", strong="google/b")
    monkeypatch.setenv("CODERELAY_PROVIDER_FAST", "openai/gpt-4o-mini")

    assert providers.get_fast_provider() == "openai/gpt-4o-mini"
    assert providers.get_strong_provider() == "google/b"


def test_environment_overrides_phase_count(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("CODERELAY_PHASE_COUNT", "9")

    assert PipelineConfig().get_phase_count() == 9


@pytest.mark.parametrize("value", ["ten", "8"])
def test_invalid_phase_count_environment(monkeypatch: pytest.MonkeyPatch, value: str) -> None:
    monkeypatch.setenv("CODERELAY_PHASE_COUNT", value)

    with pytest.raises(ValueError, match="CODERELAY_PHASE_COUNT"):
        PipelineConfig().get_phase_count()


def test_pipeline_config_validation() -> None:
    with pytest.raises(ValueError, match="replicas"):
        PipelineConfig(replicas=0)
    with pytest.raises(ValueError, match="phase_count"):
        PipelineConfig(phase_count=4)


def test_empty_provider_entries_fall_back() -> None:
    config = ProjectConfig.from_dict({"providers": {"fast": "", "strong": None}})

    assert config.name == "unnamed"
    assert config.providers.fast == DEFAULT_FAST_PROVIDER
    assert config.providers.strong == DEFAULT_STRONG_PROVIDER


@pytest.mark.parametrize(("count", "cycles"), [(3, 0), (6, 1), (9, 2), (12, 3)])
def test_cycles_for_phase_count(count: int, cycles: int) -> None:
    assert cycles_for_phase_count(count) == cycles
