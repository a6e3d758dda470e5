"""Project configuration loading."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any, Literal

from ruamel.yaml import YAML

DEFAULT_FAST_PROVIDER = "google/gemini-flash-latest"
DEFAULT_STRONG_PROVIDER = "google/gemini-2.5-pro"
DEFAULT_PHASE_COUNT = 6
DEFAULT_REPLICAS = 3
VALID_PHASE_COUNTS = (3, 6, 9, 12)

SessionMode = Literal["chat", "simple", "advanced"]
VALID_MODES: tuple[SessionMode, ...] = ("chat", "simple", "advanced")

CONFIG_FILENAME = "project.yaml"


class ProjectConfigError(Exception):
    """Raised when project configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load project config at {path}: {reason}")


@dataclass
class ProvidersConfig:
    """Model specs for the two model tiers.

    Resolution order for each tier:
    1. Environment variable (CODERELAY_PROVIDER_FAST / CODERELAY_PROVIDER_STRONG)
    2. Project config (providers.fast / providers.strong)
    3. Built-in default

    Attributes:
        fast: Cheap model used for planners, debuggers and review consolidation.
        strong: Strong model used for consolidation, drafting and the final phase.
    """

    fast: str = DEFAULT_FAST_PROVIDER
    strong: str = DEFAULT_STRONG_PROVIDER

    def get_fast_provider(self) -> str:
        return os.getenv("CODERELAY_PROVIDER_FAST") or self.fast

    def get_strong_provider(self) -> str:
        return os.getenv("CODERELAY_PROVIDER_STRONG") or self.strong

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProvidersConfig:
        return cls(
            fast=data.get("fast") or DEFAULT_FAST_PROVIDER,
            strong=data.get("strong") or DEFAULT_STRONG_PROVIDER,
        )


@dataclass
class PipelineConfig:
    """Phase pipeline settings.

    Attributes:
        phase_count: Total phases; one of 3, 6, 9 or 12.
        replicas: Parallel planner/debugger calls per fan-out phase.
        mode: Default session mode.
    """

    phase_count: int = DEFAULT_PHASE_COUNT
    replicas: int = DEFAULT_REPLICAS
    mode: SessionMode = "advanced"

    def __post_init__(self) -> None:
        if self.phase_count not in VALID_PHASE_COUNTS:
            raise ValueError(
                f"phase_count must be one of {VALID_PHASE_COUNTS}, got {self.phase_count}"
            )
        if self.replicas < 1:
            raise ValueError(f"replicas must be at least 1, got {self.replicas}")
        if self.mode not in VALID_MODES:
            raise ValueError(f"mode must be one of {VALID_MODES}, got {self.mode!r}")

    @property
    def cycles(self) -> int:
        """Number of draft/debug/review cycles."""
        return cycles_for_phase_count(self.phase_count)

    def get_phase_count(self) -> int:
        """Phase count, honouring CODERELAY_PHASE_COUNT.

        Raises:
            ValueError: If the environment value is not a valid phase count.
        """
        raw = os.getenv("CODERELAY_PHASE_COUNT")
        if not raw:
            return self.phase_count
        try:
            value = int(raw)
        except ValueError as e:
            raise ValueError(f"CODERELAY_PHASE_COUNT must be an integer, got {raw!r}") from e
        if value not in VALID_PHASE_COUNTS:
            raise ValueError(f"CODERELAY_PHASE_COUNT must be one of {VALID_PHASE_COUNTS}")
        return value

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PipelineConfig:
        return cls(
            phase_count=int(data.get("phase_count", DEFAULT_PHASE_COUNT)),
            replicas=int(data.get("replicas", DEFAULT_REPLICAS)),
            mode=data.get("mode", "advanced"),
        )


@dataclass
class ProjectConfig:
    """Configuration for a coderelay project."""

    name: str
    providers: ProvidersConfig = field(default_factory=ProvidersConfig)
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    rate_limits: dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProjectConfig:
        """Create config from dictionary.

        Args:
            data: Dictionary containing config fields.

        Returns:
            ProjectConfig instance.
        """
        rate_limits_data = data.get("rate_limits") or {}
        return cls(
            name=data.get("name", "unnamed"),
            providers=ProvidersConfig.from_dict(dict(data.get("providers") or {})),
            pipeline=PipelineConfig.from_dict(dict(data.get("pipeline") or {})),
            rate_limits={str(k): int(v) for k, v in rate_limits_data.items()},
        )


def cycles_for_phase_count(phase_count: int) -> int:
    """Draft/debug/review cycles for a phase count: ``(count - 2) // 3``."""
    return (phase_count - 2) // 3


def load_project_config(project_path: Path) -> ProjectConfig:
    """Load project configuration from project.yaml.

    A missing file yields the defaults, named after the directory.

    Args:
        project_path: Path to the project root directory.

    Returns:
        ProjectConfig instance.

    Raises:
        ProjectConfigError: If the file exists but cannot be loaded.
    """
    config_path = project_path / CONFIG_FILENAME

    if not config_path.exists():
        return ProjectConfig(name=project_path.resolve().name or "unnamed")

    yaml = YAML(typ="safe")
    try:
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            raise ProjectConfigError(config_path, "Empty file")
        if not isinstance(data, dict):
            raise ProjectConfigError(config_path, "Top level must be a mapping")

        return ProjectConfig.from_dict(dict(data))
    except Exception as e:
        if isinstance(e, ProjectConfigError):
            raise
        raise ProjectConfigError(config_path, str(e)) from e
