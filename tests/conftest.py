"""Pytest configuration and shared fixtures."""

from pathlib import Path

import pytest


@pytest.fixture
def project_root() -> Path:
    """Return the repository root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def templates_path(project_root: Path) -> Path:
    """Return the directory of shipped prompt templates."""
    return project_root / "src" / "coderelay" / "prompts" / "templates"
