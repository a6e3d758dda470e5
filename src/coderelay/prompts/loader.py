"""Template loading for phase prompts."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from ruamel.yaml import YAML

# Directory shipped with the package
DEFAULT_PROMPTS_PATH = Path(__file__).parent

_VAR_PATTERN = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def substitute(text: str, context: dict[str, Any]) -> str:
    """Replace ``{{ name }}`` placeholders with context values.

    Unknown names are left as-is, so literal braces in code survive.
    """

    def replace_match(match: re.Match[str]) -> str:
        name = match.group(1)
        if name not in context:
            return match.group(0)
        return str(context[name])

    return _VAR_PATTERN.sub(replace_match, text)


@dataclass
class PromptTemplate:
    """A loaded prompt template.

    Attributes:
        name: Template name.
        description: What the template is for.
        system: System instruction text.
        user: User (or primer) turn text.
    """

    name: str
    description: str
    system: str
    user: str

    @classmethod
    def from_dict(cls, data: dict[str, Any], name: str) -> PromptTemplate:
        """Create a template from dictionary data.

        Args:
            data: Dictionary containing template fields.
            name: Template name (usually from filename).

        Returns:
            PromptTemplate instance.
        """
        return cls(
            name=data.get("name", name),
            description=data.get("description", ""),
            system=str(data.get("system", "")).strip(),
            user=str(data.get("user", "")).strip(),
        )

    def render_system(self, **context: Any) -> str:
        return substitute(self.system, context)

    def render_user(self, **context: Any) -> str:
        return substitute(self.user, context)


class TemplateNotFoundError(Exception):
    """Raised when a template file cannot be found."""

    def __init__(self, template_name: str, path: Path) -> None:
        self.template_name = template_name
        self.path = path
        super().__init__(f"Template not found: {template_name} at {path}")


class TemplateParseError(Exception):
    """Raised when a template file cannot be parsed."""

    def __init__(self, template_name: str, reason: str) -> None:
        self.template_name = template_name
        self.reason = reason
        super().__init__(f"Failed to parse template '{template_name}': {reason}")


class PromptLoader:
    """Load prompt templates from disk.

    Templates are YAML files in the templates/ subdirectory.

    Attributes:
        prompts_path: Path to the prompts directory.
    """

    def __init__(self, prompts_path: Path = DEFAULT_PROMPTS_PATH) -> None:
        self.prompts_path = prompts_path
        self.templates_path = prompts_path / "templates"
        self._yaml = YAML(typ="safe")
        self._cache: dict[str, PromptTemplate] = {}

    def _get_template_path(self, template_name: str) -> Path:
        return self.templates_path / f"{template_name}.yaml"

    def load(self, template_name: str) -> PromptTemplate:
        """Load a template by name.

        Args:
            template_name: Name of the template (without .yaml extension).

        Returns:
            Loaded PromptTemplate.

        Raises:
            TemplateNotFoundError: If the template file doesn't exist.
            TemplateParseError: If the template cannot be parsed.
        """
        if template_name in self._cache:
            return self._cache[template_name]

        path = self._get_template_path(template_name)

        if not path.exists():
            raise TemplateNotFoundError(template_name, path)

        try:
            with path.open("r", encoding="utf-8") as f:
                data = self._yaml.load(f)

            if data is None:
                raise TemplateParseError(template_name, "Empty file")
            if not isinstance(data, dict):
                raise TemplateParseError(template_name, "Top level must be a mapping")

            template = PromptTemplate.from_dict(dict(data), template_name)
            self._cache[template_name] = template
            return template

        except Exception as e:
            if isinstance(e, (TemplateNotFoundError, TemplateParseError)):
                raise
            raise TemplateParseError(template_name, str(e)) from e

    def exists(self, template_name: str) -> bool:
        return self._get_template_path(template_name).exists()

    def list_templates(self) -> list[str]:
        """List available template names (without .yaml extension)."""
        if not self.templates_path.exists():
            return []

        return sorted(p.stem for p in self.templates_path.glob("*.yaml") if p.is_file())

    def clear_cache(self) -> None:
        self._cache.clear()
