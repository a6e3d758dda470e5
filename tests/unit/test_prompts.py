"""Tests for prompt template loading."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from coderelay.prompts import (
    PromptLoader,
    PromptTemplate,
    TemplateNotFoundError,
    TemplateParseError,
    substitute,
)

if TYPE_CHECKING:
    from pathlib import Path

PLACEHOLDERS = {
    "consolidator": {"plans"},
    "context_preamble": {"project_context"},
    "debugger": {"master_plan", "draft"},
    "drafter": {"master_plan"},
    "drafter_revision": {"master_plan", "draft", "review"},
    "final_implementer": {"draft", "review_section"},
    "review_consolidator": {"draft", "reports"},
}


@pytest.fixture
def custom_loader(tmp_path: Path) -> PromptLoader:
    templates = tmp_path / "templates"
    templates.mkdir()
    (templates / "greet.yaml").write_text(
        "name: greet\ndescription: Greeting\nsystem: |\n  Be kind.\nuser: |\n  Hello {{ who }}!\n"
    )
    (templates / "empty.yaml").write_text("")
    (templates / "listy.yaml").write_text("- a\n- b\n")
    (templates / "broken.yaml").write_text("system: [unclosed\n")
    return PromptLoader(tmp_path)


class TestSubstitute:
    """Test placeholder substitution."""

    def test_replaces_known_names(self) -> None:
        assert substitute("Hi {{ name }} / {{name}}", {"name": "Ada"}) == "Hi Ada / Ada"

    def test_leaves_unknown_names(self) -> None:
        """Code in drafts can contain double braces."""
        text = "template: {{ missing }} and {{ x }}"
        assert substitute(text, {"x": 1}) == "template: {{ missing }} and 1"

    def test_does_not_rescan_substituted_values(self) -> None:
        assert substitute("{{ a }}", {"a": "{{ b }}", "b": "nope"}) == "{{ b }}"


class TestPromptLoader:
    """Test loading templates from disk."""

    def test_loads_and_renders(self, custom_loader: PromptLoader) -> None:
        template = custom_loader.load("greet")

        assert template.description == "Greeting"
        assert template.render_system() == "Be kind."
        assert template.render_user(who="world") == "Hello world!"

    def test_caches_templates(self, custom_loader: PromptLoader) -> None:
        assert custom_loader.load("greet") is custom_loader.load("greet")

    def test_clear_cache_reloads(self, custom_loader: PromptLoader) -> None:
        first = custom_loader.load("greet")
        custom_loader.clear_cache()

        assert custom_loader.load("greet") is not first

    def test_missing_template(self, custom_loader: PromptLoader) -> None:
        with pytest.raises(TemplateNotFoundError):
            custom_loader.load("nope")
        assert not custom_loader.exists("nope")

    @pytest.mark.parametrize("name", ["empty", "listy", "broken"])
    def test_unparseable_templates(self, custom_loader: PromptLoader, name: str) -> None:
        with pytest.raises(TemplateParseError) as exc_info:
            custom_loader.load(name)
        assert exc_info.value.template_name == name

    def test_list_templates(self, custom_loader: PromptLoader) -> None:
        assert custom_loader.list_templates() == ["broken", "empty", "greet", "listy"]

    def test_name_defaults_to_filename(self) -> None:
        template = PromptTemplate.from_dict({"user": " hi "}, "fallback")

        assert template.name == "fallback"
        assert template.user == "hi"
        assert template.system == ""


class TestShippedTemplates:
    """Test the templates that ship with the package."""

    @pytest.mark.parametrize("name", sorted(PLACEHOLDERS))
    def test_placeholders_are_filled(self, name: str) -> None:
        template = PromptLoader().load(name)
        context = {key: f"<{key}>" for key in PLACEHOLDERS[name]}

        rendered = template.render_user(**context)

        assert "{{" not in rendered
        for value in context.values():
            assert value in rendered

    def test_every_pipeline_role_has_a_system_prompt(self) -> None:
        loader = PromptLoader()
        roles = [
            "architect",
            "consolidator",
            "drafter",
            "drafter_revision",
            "debugger",
            "review_consolidator",
            "final_implementer",
            "simple_coder",
            "chat",
        ]
        systems = [loader.load(role).render_system() for role in roles]

        assert all(systems)
        assert len(set(systems)) == len(systems)

    def test_think_primer_is_a_user_text(self) -> None:
        primer = PromptLoader().load("think_primer").render_user()
        assert "<think>" in primer
        assert "</think>" in primer

    def test_final_implementer_documents_the_protocol(self) -> None:
        system = PromptLoader().load("final_implementer").render_system()
        assert "<commands>" in system
        assert "write --literal" in system

    def test_loader_lists_shipped_templates(self, templates_path: Path) -> None:
        names = PromptLoader().list_templates()

        assert names == sorted(p.stem for p in templates_path.glob("*.yaml"))
        assert {"architect", "think_primer", "context_preamble"} <= set(names)
