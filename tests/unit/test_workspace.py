"""Tests for the virtual project and disk sync."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from coderelay.models.operations import CreateFolder, Delete, Move, WriteFile
from coderelay.workspace import (
    IgnoreRules,
    InvalidPathError,
    VirtualProject,
    load_directory,
    normalize_path,
    sync_to_directory,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def project() -> VirtualProject:
    return VirtualProject.from_files(
        {"src/app.py": "print('hi')", "src/lib/util.py": "x = 1", "README.md": "# Demo"},
        dirs=["empty"],
    )


# --- paths ---


def test_normalize_path() -> None:
    assert normalize_path("./src//app.py ") == "src/app.py"
    assert normalize_path("src\\app.py") == "src/app.py"


@pytest.mark.parametrize("path", ["", "   ", "/etc/passwd", "C:/x", "../up", "a/../../b", "."])
def test_normalize_path_rejects(path: str) -> None:
    with pytest.raises(InvalidPathError):
        normalize_path(path)


# --- primitive mutations ---


def test_write_creates_parent_folders() -> None:
    project = VirtualProject()
    project.write_file("a/b/c.txt", "x")

    assert project.files == {"a/b/c.txt": "x"}
    assert project.dirs == {"a", "a/b"}


def test_delete_folder_is_recursive(project: VirtualProject) -> None:
    assert project.delete("src")

    assert "src/app.py" not in project.files
    assert "src/lib/util.py" not in project.files
    assert "src" not in project.dirs
    assert "src/lib" not in project.dirs
    assert set(project.deleted_files) == {"src/app.py", "src/lib/util.py"}
    assert {"src", "src/lib"} <= project.deleted_dirs


def test_delete_missing_returns_false(project: VirtualProject) -> None:
    assert not project.delete("nope")


def test_move_folder_with_children(project: VirtualProject) -> None:
    project.move("src", "pkg")

    assert project.files["pkg/app.py"] == "print('hi')"
    assert project.files["pkg/lib/util.py"] == "x = 1"
    assert "pkg/lib" in project.dirs
    assert not any(p.startswith("src") for p in project.files)


def test_extract_subtree(project: VirtualProject) -> None:
    subtree = project.extract_subtree("src")

    assert set(subtree.files) == {"src/app.py", "src/lib/util.py"}
    assert "src/lib" in subtree.dirs
    assert project.files["src/app.py"] == "print('hi')"


# --- apply ---


def test_apply_reports_each_operation(project: VirtualProject) -> None:
    results = project.apply(
        [
            CreateFolder(path="docs"),
            WriteFile(path="docs/guide.md", content="guide"),
            Move(source="README.md", destination="docs/README.md"),
            Delete(path="empty"),
        ]
    )

    assert [r.success for r in results] == [True, True, True, True]
    assert [r.message for r in results] == [
        "Created folder docs",
        "Wrote to docs/guide.md",
        "Moved README.md to docs/README.md",
        "Deleted empty",
    ]
    assert project.files["docs/README.md"] == "# Demo"
    assert "empty" not in project.dirs


def test_apply_error_kinds(project: VirtualProject) -> None:
    results = project.apply(
        [
            Delete(path="missing.txt"),
            Move(source="missing.txt", destination="x.txt"),
            Move(source="src/app.py", destination="README.md"),
            WriteFile(path="../escape.txt", content="x"),
            WriteFile(path="src", content="x"),
            Move(source="src", destination="src/inner"),
        ]
    )

    assert [r.error for r in results] == [
        "not_found",
        "not_found",
        "destination_exists",
        "invalid_path",
        "invalid_path",
        "invalid_path",
    ]
    assert results[0].message == "Path not found for deletion: missing.txt"
    assert not any(r.success for r in results)
    # Failed operations leave the tree untouched
    assert project.files["src/app.py"] == "print('hi')"


def test_apply_continues_after_failure(project: VirtualProject) -> None:
    results = project.apply([Delete(path="missing"), WriteFile(path="new.txt", content="n")])

    assert [r.success for r in results] == [False, True]
    assert project.files["new.txt"] == "n"


def test_write_after_move_is_redirected(project: VirtualProject) -> None:
    """A write to a moved file's old path lands at its new location."""
    results = project.apply(
        [
            Move(source="README.md", destination="docs/README.md"),
            WriteFile(path="README.md", content="updated"),
        ]
    )

    assert project.files["docs/README.md"] == "updated"
    assert "README.md" not in project.files
    assert results[1].message == "Wrote to docs/README.md (redirected from README.md)"


def test_write_under_moved_folder_is_redirected(project: VirtualProject) -> None:
    project.apply(
        [
            Move(source="src", destination="pkg"),
            WriteFile(path="src/lib/util.py", content="x = 2"),
        ]
    )

    assert project.files["pkg/lib/util.py"] == "x = 2"
    assert "src/lib/util.py" not in project.files


def test_literal_write_ignores_redirect(project: VirtualProject) -> None:
    project.apply(
        [
            Move(source="README.md", destination="docs/README.md"),
            WriteFile(path="README.md", content="fresh", literal=True),
        ]
    )

    assert project.files["README.md"] == "fresh"
    assert project.files["docs/README.md"] == "# Demo"


def test_chained_moves_follow_latest_location(project: VirtualProject) -> None:
    project.apply(
        [
            Move(source="README.md", destination="a.md"),
            Move(source="a.md", destination="b.md"),
            WriteFile(path="README.md", content="chained"),
        ]
    )

    assert project.files == {
        "src/app.py": "print('hi')",
        "src/lib/util.py": "x = 1",
        "b.md": "chained",
    }


def test_redirects_do_not_outlive_apply(project: VirtualProject) -> None:
    project.apply([Move(source="README.md", destination="docs/README.md")])
    project.apply([WriteFile(path="README.md", content="new")])

    assert project.files["README.md"] == "new"
    assert project.files["docs/README.md"] == "# Demo"


# --- context ---


def test_serialize_context() -> None:
    project = VirtualProject.from_files({"b.txt": "B", "a/x.py": "X"})

    assert project.serialize_context() == (
        "File System Structure:\n"
        "├── a\n"
        "│   └── x.py\n"
        "└── b.txt\n"
        "\n"
        "File Contents:\n"
        "--- BEGIN FILE: a/x.py ---\nX\n--- END FILE: a/x.py ---\n\n"
        "--- BEGIN FILE: b.txt ---\nB\n--- END FILE: b.txt ---\n\n"
    )


# --- disk ---


def test_ignore_rules() -> None:
    rules = IgnoreRules()
    rules.add("# comment\n*.log\n/build/\nnode_modules/\n!keep.log\n")

    assert rules.is_ignored("app.log")
    assert rules.is_ignored("sub/app.log")
    assert not rules.is_ignored("keep.log")
    assert rules.is_ignored("build/")
    assert not rules.is_ignored("src/build/")
    assert rules.is_ignored("web/node_modules/")
    assert not rules.is_ignored("app.py")


def test_ignore_rules_anchored_path_and_parent_directories() -> None:
    rules = IgnoreRules()
    rules.add("/docs/*.md\nlogs/\n")

    assert rules.is_ignored("docs/readme.md")
    assert not rules.is_ignored("docs/api/readme.md")
    assert not rules.is_ignored("src/docs/readme.md")
    assert rules.is_ignored("logs/run/today.txt")
    assert not rules.is_ignored("logs")


def test_load_directory_skips_ignored(tmp_path: Path) -> None:
    (tmp_path / ".git").mkdir()
    (tmp_path / ".git" / "HEAD").write_text("ref")
    (tmp_path / ".gitignore").write_text("*.log\n")
    (tmp_path / ".env").write_text("GOOGLE_API_KEY=secret")
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text("print('hi')")
    (tmp_path / "debug.log").write_text("noise")
    (tmp_path / "image.bin").write_bytes(b"\xff\xfe\x00\x80")
    (tmp_path / "empty").mkdir()

    project = load_directory(tmp_path)

    assert project.files == {"src/app.py": "print('hi')"}
    assert project.dirs == {"src", "empty"}


def test_load_directory_requires_directory(tmp_path: Path) -> None:
    with pytest.raises(NotADirectoryError):
        load_directory(tmp_path / "missing")


def test_sync_applies_changes_to_disk(tmp_path: Path) -> None:
    (tmp_path / "old").mkdir()
    (tmp_path / "old" / "a.txt").write_text("a")
    (tmp_path / "keep.txt").write_text("same")
    (tmp_path / "untracked.bin").write_bytes(b"\xff\xfe")

    project = load_directory(tmp_path)
    project.apply(
        [
            Move(source="old/a.txt", destination="new/a.txt"),
            Delete(path="old"),
            WriteFile(path="new/b.txt", content="b"),
        ]
    )
    report = sync_to_directory(project, tmp_path)

    assert not (tmp_path / "old").exists()
    assert (tmp_path / "new" / "a.txt").read_text() == "a"
    assert (tmp_path / "new" / "b.txt").read_text() == "b"
    assert (tmp_path / "untracked.bin").read_bytes() == b"\xff\xfe"
    assert "keep.txt" not in report.written
    assert sorted(report.written) == ["new/a.txt", "new/b.txt"]
