"""Loading a project directory into memory and writing changes back."""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass, field
from fnmatch import fnmatchcase
from pathlib import Path

from coderelay.observability.logging import get_logger
from coderelay.workspace.project import VirtualProject

log = get_logger(__name__)

IGNORE_FILENAMES = (".gitignore", ".gcignore")

# Never sent to a model, regardless of ignore files
DEFAULT_IGNORE_PATTERNS = (".git/", ".env", "logs/", "__pycache__/")


@dataclass(frozen=True)
class IgnorePattern:
    """One gitignore line, matched component-wise with ``fnmatch``.

    A pattern containing a slash is anchored at the root; otherwise it
    matches a single path component at any depth.
    """

    parts: tuple[str, ...]
    anchored: bool
    directory_only: bool

    @classmethod
    def parse(cls, line: str) -> IgnorePattern:
        body = line.strip("/")
        return cls(
            parts=tuple(body.split("/")),
            anchored=line.startswith("/") or "/" in body,
            directory_only=line.endswith("/"),
        )

    def matches(self, path: str) -> bool:
        """Match ``path`` or one of its parent directories.

        Directory paths end with ``/``.
        """
        is_dir = path.endswith("/")
        parts = path.rstrip("/").split("/")
        for end in range(1, len(parts) + 1):
            if self.directory_only and end == len(parts) and not is_dir:
                continue
            if self.anchored:
                if end == len(self.parts) and all(map(fnmatchcase, parts[:end], self.parts)):
                    return True
            elif fnmatchcase(parts[end - 1], self.parts[0]):
                return True
        return False


@dataclass
class IgnoreRules:
    """Gitignore-style path filter.

    Supports ``*``/``?``/``[...]`` wildcards, a leading ``/`` to anchor at
    the root, a trailing ``/`` for directories, and ``!`` negation. A
    negated pattern wins over any ignore pattern.
    """

    ignore: list[IgnorePattern] = field(default_factory=list)
    keep: list[IgnorePattern] = field(default_factory=list)

    def add(self, text: str) -> None:
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("!"):
                if line[1:].strip("/"):
                    self.keep.append(IgnorePattern.parse(line[1:]))
            elif line.strip("/"):
                self.ignore.append(IgnorePattern.parse(line))

    def is_ignored(self, path: str) -> bool:
        if any(p.matches(path) for p in self.keep):
            return False
        return any(p.matches(path) for p in self.ignore)

    @classmethod
    def for_directory(cls, root: Path) -> IgnoreRules:
        rules = cls()
        rules.add("\n".join(DEFAULT_IGNORE_PATTERNS))
        for name in IGNORE_FILENAMES:
            ignore_file = root / name
            if ignore_file.is_file():
                rules.add(ignore_file.read_text(encoding="utf-8"))
        return rules


def load_directory(root: Path) -> VirtualProject:
    """Read a directory tree into a VirtualProject.

    Ignore files themselves, ignored paths and files that are not valid
    UTF-8 text are skipped.

    Args:
        root: Project directory.

    Returns:
        The loaded project.

    Raises:
        NotADirectoryError: If ``root`` is not a directory.
    """
    if not root.is_dir():
        raise NotADirectoryError(str(root))

    rules = IgnoreRules.for_directory(root)
    project = VirtualProject()
    skipped_binary = 0

    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        rel_dir = "" if rel_dir == "." else rel_dir

        kept_dirs = []
        for name in sorted(dirnames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if not rules.is_ignored(rel + "/"):
                kept_dirs.append(name)
                project.dirs.add(rel)
        dirnames[:] = kept_dirs

        for name in sorted(filenames):
            rel = f"{rel_dir}/{name}" if rel_dir else name
            if name in IGNORE_FILENAMES and not rel_dir:
                continue
            if rules.is_ignored(rel):
                continue
            try:
                project.files[rel] = (Path(dirpath) / name).read_text(encoding="utf-8")
            except UnicodeDecodeError:
                skipped_binary += 1
                continue

    log.info(
        "project_loaded",
        root=str(root),
        files=len(project.files),
        dirs=len(project.dirs),
        skipped_binary=skipped_binary,
    )
    return project


@dataclass
class SyncReport:
    """Paths touched by a sync, relative to the project root."""

    written: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)


def sync_to_directory(project: VirtualProject, root: Path) -> SyncReport:
    """Write a project's state back to disk.

    Deletions go first, and only touch paths the project tracked as
    deleted and no longer holds. Files are then written only when their
    content differs from what is on disk.
    """
    report = SyncReport()

    for rel in sorted(project.deleted_dirs, key=lambda p: p.count("/"), reverse=True):
        target = root / rel
        if rel not in project.dirs and target.is_dir():
            shutil.rmtree(target)
            report.removed.append(rel)
    for rel in sorted(project.deleted_files):
        target = root / rel
        if rel not in project.files and target.is_file():
            target.unlink()
            report.removed.append(rel)

    for rel in sorted(project.dirs):
        (root / rel).mkdir(parents=True, exist_ok=True)
    for rel, content in sorted(project.files.items()):
        target = root / rel
        if target.is_file() and target.read_text(encoding="utf-8", errors="replace") == content:
            continue
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
        report.written.append(rel)

    log.info(
        "project_synced",
        root=str(root),
        written=len(report.written),
        removed=len(report.removed),
    )
    return report
