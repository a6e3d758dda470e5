"""In-memory project tree and the change applier over it.

Paths are POSIX-style and relative to the project root. Directories are
tracked explicitly so empty folders survive; every file's parent chain is
always present in ``dirs``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from coderelay.models.operations import (
    CreateFolder,
    Delete,
    Move,
    OperationResult,
    WriteFile,
)
from coderelay.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from coderelay.models.operations import FileOperation, OperationErrorKind

log = get_logger(__name__)


class ChangeApplier(Protocol):
    """Applies file operations strictly in order and reports each outcome."""

    def apply(self, operations: Sequence[FileOperation]) -> list[OperationResult]: ...


class InvalidPathError(ValueError):
    """Raised for empty, absolute or parent-escaping paths."""


def normalize_path(path: str) -> str:
    """Normalize a project-relative path.

    Raises:
        InvalidPathError: If the path is empty, absolute or contains ``..``.
    """
    cleaned = path.strip().replace("\\", "/")
    if not cleaned:
        raise InvalidPathError("path is empty")
    if cleaned.startswith("/") or (len(cleaned) > 1 and cleaned[1] == ":"):
        raise InvalidPathError(f"absolute paths are not allowed: {path}")
    parts = [p for p in cleaned.split("/") if p not in ("", ".")]
    if not parts:
        raise InvalidPathError(f"path resolves to the project root: {path}")
    if ".." in parts:
        raise InvalidPathError(f"parent references are not allowed: {path}")
    return "/".join(parts)


def _parents(path: str) -> list[str]:
    parts = path.split("/")[:-1]
    return ["/".join(parts[: i + 1]) for i in range(len(parts))]


def _is_under(path: str, root: str) -> bool:
    return path.startswith(f"{root}/")


class _Failure(Exception):
    def __init__(self, kind: OperationErrorKind, message: str) -> None:
        self.kind = kind
        super().__init__(message)


@dataclass
class VirtualProject:
    """Files and folders of a project held in memory.

    Attributes:
        files: Path to file content.
        dirs: Every folder path, including parents of files.
        deleted_files: Files removed (or moved away) since loading, with
            their last content.
        deleted_dirs: Folders removed (or moved away) since loading.
    """

    files: dict[str, str] = field(default_factory=dict)
    dirs: set[str] = field(default_factory=set)
    deleted_files: dict[str, str] = field(default_factory=dict)
    deleted_dirs: set[str] = field(default_factory=set)

    @classmethod
    def from_files(cls, files: dict[str, str], dirs: Iterable[str] = ()) -> VirtualProject:
        project = cls()
        for path in dirs:
            project.create_folder(path)
        for path, content in files.items():
            project.write_file(path, content)
        return project

    def is_file(self, path: str) -> bool:
        return path in self.files

    def is_dir(self, path: str) -> bool:
        return path in self.dirs or any(_is_under(f, path) for f in self.files)

    def exists(self, path: str) -> bool:
        return self.is_file(path) or self.is_dir(path)

    # -- primitive mutations --------------------------------------------------

    def write_file(self, path: str, content: str) -> None:
        path = normalize_path(path)
        if self.is_dir(path):
            raise IsADirectoryError(path)
        self.files[path] = content
        self.dirs.update(_parents(path))
        self.deleted_files.pop(path, None)

    def create_folder(self, path: str) -> None:
        path = normalize_path(path)
        if self.is_file(path):
            raise FileExistsError(path)
        self.dirs.update(_parents(path))
        self.dirs.add(path)
        self.deleted_dirs.discard(path)

    def delete(self, path: str) -> bool:
        """Delete a file or a folder with everything under it.

        Returns:
            False if nothing existed at ``path``.
        """
        path = normalize_path(path)
        if path in self.files:
            self.deleted_files[path] = self.files.pop(path)
            return True
        if not self.is_dir(path):
            return False
        for file_path in [f for f in self.files if _is_under(f, path)]:
            self.deleted_files[file_path] = self.files.pop(file_path)
        removed_dirs = {d for d in self.dirs if d == path or _is_under(d, path)}
        self.dirs -= removed_dirs
        self.deleted_dirs |= removed_dirs | {path}
        return True

    def move(self, source: str, destination: str) -> None:
        """Move a file or folder.

        Raises:
            FileNotFoundError: If ``source`` does not exist.
            FileExistsError: If ``destination`` already exists.
            InvalidPathError: If a folder would move into itself.
        """
        source = normalize_path(source)
        destination = normalize_path(destination)
        if not self.exists(source):
            raise FileNotFoundError(source)
        if self.exists(destination):
            raise FileExistsError(destination)
        if _is_under(destination, source):
            raise InvalidPathError(f"cannot move {source} into itself")

        if source in self.files:
            content = self.files[source]
            self.delete(source)
            self.write_file(destination, content)
            return

        subtree = self.extract_subtree(source)
        self.delete(source)
        self.create_folder(destination)
        for dir_path in subtree.dirs:
            self.create_folder(destination + dir_path[len(source) :])
        for file_path, content in subtree.files.items():
            self.write_file(destination + file_path[len(source) :], content)

    def extract_subtree(self, path: str) -> VirtualProject:
        """Copy a file, or a folder and everything under it, into a new project."""
        subtree = VirtualProject()
        if path in self.files:
            subtree.files[path] = self.files[path]
        elif self.is_dir(path):
            subtree.dirs = {d for d in self.dirs if d == path or _is_under(d, path)} | {path}
            subtree.files = {f: c for f, c in self.files.items() if _is_under(f, path)}
        return subtree

    # -- change application ---------------------------------------------------

    def apply(self, operations: Sequence[FileOperation]) -> list[OperationResult]:
        """Apply operations in order.

        A Move records where its source went; a later non-literal WriteFile
        to the old path (or a path under a moved folder) lands at the new
        location. Redirects only live for the duration of one call.

        Args:
            operations: Operations to apply.

        Returns:
            One OperationResult per operation, in order.
        """
        redirects: dict[str, str] = {}
        results: list[OperationResult] = []
        for operation in operations:
            try:
                message = self._apply_one(operation, redirects)
            except _Failure as e:
                results.append(
                    OperationResult(
                        operation=operation, success=False, message=str(e), error=e.kind
                    )
                )
                log.warning("operation_failed", op=operation.op, error=e.kind, detail=str(e))
                continue
            results.append(OperationResult(operation=operation, success=True, message=message))

        log.info(
            "operations_applied",
            total=len(results),
            failed=sum(1 for r in results if not r.success),
        )
        return results

    def _apply_one(self, operation: FileOperation, redirects: dict[str, str]) -> str:
        try:
            match operation:
                case WriteFile(path=path, content=content, literal=literal):
                    target = normalize_path(path)
                    if not literal:
                        target = _redirect(target, redirects)
                    self.write_file(target, content)
                    if target != normalize_path(path):
                        return f"Wrote to {target} (redirected from {path})"
                    return f"Wrote to {target}"
                case CreateFolder(path=path):
                    self.create_folder(path)
                    return f"Created folder {path}"
                case Move(source=source, destination=destination):
                    self.move(source, destination)
                    _record_move(normalize_path(source), normalize_path(destination), redirects)
                    return f"Moved {source} to {destination}"
                case Delete(path=path):
                    if not self.delete(path):
                        raise _Failure("not_found", f"Path not found for deletion: {path}")
                    return f"Deleted {path}"
        except InvalidPathError as e:
            raise _Failure("invalid_path", str(e)) from e
        except FileNotFoundError as e:
            raise _Failure("not_found", f"Path not found: {e.args[0]}") from e
        except FileExistsError as e:
            raise _Failure("destination_exists", f"Destination already exists: {e.args[0]}") from e
        except IsADirectoryError as e:
            raise _Failure("invalid_path", f"Path is a folder: {e.args[0]}") from e
        raise _Failure("invalid_path", f"Unsupported operation: {operation!r}")

    # -- prompt context -------------------------------------------------------

    def serialize_context(self) -> str:
        """Render the folder tree and every file's content for a prompt."""
        tree: dict[str, dict] = {}
        for path in sorted(self.dirs | set(self.files)):
            node = tree
            for part in path.split("/"):
                node = node.setdefault(part, {})

        lines = ["File System Structure:"]
        _render_tree(tree, "", lines)
        output = "\n".join(lines) + "\n\nFile Contents:\n"
        for path in sorted(self.files):
            output += f"--- BEGIN FILE: {path} ---\n{self.files[path]}\n"
            output += f"--- END FILE: {path} ---\n\n"
        return output

    def is_empty(self) -> bool:
        return not self.files and not self.dirs


def _redirect(path: str, redirects: dict[str, str]) -> str:
    if path in redirects:
        return redirects[path]
    best = max((src for src in redirects if _is_under(path, src)), key=len, default=None)
    if best is None:
        return path
    return redirects[best] + path[len(best) :]


def _record_move(source: str, destination: str, redirects: dict[str, str]) -> None:
    for old, current in list(redirects.items()):
        if current == source or _is_under(current, source):
            redirects[old] = destination + current[len(source) :]
    for old in [k for k in redirects if k == destination or _is_under(k, destination)]:
        del redirects[old]
    redirects[source] = destination


def _render_tree(node: dict[str, dict], prefix: str, lines: list[str]) -> None:
    entries = list(node.items())
    for index, (name, child) in enumerate(entries):
        last = index == len(entries) - 1
        lines.append(f"{prefix}{'└── ' if last else '├── '}{name}")
        if child:
            _render_tree(child, prefix + ("    " if last else "│   "), lines)
