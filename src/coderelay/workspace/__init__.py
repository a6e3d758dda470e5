"""Project files: the in-memory tree, change application and disk sync."""

from coderelay.workspace.disk import IgnoreRules, SyncReport, load_directory, sync_to_directory
from coderelay.workspace.project import (
    ChangeApplier,
    InvalidPathError,
    VirtualProject,
    normalize_path,
)

__all__ = [
    "ChangeApplier",
    "IgnoreRules",
    "InvalidPathError",
    "SyncReport",
    "VirtualProject",
    "load_directory",
    "normalize_path",
    "sync_to_directory",
]
