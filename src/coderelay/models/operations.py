"""File operations produced by the response interpreter.

FileOperation is a closed tagged union discriminated on ``op``. Operations
carry no identity beyond their position in the list; the applier executes
them strictly in order.
"""

from __future__ import annotations

from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


class WriteFile(BaseModel):
    """Create or overwrite a file.

    ``literal`` pins the write to ``path`` even when an earlier move in the
    same batch relocated that path.
    """

    model_config = ConfigDict(frozen=True)

    op: Literal["write"] = "write"
    path: str
    content: str
    literal: bool = False


class CreateFolder(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["createFolder"] = "createFolder"
    path: str


class Move(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["move"] = "move"
    source: str
    destination: str


class Delete(BaseModel):
    model_config = ConfigDict(frozen=True)

    op: Literal["delete"] = "delete"
    path: str


FileOperation = Annotated[WriteFile | CreateFolder | Move | Delete, Field(discriminator="op")]


class ParsedResponse(BaseModel):
    """User-facing summary plus the ordered operation list."""

    summary: str = ""
    operations: list[FileOperation] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.summary and not self.operations


OperationErrorKind = Literal["not_found", "destination_exists", "invalid_path"]


class OperationResult(BaseModel):
    """Outcome of applying one file operation."""

    operation: FileOperation
    success: bool
    message: str = ""
    error: OperationErrorKind | None = None
