"""Shared data models for calls, pipeline progress and file operations."""

from coderelay.models.calls import (
    FailureKind,
    ImagePart,
    ModelCallFailure,
    ModelCallRequest,
    ModelCallResult,
    ModelCallSuccess,
    TokenUsage,
    ToolCall,
    ToolDeclaration,
    Turn,
)
from coderelay.models.operations import (
    CreateFolder,
    Delete,
    FileOperation,
    Move,
    OperationResult,
    ParsedResponse,
    WriteFile,
)
from coderelay.models.pipeline import (
    FinalContext,
    PhaseKind,
    PhaseRecord,
    PhaseStatus,
    PipelineOutcome,
    PipelineState,
    SubResult,
)

__all__ = [
    "CreateFolder",
    "Delete",
    "FailureKind",
    "FileOperation",
    "FinalContext",
    "ImagePart",
    "ModelCallFailure",
    "ModelCallRequest",
    "ModelCallResult",
    "ModelCallSuccess",
    "Move",
    "OperationResult",
    "ParsedResponse",
    "PhaseKind",
    "PhaseRecord",
    "PhaseStatus",
    "PipelineOutcome",
    "PipelineState",
    "SubResult",
    "TokenUsage",
    "ToolCall",
    "ToolDeclaration",
    "Turn",
    "WriteFile",
]
