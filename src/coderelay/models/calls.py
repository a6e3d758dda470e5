"""Model call request/result types.

A request is built once by the phase that owns it and never mutated.
Results come in two shapes: a success carrying text, tool calls and token
usage, or a failure carrying an error kind. Failures are values, not
exceptions, so a fan-out can keep the results of replicas that succeeded.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

TurnRole = Literal["user", "model", "tool"]

FailureKind = Literal[
    "rate_limited",
    "overloaded",
    "server_error",
    "connectivity",
    "invalid_request",
    "unknown",
]


class ImagePart(BaseModel):
    """Inline image attached to a turn (base64 payload)."""

    model_config = ConfigDict(frozen=True)

    mime_type: str
    data: str
    width: int | None = None
    height: int | None = None


class Turn(BaseModel):
    """One conversation turn."""

    model_config = ConfigDict(frozen=True)

    role: TurnRole
    text: str = ""
    images: tuple[ImagePart, ...] = ()
    tool_call_id: str | None = None

    @classmethod
    def user(cls, text: str) -> Turn:
        return cls(role="user", text=text)

    @classmethod
    def model(cls, text: str) -> Turn:
        return cls(role="model", text=text)

    @classmethod
    def tool(cls, text: str, tool_call_id: str | None = None) -> Turn:
        return cls(role="tool", text=text, tool_call_id=tool_call_id)


class ToolDeclaration(BaseModel):
    """A function the model may call, with a JSON-schema parameter spec."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(min_length=1)
    description: str = ""
    parameters: dict[str, Any] = Field(
        default_factory=lambda: {"type": "object", "properties": {}}
    )


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    id: str
    name: str
    args: dict[str, Any] = Field(default_factory=dict)


class TokenUsage(BaseModel):
    """Token counts reported by the provider."""

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0


class ModelCallRequest(BaseModel):
    """A single model request.

    Attributes:
        model: Provider spec, e.g. ``google/gemini-2.5-pro``.
        turns: Ordered conversation turns.
        system_instruction: Optional system prompt.
        tools: Tool declarations offered to the model.
        estimated_input_tokens: Pre-computed input cost used for rate budgeting.
    """

    model_config = ConfigDict(frozen=True)

    model: str = Field(min_length=1)
    turns: tuple[Turn, ...]
    system_instruction: str | None = None
    tools: tuple[ToolDeclaration, ...] = ()
    estimated_input_tokens: int = Field(default=0, ge=0)


class ModelCallSuccess(BaseModel):
    """Completed model call."""

    ok: Literal[True] = True
    text: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)
    usage: TokenUsage | None = None

    def has_tool_call(self, name: str) -> bool:
        """Check whether the model invoked the named tool."""
        return any(tc.name == name for tc in self.tool_calls)


class ModelCallFailure(BaseModel):
    """Model call that failed after the gateway exhausted its retries."""

    ok: Literal[False] = False
    kind: FailureKind
    message: str
    status_code: int | None = None


ModelCallResult = ModelCallSuccess | ModelCallFailure
