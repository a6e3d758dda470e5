"""Pipeline progress models.

A PipelineState is the ordered list of phase records plus a free-text
status line. It is created when a submission starts, mutated phase by
phase, and published to observers as deep-copied snapshots.
"""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from coderelay.models.calls import Turn  # noqa: TC001 - pydantic needs it at runtime
from coderelay.models.operations import ParsedResponse  # noqa: TC001 - pydantic needs it at runtime

PhaseStatus = Literal["pending", "running", "completed", "skipped", "error"]
PhaseKind = Literal["planning", "consolidation", "drafting", "debugging", "review", "final"]

# Phase kinds that belong to a draft/debug/review cycle
CYCLE_KINDS: frozenset[str] = frozenset({"drafting", "debugging", "review"})


class SubResult(BaseModel):
    """Output of one replica within a fan-out phase."""

    title: str
    content: str = ""


class PhaseRecord(BaseModel):
    """Progress record for one pipeline phase."""

    id: str = Field(min_length=1)
    title: str
    kind: PhaseKind
    cycle: int | None = None
    status: PhaseStatus = "pending"
    sub_results: list[SubResult] = Field(default_factory=list)
    output: str | None = None


class PipelineState(BaseModel):
    """Ordered phase records plus a status line."""

    phases: list[PhaseRecord] = Field(default_factory=list)
    status_message: str = ""

    def get(self, phase_id: str) -> PhaseRecord:
        """Look up a phase by id.

        Raises:
            KeyError: If no phase has the given id.
        """
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        raise KeyError(phase_id)

    @property
    def current(self) -> PhaseRecord | None:
        """The phase currently running, if any."""
        return next((p for p in self.phases if p.status == "running"), None)

    def statuses(self) -> dict[str, PhaseStatus]:
        return {p.id: p.status for p in self.phases}

    def snapshot(self) -> PipelineState:
        """Deep copy suitable for handing to observers."""
        return self.model_copy(deep=True)


class FinalContext(BaseModel):
    """Artifacts needed to replay the final phase without earlier phases.

    Attributes:
        base_turns: Conversation (with project context) the pipeline started from.
        draft: Final code draft, or the master plan when no cycles ran.
        review: Last consolidated review; empty when none was produced.
    """

    model_config = ConfigDict(frozen=True)

    base_turns: tuple[Turn, ...]
    draft: str
    review: str = ""


class PipelineOutcome(BaseModel):
    """Result of a completed pipeline run."""

    raw_text: str
    parsed: ParsedResponse
    final_context: FinalContext
    state: PipelineState
