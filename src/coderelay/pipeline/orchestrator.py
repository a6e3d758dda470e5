"""Multi-phase code generation pipeline.

Phases run strictly in sequence::

    Planning -> Consolidation -> [Drafting -> Debugging -> Review] x cycles -> Final

Fan-out phases (planning, debugging) issue several replica calls through the
token-budget scheduler and keep whichever succeed. Every phase transition is
recorded in the PipelineState and published to the progress observer before
the next phase starts. A failing phase is marked ``error`` and raises
PhaseError; a cancelled run raises OperationCancelledError and leaves the
running phase untouched.
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from functools import partial
from typing import TYPE_CHECKING, Protocol

from structlog.contextvars import bound_contextvars

from coderelay.models.calls import ModelCallRequest, ToolDeclaration, Turn
from coderelay.models.pipeline import (
    CYCLE_KINDS,
    FinalContext,
    PhaseRecord,
    PipelineOutcome,
    PipelineState,
    SubResult,
)
from coderelay.observability.logging import get_logger
from coderelay.pipeline.cancellation import OperationCancelledError
from coderelay.pipeline.config import (
    DEFAULT_FAST_PROVIDER,
    DEFAULT_PHASE_COUNT,
    DEFAULT_REPLICAS,
    DEFAULT_STRONG_PROVIDER,
    VALID_PHASE_COUNTS,
    cycles_for_phase_count,
)
from coderelay.pipeline.interpreter import parse_response, strip_think
from coderelay.pipeline.tokens import estimate_request_tokens
from coderelay.prompts.loader import PromptLoader
from coderelay.providers.base import ModelCallError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from coderelay.models.calls import ModelCallFailure, ModelCallResult, ModelCallSuccess
    from coderelay.pipeline.cancellation import CancellationToken
    from coderelay.pipeline.scheduler import TokenBudgetScheduler

log = get_logger(__name__)

NO_PROBLEM_TOOL_NAME = "noProblemDetected"

NO_PROBLEM_TOOL = ToolDeclaration(
    name=NO_PROBLEM_TOOL_NAME,
    description=(
        "Call this function if you have reviewed the code draft and found no critical "
        "errors, bugs, or violations of best practices. If you call this, your text "
        "feedback will be ignored."
    ),
)

CANCELLED_MESSAGE = "Cancelled by user"


class PipelineError(Exception):
    """Raised when pipeline execution fails."""

    def __init__(self, phase: str, message: str) -> None:
        self.phase = phase
        super().__init__(f"Pipeline error in phase '{phase}': {message}")


class PhaseError(PipelineError):
    """Raised when a phase fails; carries the recorded state for diagnostics.

    Attributes:
        reason: Failure description without the phase prefix.
        state: Snapshot of the pipeline state at the time of failure.
    """

    def __init__(self, phase: str, message: str, state: PipelineState | None = None) -> None:
        self.reason = message
        self.state = state
        super().__init__(phase, message)


class AllReplicasFailedError(PhaseError):
    """Raised when every replica of a fan-out phase failed."""

    def __init__(
        self,
        phase: str,
        failures: Sequence[ModelCallFailure],
        state: PipelineState | None = None,
    ) -> None:
        self.failures = list(failures)
        detail = failures[0].message if failures else "no replicas ran"
        super().__init__(phase, f"All {len(self.failures)} replicas failed: {detail}", state)


class ModelGateway(Protocol):
    """The part of the call gateway the orchestrator needs."""

    async def invoke(
        self,
        request: ModelCallRequest,
        cancellation: CancellationToken | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> ModelCallResult: ...


class ProgressObserver(Protocol):
    """Receives a deep-copied PipelineState after every transition."""

    def on_progress(self, state: PipelineState) -> None: ...


def build_phase_records(phase_count: int) -> list[PhaseRecord]:
    """Create the pending phase list for a phase count.

    Raises:
        ValueError: If ``phase_count`` is not 3, 6, 9 or 12.
    """
    if phase_count not in VALID_PHASE_COUNTS:
        raise ValueError(f"phase_count must be one of {VALID_PHASE_COUNTS}, got {phase_count}")

    cycles = cycles_for_phase_count(phase_count)
    specs: list[tuple[str, str, str, int | None]] = [
        ("planning", "Planning", "planning", None),
        ("consolidation", "Consolidation", "consolidation", None),
    ]
    for k in range(1, cycles + 1):
        suffix = f" (cycle {k})" if cycles > 1 else ""
        specs.append((f"drafting-{k}", f"Drafting{suffix}", "drafting", k))
        specs.append((f"debugging-{k}", f"Debugging{suffix}", "debugging", k))
        specs.append((f"review-{k}", f"Review{suffix}", "review", k))
    specs.append(("final", "Final Implementation", "final", None))

    total = len(specs)
    return [
        PhaseRecord(
            id=phase_id,
            title=f"Phase {n}/{total}: {label}",
            kind=kind,  # type: ignore[arg-type]
            cycle=cycle,
        )
        for n, (phase_id, label, kind, cycle) in enumerate(specs, 1)
    ]


def build_base_turns(turns: Sequence[Turn], preamble: str | None) -> list[Turn]:
    """Insert the project-context turn just before the latest user turn."""
    base = list(turns)
    if preamble:
        base.insert(max(len(base) - 1, 0), Turn.user(preamble))
    return base


class PhaseOrchestrator:
    """Drives the plan/consolidate/cycle/final pipeline.

    Attributes:
        fast_model: Model spec for planners, debuggers and review consolidation.
        strong_model: Model spec for consolidation, drafting and the final phase.
        phase_count: Total phases (3, 6, 9 or 12).
        replicas: Replica calls per fan-out phase.
        final_context: Artifacts of the latest run that reached the final
            phase; survives a failed final call.
    """

    def __init__(
        self,
        gateway: ModelGateway,
        scheduler: TokenBudgetScheduler,
        *,
        fast_model: str = DEFAULT_FAST_PROVIDER,
        strong_model: str = DEFAULT_STRONG_PROVIDER,
        phase_count: int = DEFAULT_PHASE_COUNT,
        replicas: int = DEFAULT_REPLICAS,
        prompts: PromptLoader | None = None,
        observer: ProgressObserver | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        if phase_count not in VALID_PHASE_COUNTS:
            raise ValueError(f"phase_count must be one of {VALID_PHASE_COUNTS}, got {phase_count}")
        if replicas < 1:
            raise ValueError(f"replicas must be at least 1, got {replicas}")

        self._gateway = gateway
        self._scheduler = scheduler
        self.fast_model = fast_model
        self.strong_model = strong_model
        self.phase_count = phase_count
        self.replicas = replicas
        self._prompts = prompts or PromptLoader()
        self._observer = observer
        self._on_status = on_status
        self._state = PipelineState()
        self.final_context: FinalContext | None = None

    @property
    def cycles(self) -> int:
        return cycles_for_phase_count(self.phase_count)

    @property
    def state(self) -> PipelineState:
        """Snapshot of the current (or last) run's state."""
        return self._state.snapshot()

    async def run(
        self,
        turns: Sequence[Turn],
        project_context: str | None = None,
        cancellation: CancellationToken | None = None,
    ) -> PipelineOutcome:
        """Run the full pipeline for a conversation.

        Args:
            turns: Conversation ending with the user's request.
            project_context: Serialized project tree, if any.
            cancellation: Token checked at every suspension point.

        Returns:
            PipelineOutcome with the parsed final response.

        Raises:
            PhaseError: If a phase fails.
            OperationCancelledError: If the run is cancelled.
        """
        state = PipelineState(phases=build_phase_records(self.phase_count))
        self._state = state
        self.final_context = None
        self._publish()
        log.info(
            "pipeline_started",
            phase_count=self.phase_count,
            cycles=self.cycles,
            replicas=self.replicas,
        )

        preamble = None
        if project_context:
            preamble = self._prompts.load("context_preamble").render_user(
                project_context=project_context
            )
        base = build_base_turns(turns, preamble)

        plans = await self._planning(base, cancellation)
        master_plan = await self._consolidation(base, plans, cancellation)

        draft, review = master_plan, ""
        for k in range(1, self.cycles + 1):
            draft = await self._drafting(base, k, master_plan, draft, review, cancellation)
            reports, all_clear = await self._debugging(base, k, master_plan, draft, cancellation)
            if all_clear:
                self._skip_remaining(k)
                review = ""
                break
            if not reports:
                self._skip(f"review-{k}", "no feedback collected")
                review = ""
                continue
            review = await self._review(base, k, draft, reports, cancellation)

        self.final_context = FinalContext(base_turns=tuple(base), draft=draft, review=review)
        return await self._final(self.final_context, cancellation)

    async def retry_final(
        self,
        final_context: FinalContext,
        cancellation: CancellationToken | None = None,
    ) -> PipelineOutcome:
        """Re-run only the final phase against a previous run's artifacts.

        Raises:
            PhaseError: If the final call fails.
            OperationCancelledError: If the run is cancelled.
        """
        self._state = PipelineState(
            phases=[PhaseRecord(id="final", title="Final Implementation (retry)", kind="final")]
        )
        self._publish()
        self.final_context = final_context
        log.info("pipeline_retry_final")
        return await self._final(final_context, cancellation)

    # -- phases ---------------------------------------------------------------

    async def _planning(
        self, base: list[Turn], cancellation: CancellationToken | None
    ) -> list[str]:
        async with self._phase("planning", cancellation) as record:
            template = self._prompts.load("architect")
            request = self._request(
                self.fast_model, [*base, self._primer()], template.render_system()
            )
            results = await self._fan_out(request, cancellation)

            plans: list[str] = []
            failures: list[ModelCallFailure] = []
            for i, result in enumerate(results, 1):
                if not result.ok:
                    failures.append(result)
                    record.sub_results.append(
                        SubResult(title=f"Architect {i} (failed)", content=result.message)
                    )
                    continue
                plan = strip_think(result.text).strip()
                if plan:
                    plans.append(plan)
                    record.sub_results.append(SubResult(title=f"Architect {i}", content=plan))

            if not plans:
                raise AllReplicasFailedError("planning", failures)
            record.output = _format_plans(plans)
        return plans

    async def _consolidation(
        self, base: list[Turn], plans: list[str], cancellation: CancellationToken | None
    ) -> str:
        async with self._phase("consolidation", cancellation) as record:
            template = self._prompts.load("consolidator")
            user = template.render_user(plans=_format_plans(plans))
            turns = [*base, Turn.user(user), self._primer()]
            record.output = await self._single_call(
                self.strong_model, turns, template.render_system(), cancellation
            )
        return record.output

    async def _drafting(
        self,
        base: list[Turn],
        cycle: int,
        master_plan: str,
        draft: str,
        review: str,
        cancellation: CancellationToken | None,
    ) -> str:
        async with self._phase(f"drafting-{cycle}", cancellation) as record:
            if cycle == 1:
                template = self._prompts.load("drafter")
                user = template.render_user(master_plan=master_plan)
            else:
                template = self._prompts.load("drafter_revision")
                user = template.render_user(
                    master_plan=master_plan,
                    draft=draft,
                    review=review or "No issues were reported.",
                )
            turns = [*base, Turn.user(user), self._primer()]
            record.output = await self._single_call(
                self.strong_model, turns, template.render_system(), cancellation
            )
        return record.output

    async def _debugging(
        self,
        base: list[Turn],
        cycle: int,
        master_plan: str,
        draft: str,
        cancellation: CancellationToken | None,
    ) -> tuple[list[str], bool]:
        """Run the reviewer replicas.

        Returns:
            Tuple of (feedback reports, whether every replica signalled no issues).
        """
        async with self._phase(f"debugging-{cycle}", cancellation) as record:
            template = self._prompts.load("debugger")
            user = template.render_user(master_plan=master_plan, draft=draft)
            request = self._request(
                self.fast_model,
                [*base, Turn.user(user), self._primer()],
                template.render_system(),
                tools=(NO_PROBLEM_TOOL,),
            )
            results = await self._fan_out(request, cancellation)

            reports: list[str] = []
            failures: list[ModelCallFailure] = []
            no_problem = 0
            for i, result in enumerate(results, 1):
                if not result.ok:
                    failures.append(result)
                    record.sub_results.append(
                        SubResult(title=f"Reviewer {i} (failed)", content=result.message)
                    )
                elif result.has_tool_call(NO_PROBLEM_TOOL_NAME):
                    no_problem += 1
                    record.sub_results.append(
                        SubResult(title=f"Reviewer {i}", content="No problems detected.")
                    )
                elif feedback := strip_think(result.text).strip():
                    reports.append(feedback)
                    record.sub_results.append(SubResult(title=f"Reviewer {i}", content=feedback))

            if len(failures) == len(results):
                raise AllReplicasFailedError(f"debugging-{cycle}", failures)

            all_clear = no_problem == self.replicas
            record.output = "\n---\n".join(reports) if reports else "No problems detected."
            log.info(
                "debugging_outcome",
                cycle=cycle,
                reports=len(reports),
                no_problem=no_problem,
                failed=len(failures),
            )
        return reports, all_clear

    async def _review(
        self,
        base: list[Turn],
        cycle: int,
        draft: str,
        reports: list[str],
        cancellation: CancellationToken | None,
    ) -> str:
        async with self._phase(f"review-{cycle}", cancellation) as record:
            template = self._prompts.load("review_consolidator")
            user = template.render_user(draft=draft, reports="\n---\n".join(reports))
            turns = [*base, Turn.user(user), self._primer()]
            record.output = await self._single_call(
                self.fast_model, turns, template.render_system(), cancellation
            )
        return record.output

    async def _final(
        self, context: FinalContext, cancellation: CancellationToken | None
    ) -> PipelineOutcome:
        async with self._phase("final", cancellation) as record:
            template = self._prompts.load("final_implementer")
            review_section = (
                f"Consolidated Review:\n{context.review}"
                if context.review
                else "No issues were found in the draft."
            )
            user = template.render_user(draft=context.draft, review_section=review_section)
            turns = [*context.base_turns, Turn.user(user), self._primer()]
            request = self._request(self.strong_model, turns, template.render_system())
            result = await self._call(request, cancellation)
            raw_text = result.text
            parsed = parse_response(strip_think(raw_text))
            record.output = parsed.summary
            record.sub_results = [
                SubResult(title=f"Operation {i}", content=op.model_dump_json())
                for i, op in enumerate(parsed.operations, 1)
            ]

        self._state.status_message = "Completed"
        self._publish()
        log.info("pipeline_completed", operations=len(parsed.operations))
        return PipelineOutcome(
            raw_text=raw_text,
            parsed=parsed,
            final_context=context,
            state=self._state.snapshot(),
        )

    # -- plumbing -------------------------------------------------------------

    @asynccontextmanager
    async def _phase(
        self, phase_id: str, cancellation: CancellationToken | None
    ) -> AsyncIterator[PhaseRecord]:
        """Mark a phase running, then completed or error.

        Cancellation leaves the record as it is and only updates the status
        line.
        """
        if cancellation is not None:
            cancellation.raise_if_cancelled()

        record = self._state.get(phase_id)
        record.status = "running"
        self._state.status_message = f"{record.title}..."
        self._publish()
        start = time.perf_counter()

        # Scheduler and gateway events logged during the phase carry its id
        with bound_contextvars(phase=phase_id):
            log.info("phase_started")
            try:
                yield record
            except OperationCancelledError:
                self._state.status_message = CANCELLED_MESSAGE
                self._publish()
                log.info("phase_cancelled")
                raise
            except Exception as e:
                record.status = "error"
                reason = e.reason if isinstance(e, PhaseError) else str(e)
                self._state.status_message = f"{record.title} failed: {reason}"
                self._publish()
                log.error("phase_failed", error=reason)
                if isinstance(e, PhaseError):
                    e.state = self._state.snapshot()
                    raise
                raise PhaseError(phase_id, reason, self._state.snapshot()) from e

            record.status = "completed"
            self._publish()
            log.info(
                "phase_completed",
                duration_seconds=round(time.perf_counter() - start, 3),
                sub_results=len(record.sub_results),
            )
        if cancellation is not None and cancellation.cancelled:
            self._state.status_message = CANCELLED_MESSAGE
            self._publish()
            raise OperationCancelledError()

    def _skip(self, phase_id: str, reason: str) -> None:
        self._state.get(phase_id).status = "skipped"
        log.info("phase_skipped", phase=phase_id, reason=reason)
        self._publish()

    def _skip_remaining(self, cycle: int) -> None:
        """Skip this cycle's review and every later cycle phase."""
        for record in self._state.phases:
            if record.kind not in CYCLE_KINDS or record.cycle is None:
                continue
            if record.cycle > cycle or (record.cycle == cycle and record.kind == "review"):
                record.status = "skipped"
        log.info("cycles_short_circuited", after_cycle=cycle)
        self._publish()

    def _primer(self) -> Turn:
        return Turn.model(self._prompts.load("think_primer").render_user())

    def _request(
        self,
        model: str,
        turns: list[Turn],
        system_instruction: str,
        tools: tuple[ToolDeclaration, ...] = (),
    ) -> ModelCallRequest:
        return ModelCallRequest(
            model=model,
            turns=tuple(turns),
            system_instruction=system_instruction or None,
            tools=tools,
            estimated_input_tokens=estimate_request_tokens(turns, system_instruction),
        )

    async def _fan_out(
        self, request: ModelCallRequest, cancellation: CancellationToken | None
    ) -> list[ModelCallResult]:
        calls = [
            partial(self._gateway.invoke, request, cancellation, self._status)
            for _ in range(self.replicas)
        ]
        return await self._scheduler.run(
            request.model,
            request.estimated_input_tokens,
            calls,
            on_status=self._status,
            cancellation=cancellation,
        )

    async def _call(
        self, request: ModelCallRequest, cancellation: CancellationToken | None
    ) -> ModelCallSuccess:
        """Run one call through the scheduler, raising on failure."""
        [result] = await self._scheduler.run(
            request.model,
            request.estimated_input_tokens,
            [partial(self._gateway.invoke, request, cancellation, self._status)],
            on_status=self._status,
            cancellation=cancellation,
        )
        if not result.ok:
            raise ModelCallError(result)
        return result

    async def _single_call(
        self,
        model: str,
        turns: list[Turn],
        system_instruction: str,
        cancellation: CancellationToken | None,
    ) -> str:
        result = await self._call(self._request(model, turns, system_instruction), cancellation)
        return strip_think(result.text).strip()

    def _status(self, message: str) -> None:
        self._state.status_message = message
        self._publish()
        if self._on_status is not None:
            self._on_status(message)

    def _publish(self) -> None:
        if self._observer is not None:
            self._observer.on_progress(self._state.snapshot())


def _format_plans(plans: list[str]) -> str:
    return "\n\n".join(f"--- PLAN {i} ---\n{plan}" for i, plan in enumerate(plans, 1))
