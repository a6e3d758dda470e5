"""Submission handling for one conversation.

A Session owns the turn list and turns a user prompt into model output in
one of three modes:

- ``chat``: one streamed call; the text becomes a model turn.
- ``simple``: one call whose response is interpreted and applied.
- ``advanced``: the full phase pipeline.

While a submission runs, a placeholder model turn sits at the end of the
conversation. It is replaced by the response summary, turned into an
``Error: ...`` message, or removed on cancellation.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING, Any, Protocol

from structlog.contextvars import bound_contextvars

from coderelay.models.calls import ModelCallRequest, Turn
from coderelay.models.operations import ParsedResponse
from coderelay.observability.logging import get_logger
from coderelay.pipeline.cancellation import OperationCancelledError
from coderelay.pipeline.config import (
    DEFAULT_FAST_PROVIDER,
    DEFAULT_PHASE_COUNT,
    DEFAULT_REPLICAS,
    DEFAULT_STRONG_PROVIDER,
    SessionMode,
)
from coderelay.pipeline.interpreter import parse_response, strip_think
from coderelay.pipeline.orchestrator import PhaseOrchestrator, build_base_turns
from coderelay.pipeline.tokens import estimate_request_tokens
from coderelay.prompts.loader import PromptLoader
from coderelay.providers.base import ModelCallError

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    from coderelay.models.calls import ImagePart, ModelCallResult
    from coderelay.models.operations import OperationResult
    from coderelay.models.pipeline import FinalContext, PipelineOutcome
    from coderelay.pipeline.cancellation import CancellationToken
    from coderelay.pipeline.config import ProjectConfig
    from coderelay.pipeline.orchestrator import ProgressObserver
    from coderelay.pipeline.scheduler import TokenBudgetScheduler
    from coderelay.workspace.project import ChangeApplier

log = get_logger(__name__)


class SessionGateway(Protocol):
    """Call gateway operations a session uses."""

    async def invoke(
        self,
        request: ModelCallRequest,
        cancellation: CancellationToken | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> ModelCallResult: ...

    def stream(
        self,
        request: ModelCallRequest,
        cancellation: CancellationToken | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> AsyncIterator[str]: ...


@dataclass
class SessionSettings:
    """Mode and model selection for a session."""

    mode: SessionMode = "advanced"
    fast_model: str = DEFAULT_FAST_PROVIDER
    strong_model: str = DEFAULT_STRONG_PROVIDER
    phase_count: int = DEFAULT_PHASE_COUNT
    replicas: int = DEFAULT_REPLICAS

    @classmethod
    def from_config(cls, config: ProjectConfig) -> SessionSettings:
        return cls(
            mode=config.pipeline.mode,
            fast_model=config.providers.get_fast_provider(),
            strong_model=config.providers.get_strong_provider(),
            phase_count=config.pipeline.get_phase_count(),
            replicas=config.pipeline.replicas,
        )


@dataclass
class SubmissionResult:
    """What one submission produced.

    Attributes:
        mode: Mode the submission ran in.
        summary: Text shown to the user (empty when nothing came back).
        results: Outcome of each applied file operation.
        outcome: Pipeline outcome for advanced submissions.
        error: Error message when the submission failed.
        cancelled: Whether the submission was cancelled.
    """

    mode: SessionMode
    summary: str = ""
    results: list[OperationResult] = field(default_factory=list)
    outcome: PipelineOutcome | None = None
    error: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


class Session:
    """One conversation and its submission handler."""

    def __init__(
        self,
        gateway: SessionGateway,
        scheduler: TokenBudgetScheduler,
        applier: ChangeApplier,
        settings: SessionSettings | None = None,
        *,
        context_provider: Callable[[], str] | None = None,
        prompts: PromptLoader | None = None,
        observer: ProgressObserver | None = None,
        on_status: Callable[[str], None] | None = None,
    ) -> None:
        self._gateway = gateway
        self._scheduler = scheduler
        self._applier = applier
        self.settings = settings or SessionSettings()
        self._context_provider = context_provider
        self._prompts = prompts or PromptLoader()
        self._observer = observer
        self._on_status = on_status
        self.turns: list[Turn] = []
        self.last_final_context: FinalContext | None = None
        self._submissions = 0

    async def submit(
        self,
        prompt: str,
        images: Sequence[ImagePart] = (),
        cancellation: CancellationToken | None = None,
    ) -> SubmissionResult:
        """Submit a prompt in the configured mode.

        An empty prompt re-sends the conversation when its last turn is a
        user turn (for example after a failed or cancelled submission).

        Raises:
            ValueError: If the prompt is empty and there is nothing to re-send.
        """
        if prompt.strip() or images:
            self.turns.append(Turn(role="user", text=prompt, images=tuple(images)))
        elif not self.turns or self.turns[-1].role != "user":
            raise ValueError("Nothing to submit: prompt is empty")

        mode = self.settings.mode
        history = list(self.turns)
        log.info("submission_started", mode=mode, turns=len(history))

        match mode:
            case "chat":
                return await self._run(mode, partial(self._chat, history, cancellation))
            case "simple":
                return await self._run(mode, partial(self._simple, history, cancellation))
            case "advanced":
                return await self._run(mode, partial(self._advanced, history, cancellation))
        raise ValueError(f"Unknown mode: {mode!r}")

    async def retry_final(self, cancellation: CancellationToken | None = None) -> SubmissionResult:
        """Replay the final phase of the last advanced submission.

        Raises:
            RuntimeError: If no advanced submission has completed its earlier phases.
        """
        if self.last_final_context is None:
            raise RuntimeError("No pipeline run to retry")
        context = self.last_final_context

        async def final() -> tuple[ParsedResponse, PipelineOutcome]:
            outcome = await self._orchestrator().retry_final(context, cancellation)
            return outcome.parsed, outcome

        return await self._run("advanced", final)

    # -- modes ----------------------------------------------------------------

    async def _chat(
        self, history: list[Turn], cancellation: CancellationToken | None
    ) -> tuple[ParsedResponse, None]:
        template = self._prompts.load("chat")
        turns = build_base_turns(history, self._preamble())
        request = self._request(self.settings.strong_model, turns, template.render_system())
        chunks: list[str] = []
        async for chunk in self._gateway.stream(request, cancellation, self._status):
            chunks.append(chunk)
            self._set_placeholder("".join(chunks))
        return ParsedResponse(summary=strip_think("".join(chunks)).strip()), None

    async def _simple(
        self, history: list[Turn], cancellation: CancellationToken | None
    ) -> tuple[ParsedResponse, None]:
        template = self._prompts.load("simple_coder")
        turns = build_base_turns(history, self._preamble())
        turns.append(Turn.model(self._prompts.load("think_primer").render_user()))
        request = self._request(self.settings.strong_model, turns, template.render_system())
        [result] = await self._scheduler.run(
            request.model,
            request.estimated_input_tokens,
            [partial(self._gateway.invoke, request, cancellation, self._status)],
            on_status=self._status,
            cancellation=cancellation,
        )
        if not result.ok:
            raise ModelCallError(result)
        return parse_response(strip_think(result.text)), None

    async def _advanced(
        self, history: list[Turn], cancellation: CancellationToken | None
    ) -> tuple[ParsedResponse, PipelineOutcome]:
        orchestrator = self._orchestrator()
        try:
            outcome = await orchestrator.run(history, self._project_context(), cancellation)
        finally:
            # Kept even when the final phase fails so it can be retried
            self.last_final_context = orchestrator.final_context
        return outcome.parsed, outcome

    # -- plumbing -------------------------------------------------------------

    async def _run(self, mode: SessionMode, produce: Callable[[], Any]) -> SubmissionResult:
        self._submissions += 1
        # Every event logged during the submission carries its number and mode
        with bound_contextvars(submission=self._submissions, mode=mode):
            return await self._produce(mode, produce)

    async def _produce(self, mode: SessionMode, produce: Callable[[], Any]) -> SubmissionResult:
        self.turns.append(Turn.model(""))
        placeholder = len(self.turns) - 1

        try:
            parsed, outcome = await produce()
        except OperationCancelledError:
            del self.turns[placeholder]
            log.info("submission_cancelled")
            return SubmissionResult(mode=mode, cancelled=True)
        except Exception as e:
            message = str(e)
            self.turns[placeholder] = Turn.model(f"Error: {message}")
            log.error("submission_failed", error=message)
            return SubmissionResult(mode=mode, error=message)

        if parsed.is_empty:
            del self.turns[placeholder]
            log.info("submission_empty")
            return SubmissionResult(mode=mode, outcome=outcome)

        self.turns[placeholder] = Turn.model(parsed.summary)
        results: list[OperationResult] = []
        if parsed.operations:
            results = self._applier.apply(parsed.operations)
            self.turns.append(Turn.tool(format_tool_results(results)))

        log.info(
            "submission_completed",
            operations=len(parsed.operations),
            failed=sum(1 for r in results if not r.success),
        )
        return SubmissionResult(mode=mode, summary=parsed.summary, results=results, outcome=outcome)

    def _orchestrator(self) -> PhaseOrchestrator:
        return PhaseOrchestrator(
            self._gateway,
            self._scheduler,
            fast_model=self.settings.fast_model,
            strong_model=self.settings.strong_model,
            phase_count=self.settings.phase_count,
            replicas=self.settings.replicas,
            prompts=self._prompts,
            observer=self._observer,
            on_status=self._on_status,
        )

    def _project_context(self) -> str | None:
        if self._context_provider is None:
            return None
        return self._context_provider() or None

    def _preamble(self) -> str | None:
        context = self._project_context()
        if not context:
            return None
        return self._prompts.load("context_preamble").render_user(project_context=context)

    def _request(self, model: str, turns: list[Turn], system_instruction: str) -> ModelCallRequest:
        return ModelCallRequest(
            model=model,
            turns=tuple(turns),
            system_instruction=system_instruction or None,
            estimated_input_tokens=estimate_request_tokens(turns, system_instruction),
        )

    def _set_placeholder(self, text: str) -> None:
        if self.turns and self.turns[-1].role == "model":
            self.turns[-1] = Turn.model(text)

    def _status(self, message: str) -> None:
        if self._on_status is not None:
            self._on_status(message)


def format_tool_results(results: Sequence[OperationResult]) -> str:
    """Render operation results as the JSON body of a tool turn."""
    payload = [
        {
            "name": r.operation.op,
            "response": {"success": r.success, "message": r.message, "error": r.error},
        }
        for r in results
    ]
    return json.dumps(payload, indent=2)
