"""Token-budget-aware batching of model calls.

Calls for one model are released in batches that fit the model's
remaining per-minute token budget. Input cost is charged up front for the
whole batch; output cost is charged as each result arrives. When nothing
fits, the scheduler waits for the window to roll over.

Window state lives in a RateWindowRegistry keyed by model id and is
injected, so separate registries (and clocks) can be used per test.
"""

from __future__ import annotations

import asyncio
import math
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

from coderelay.models.calls import ModelCallFailure
from coderelay.observability.logging import get_logger
from coderelay.pipeline.cancellation import OperationCancelledError
from coderelay.pipeline.tokens import count_text_tokens
from coderelay.providers.base import ModelCallError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Mapping, Sequence

    from coderelay.models.calls import ModelCallResult
    from coderelay.pipeline.cancellation import CancellationToken

    ScheduledCall = Callable[[], Awaitable[ModelCallResult]]

log = get_logger(__name__)

WINDOW_SECONDS = 60.0
SAFETY_MARGIN_SECONDS = 2.0


@dataclass
class RateWindowState:
    """Tokens charged in the current window of one model."""

    consumed: int = 0
    window_start: float | None = None


class RateWindowRegistry:
    """Per-model budgets, window state and locks.

    Budgets are looked up by the full model id first, then by the bare
    model name after the last ``/`` so ``google/gemini-2.5-pro`` matches a
    ``gemini-2.5-pro`` entry.
    """

    def __init__(self, budgets: Mapping[str, int] | None = None) -> None:
        self._budgets: dict[str, int] = dict(budgets or {})
        self._states: dict[str, RateWindowState] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def budget_for(self, model_id: str) -> int | None:
        budget = self._budgets.get(model_id)
        if budget is None:
            budget = self._budgets.get(model_id.rpartition("/")[2])
        return budget

    def set_budget(self, model_id: str, tokens_per_minute: int | None) -> None:
        if tokens_per_minute is None or tokens_per_minute <= 0:
            self._budgets.pop(model_id, None)
        else:
            self._budgets[model_id] = tokens_per_minute

    def state(self, model_id: str) -> RateWindowState:
        return self._states.setdefault(model_id, RateWindowState())

    def lock(self, model_id: str) -> asyncio.Lock:
        return self._locks.setdefault(model_id, asyncio.Lock())


def output_token_cost(result: ModelCallResult) -> int:
    """Tokens to charge for a result's output.

    Uses provider-reported usage when present, otherwise estimates the text.
    """
    if not result.ok:
        return 0
    if result.usage is not None and result.usage.output_tokens:
        return result.usage.output_tokens
    return count_text_tokens(result.text)


class TokenBudgetScheduler:
    """Runs batches of model calls within per-minute token budgets.

    Args:
        registry: Budgets and window state, shared across runs.
        clock: Monotonic clock in seconds.
        sleep: Awaitable sleep used for window waits.
        window_seconds: Length of a rate window.
        safety_margin: Extra wait after a window ends.
    """

    def __init__(
        self,
        registry: RateWindowRegistry | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        window_seconds: float = WINDOW_SECONDS,
        safety_margin: float = SAFETY_MARGIN_SECONDS,
    ) -> None:
        self.registry = registry if registry is not None else RateWindowRegistry()
        self._clock = clock
        self._sleep = sleep
        self._window_seconds = window_seconds
        self._safety_margin = safety_margin

    async def run(
        self,
        model_id: str,
        tokens_per_call: int,
        calls: Sequence[ScheduledCall],
        on_status: Callable[[str], None] | None = None,
        cancellation: CancellationToken | None = None,
    ) -> list[ModelCallResult]:
        """Run ``calls`` for one model, respecting its token budget.

        Args:
            model_id: Model the calls target; selects budget and window.
            tokens_per_call: Estimated input cost of each call.
            calls: Zero-argument callables returning result awaitables.
            on_status: Receives a message whenever the scheduler waits.
            cancellation: Token that interrupts waits and in-flight batches.

        Returns:
            One result per call, in input order. Call exceptions become
            ModelCallFailure values.

        Raises:
            OperationCancelledError: If cancelled before all calls finish.
        """
        calls = list(calls)
        if not calls:
            return []

        budget = self.registry.budget_for(model_id)
        if budget is None:
            log.debug("batch_unmetered", model=model_id, calls=len(calls))
            return await self._run_batch(model_id, calls, None, cancellation)

        results: list[ModelCallResult] = []
        async with self.registry.lock(model_id):
            state = self.registry.state(model_id)
            while len(results) < len(calls):
                if cancellation is not None:
                    cancellation.raise_if_cancelled()

                now = self._clock()
                expired = (
                    state.window_start is not None
                    and now - state.window_start > self._window_seconds
                )
                if expired:
                    state.consumed = 0
                    state.window_start = now

                remaining = len(calls) - len(results)
                fit = self._calls_that_fit(budget - state.consumed, tokens_per_call, remaining)
                if fit == 0 and state.consumed == 0:
                    # Oversized call: run it alone in an empty window
                    fit = 1

                if fit > 0:
                    if state.window_start is None:
                        state.window_start = now
                    state.consumed += max(tokens_per_call, 0) * fit
                    batch = calls[len(results) : len(results) + fit]
                    log.info(
                        "batch_started",
                        model=model_id,
                        size=fit,
                        remaining=remaining - fit,
                        consumed=state.consumed,
                        budget=budget,
                    )
                    results.extend(await self._run_batch(model_id, batch, state, cancellation))
                    continue

                await self._wait_for_window(model_id, state, now, on_status, cancellation)

        return results

    @staticmethod
    def _calls_that_fit(available: int, tokens_per_call: int, remaining: int) -> int:
        if tokens_per_call <= 0:
            return remaining
        if available <= 0:
            return 0
        return min(available // tokens_per_call, remaining)

    async def _wait_for_window(
        self,
        model_id: str,
        state: RateWindowState,
        now: float,
        on_status: Callable[[str], None] | None,
        cancellation: CancellationToken | None,
    ) -> None:
        elapsed = now - state.window_start if state.window_start is not None else 0.0
        delay = max(self._window_seconds - elapsed, 0.0) + self._safety_margin
        log.info(
            "rate_window_wait",
            model=model_id,
            consumed=state.consumed,
            delay_seconds=round(delay, 2),
        )
        if on_status is not None:
            on_status(
                f"Token budget for {model_id} exhausted. "
                f"Waiting {math.ceil(delay)}s for the rate window to reset..."
            )
        if cancellation is not None:
            await cancellation.guard(self._sleep(delay))
        else:
            await self._sleep(delay)

    async def _run_batch(
        self,
        model_id: str,
        batch: list[ScheduledCall],
        state: RateWindowState | None,
        cancellation: CancellationToken | None,
    ) -> list[ModelCallResult]:
        tasks = [
            asyncio.create_task(self._run_one(model_id, index, call, state))
            for index, call in enumerate(batch)
        ]
        try:
            gathered = asyncio.gather(*tasks)
            if cancellation is not None:
                return list(await cancellation.guard(gathered))
            return list(await gathered)
        except BaseException:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _run_one(
        self,
        model_id: str,
        index: int,
        call: ScheduledCall,
        state: RateWindowState | None,
    ) -> ModelCallResult:
        try:
            result = await call()
        except OperationCancelledError:
            raise
        except ModelCallError as e:
            log.warning("batch_item_failed", model=model_id, index=index, error=str(e))
            return e.failure
        except Exception as e:
            log.warning("batch_item_failed", model=model_id, index=index, error=str(e))
            return ModelCallFailure(kind="unknown", message=str(e))

        if state is not None:
            state.consumed += output_token_cost(result)
        return result
