"""Tests for the token-budget scheduler."""

from __future__ import annotations

import asyncio

import pytest

from coderelay.models.calls import ModelCallFailure, ModelCallSuccess, TokenUsage
from coderelay.pipeline.cancellation import CancellationToken, OperationCancelledError
from coderelay.pipeline.scheduler import (
    RateWindowRegistry,
    TokenBudgetScheduler,
    output_token_cost,
)
from coderelay.providers.base import ModelCallError


class FakeClock:
    """Manual clock whose sleep advances time instantly."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def _scheduler(budgets: dict[str, int], clock: FakeClock) -> TokenBudgetScheduler:
    return TokenBudgetScheduler(RateWindowRegistry(budgets), clock=clock, sleep=clock.sleep)


def _recording_call(clock: FakeClock, started: list[float], text: str = ""):
    async def call() -> ModelCallSuccess:
        started.append(clock.now)
        return ModelCallSuccess(text=text)

    return call


# --- Registry ---


def test_registry_matches_bare_model_name() -> None:
    """Provider-prefixed ids fall back to the bare model name."""
    registry = RateWindowRegistry({"gemini-2.5-pro": 125_000})
    assert registry.budget_for("google/gemini-2.5-pro") == 125_000
    assert registry.budget_for("gemini-2.5-pro") == 125_000
    assert registry.budget_for("google/other") is None


def test_registry_set_budget_removes_non_positive() -> None:
    """A zero budget removes metering for the model."""
    registry = RateWindowRegistry({"m": 10})
    registry.set_budget("m", 0)
    assert registry.budget_for("m") is None
    registry.set_budget("m", 5)
    assert registry.budget_for("m") == 5


def test_output_token_cost_prefers_reported_usage() -> None:
    """Reported output tokens win over the text estimate."""
    reported = ModelCallSuccess(text="abcdefgh", usage=TokenUsage(output_tokens=40))
    estimated = ModelCallSuccess(text="abcdefgh")
    failed = ModelCallFailure(kind="unknown", message="x")

    assert output_token_cost(reported) == 40
    assert output_token_cost(estimated) == 2
    assert output_token_cost(failed) == 0


# --- Scheduling ---


@pytest.mark.asyncio
async def test_unmetered_model_runs_everything_at_once() -> None:
    """Without a budget all calls run concurrently and never wait."""
    clock = FakeClock()
    scheduler = _scheduler({}, clock)
    started: list[float] = []

    results = await scheduler.run("m", 10_000, [_recording_call(clock, started)] * 5)

    assert len(results) == 5
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_empty_call_list() -> None:
    """No calls produce no results."""
    scheduler = _scheduler({"m": 100}, FakeClock())
    assert await scheduler.run("m", 10, []) == []


@pytest.mark.asyncio
async def test_budget_never_exceeded_in_any_window() -> None:
    """Input tokens charged within any 60 second window stay within budget."""
    clock = FakeClock()
    scheduler = _scheduler({"m": 1000}, clock)
    started: list[float] = []
    calls = [_recording_call(clock, started) for _ in range(10)]

    results = await scheduler.run("m", 300, calls)

    assert len(results) == 10
    assert all(r.ok for r in results)
    assert len(started) == 10
    for t in started:
        in_window = [s for s in started if t <= s < t + 60]
        assert len(in_window) * 300 <= 1000
    # Three calls fit per window; the rest wait for the next window
    assert started[:3] == [0.0, 0.0, 0.0]
    assert started[3] > 60


@pytest.mark.asyncio
async def test_wait_reports_status() -> None:
    """Waiting for the window emits a status message."""
    clock = FakeClock()
    scheduler = _scheduler({"m": 100}, clock)
    messages: list[str] = []
    started: list[float] = []

    await scheduler.run("m", 100, [_recording_call(clock, started)] * 2, on_status=messages.append)

    assert clock.sleeps == [62.0]
    assert len(messages) == 1
    assert "Token budget for m exhausted" in messages[0]
    assert "62s" in messages[0]


@pytest.mark.asyncio
async def test_oversized_call_runs_alone() -> None:
    """A call larger than the whole budget runs alone in an empty window."""
    clock = FakeClock()
    scheduler = _scheduler({"m": 100}, clock)
    started: list[float] = []

    results = await scheduler.run("m", 500, [_recording_call(clock, started)] * 2)

    assert len(results) == 2
    assert started[0] == 0.0
    assert started[1] > 60


@pytest.mark.asyncio
async def test_output_tokens_are_debited() -> None:
    """Output tokens of a finished batch count against the window."""
    clock = FakeClock()
    registry = RateWindowRegistry({"m": 1000})
    scheduler = TokenBudgetScheduler(registry, clock=clock, sleep=clock.sleep)

    async def call() -> ModelCallSuccess:
        return ModelCallSuccess(text="x", usage=TokenUsage(output_tokens=150))

    await scheduler.run("m", 100, [call, call])

    assert registry.state("m").consumed == 200 + 300


@pytest.mark.asyncio
async def test_results_preserve_order_and_isolate_failures() -> None:
    """A failing call becomes a failure value without aborting siblings."""
    clock = FakeClock()
    scheduler = _scheduler({"m": 10_000}, clock)

    async def ok() -> ModelCallSuccess:
        return ModelCallSuccess(text="ok")

    async def boom() -> ModelCallSuccess:
        raise RuntimeError("boom")

    async def model_error() -> ModelCallSuccess:
        raise ModelCallError(ModelCallFailure(kind="overloaded", message="busy", status_code=503))

    results = await scheduler.run("m", 10, [ok, boom, model_error, ok])

    assert [r.ok for r in results] == [True, False, False, True]
    assert results[1].kind == "unknown"
    assert results[1].message == "boom"
    assert results[2].kind == "overloaded"


@pytest.mark.asyncio
async def test_windows_are_per_model() -> None:
    """Spending one model's budget does not delay another model."""
    clock = FakeClock()
    scheduler = _scheduler({"a": 100, "b": 100}, clock)
    started: list[float] = []

    await scheduler.run("a", 100, [_recording_call(clock, started)])
    await scheduler.run("b", 100, [_recording_call(clock, started)])

    assert clock.sleeps == []
    assert started == [0.0, 0.0]


@pytest.mark.asyncio
async def test_waiting_model_does_not_block_another() -> None:
    """Model b runs while model a is parked waiting for its window."""
    clock = FakeClock()
    a_waiting = asyncio.Event()
    release = asyncio.Event()

    async def gated_sleep(seconds: float) -> None:
        clock.sleeps.append(seconds)
        a_waiting.set()
        await release.wait()
        clock.now += seconds

    scheduler = TokenBudgetScheduler(
        RateWindowRegistry({"a": 100, "b": 100}), clock=clock, sleep=gated_sleep
    )
    started_a: list[float] = []
    started_b: list[float] = []

    async def run_b() -> list:
        await a_waiting.wait()
        results = await scheduler.run("b", 100, [_recording_call(clock, started_b)])
        release.set()
        return results

    a_results, b_results = await asyncio.wait_for(
        asyncio.gather(
            scheduler.run("a", 100, [_recording_call(clock, started_a)] * 2),
            run_b(),
        ),
        timeout=5,
    )

    assert started_b == [0.0]
    assert started_a == [0.0, 62.0]
    assert clock.sleeps == [62.0]
    assert [r.ok for r in a_results + b_results] == [True, True, True]


@pytest.mark.asyncio
async def test_window_resets_after_expiry() -> None:
    """Consumption is forgotten once the window has elapsed."""
    clock = FakeClock()
    registry = RateWindowRegistry({"m": 100})
    scheduler = TokenBudgetScheduler(registry, clock=clock, sleep=clock.sleep)
    started: list[float] = []

    await scheduler.run("m", 100, [_recording_call(clock, started)])
    clock.now = 61.0
    await scheduler.run("m", 100, [_recording_call(clock, started)])

    assert clock.sleeps == []
    assert registry.state("m").window_start == 61.0


@pytest.mark.asyncio
async def test_cancellation_during_wait() -> None:
    """A cancelled token interrupts the window wait."""
    token = CancellationToken()
    started: list[float] = []
    clock = FakeClock()

    async def cancelling_sleep(seconds: float) -> None:
        token.cancel()
        await asyncio.sleep(3600)

    scheduler = TokenBudgetScheduler(
        RateWindowRegistry({"m": 100}), clock=clock, sleep=cancelling_sleep
    )

    with pytest.raises(OperationCancelledError):
        await scheduler.run(
            "m", 100, [_recording_call(clock, started)] * 2, cancellation=token
        )

    assert len(started) == 1


@pytest.mark.asyncio
async def test_cancellation_aborts_in_flight_batch() -> None:
    """Cancelling mid-batch cancels the running calls."""
    token = CancellationToken()
    cancelled: list[bool] = []

    async def slow() -> ModelCallSuccess:
        try:
            await asyncio.sleep(3600)
        except asyncio.CancelledError:
            cancelled.append(True)
            raise
        return ModelCallSuccess()

    scheduler = TokenBudgetScheduler(RateWindowRegistry())

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(OperationCancelledError):
        await scheduler.run("m", 10, [slow, slow], cancellation=token)
    await canceller

    assert cancelled == [True, True]


@pytest.mark.asyncio
async def test_already_cancelled_token_runs_nothing() -> None:
    """A token cancelled up front stops the scheduler before any call."""
    token = CancellationToken()
    token.cancel()
    clock = FakeClock()
    started: list[float] = []
    scheduler = _scheduler({"m": 100}, clock)

    with pytest.raises(OperationCancelledError):
        await scheduler.run("m", 10, [_recording_call(clock, started)], cancellation=token)

    assert started == []
