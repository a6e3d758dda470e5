"""Tests for cooperative cancellation."""

from __future__ import annotations

import asyncio

import pytest

from coderelay.pipeline.cancellation import CancellationToken, OperationCancelledError


def test_token_starts_uncancelled() -> None:
    token = CancellationToken()

    assert not token.cancelled
    token.raise_if_cancelled()


def test_cancel_is_idempotent() -> None:
    token = CancellationToken()
    token.cancel()
    token.cancel()

    assert token.cancelled
    with pytest.raises(OperationCancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_guard_returns_result() -> None:
    token = CancellationToken()

    async def work() -> int:
        return 42

    assert await token.guard(work()) == 42


@pytest.mark.asyncio
async def test_guard_propagates_errors() -> None:
    token = CancellationToken()

    async def work() -> int:
        raise KeyError("missing")

    with pytest.raises(KeyError):
        await token.guard(work())


@pytest.mark.asyncio
async def test_guard_cancels_in_flight_work() -> None:
    token = CancellationToken()
    stopped = asyncio.Event()

    async def work() -> None:
        try:
            await asyncio.sleep(3600)
        finally:
            stopped.set()

    async def cancel_soon() -> None:
        await asyncio.sleep(0.01)
        token.cancel()

    canceller = asyncio.create_task(cancel_soon())
    with pytest.raises(OperationCancelledError):
        await token.guard(work())
    await canceller

    assert stopped.is_set()


@pytest.mark.asyncio
async def test_guard_on_cancelled_token_never_runs_work() -> None:
    token = CancellationToken()
    token.cancel()
    ran: list[bool] = []

    async def work() -> None:
        ran.append(True)

    with pytest.raises(OperationCancelledError):
        await token.guard(work())

    assert ran == []


@pytest.mark.asyncio
async def test_sleep_wakes_early() -> None:
    token = CancellationToken()
    loop = asyncio.get_running_loop()
    loop.call_later(0.01, token.cancel)
    start = loop.time()

    with pytest.raises(OperationCancelledError):
        await token.sleep(3600)

    assert loop.time() - start < 5
