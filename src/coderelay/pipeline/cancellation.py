"""Cooperative cancellation.

A CancellationToken is created per submission and passed down the call
chain. Every suspension point either checks it or races against it, so a
user-initiated stop aborts in-flight calls and interrupts waits.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, TypeVar

from coderelay.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Awaitable

log = get_logger(__name__)

T = TypeVar("T")


class OperationCancelledError(Exception):
    """Raised when the user cancels a running submission.

    Cancellation is not a failure: callers must not render it as an error.
    """

    def __init__(self, message: str = "Operation cancelled by user") -> None:
        super().__init__(message)


class CancellationToken:
    """One-shot cancellation flag backed by an asyncio.Event."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            log.info("cancellation_requested")
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        """Raise OperationCancelledError if cancel() has been called."""
        if self._event.is_set():
            raise OperationCancelledError()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first.

        When the token fires, the in-flight task is cancelled and awaited
        before OperationCancelledError is raised.

        Args:
            awaitable: Coroutine or future to run.

        Returns:
            The awaitable's result.

        Raises:
            OperationCancelledError: If the token fired before completion.
        """
        task = asyncio.ensure_future(awaitable)
        if self._event.is_set():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            raise OperationCancelledError()

        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise OperationCancelledError()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds``, waking early with OperationCancelledError."""
        await self.guard(asyncio.sleep(seconds))
