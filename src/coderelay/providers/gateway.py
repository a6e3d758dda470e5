"""Single model calls with retry, backoff and cooperative cancellation.

The gateway is the only place that talks to LangChain chat models. It
converts conversation turns to LangChain messages, retries transient
failures according to a RetryPolicy, and turns terminal failures into
ModelCallFailure values so callers never see provider exceptions.

Retry behaviour:
    - HTTP 500 aborts immediately (the input is usually too large).
    - HTTP 503 retries with a growing delay, capped in count and length.
    - 429, connectivity and anything else retries a fixed number of times
      with a fixed delay schedule.
    - Switching between the 503 class and the other class resets the
      counter of the class that was left.
"""

from __future__ import annotations

import asyncio
import math
import re
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import httpx
from langchain_core.messages import AIMessage, HumanMessage, SystemMessage, ToolMessage

from coderelay.models.calls import ModelCallFailure, ModelCallSuccess, TokenUsage, ToolCall
from coderelay.observability.logging import get_logger
from coderelay.pipeline.cancellation import OperationCancelledError
from coderelay.providers.base import (
    ModelCallError,
    ProviderConnectionError,
    ProviderError,
    ProviderRateLimitError,
)
from coderelay.providers.model_info import get_model_info, parse_model_spec

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable, Iterator

    from langchain_core.language_models import BaseChatModel
    from langchain_core.messages import BaseMessage

    from coderelay.models.calls import (
        FailureKind,
        ModelCallRequest,
        ModelCallResult,
        ToolDeclaration,
        Turn,
    )
    from coderelay.observability.call_logger import CallLogger
    from coderelay.pipeline.cancellation import CancellationToken

    StatusCallback = Callable[[str], None]

log = get_logger(__name__)

# "[429] Resource exhausted" style messages
_BRACKETED_STATUS = re.compile(r"\[(\d{3})\]")
# "503 UNAVAILABLE. {...}" style messages
_LEADING_STATUS = re.compile(r"^(\d{3}) [A-Z][A-Z_]+\b")


def is_connectivity_error(exc: BaseException) -> bool:
    """Check if an exception indicates provider connectivity loss.

    Recognises httpx network/timeout errors, Python built-in
    ConnectionError, and ProviderConnectionError. Walks the ``__cause__``
    chain so LangChain-wrapped errors are also detected.
    """
    if isinstance(
        exc,
        (
            httpx.NetworkError,  # ConnectError, ReadError, WriteError, CloseError
            httpx.TimeoutException,  # ConnectTimeout, ReadTimeout, PoolTimeout
            ConnectionError,  # Python built-in (Refused, Reset, Aborted)
            ProviderConnectionError,
        ),
    ):
        return True

    cause = exc.__cause__
    if cause is not None and isinstance(cause, Exception):
        return is_connectivity_error(cause)

    return False


def _iter_causes(exc: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = exc
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__


def extract_status_code(exc: BaseException) -> int | None:
    """Find an HTTP status code on an exception or anything in its cause chain.

    Looks at ``status_code``/``code`` attributes, httpx responses, and
    status codes embedded in the message text.
    """
    for err in _iter_causes(exc):
        for attr in ("status_code", "code"):
            value = getattr(err, attr, None)
            if isinstance(value, int) and 100 <= value <= 599:
                return value
        response = getattr(err, "response", None)
        if isinstance(response, httpx.Response):
            return response.status_code
        message = str(err)
        match = _BRACKETED_STATUS.search(message) or _LEADING_STATUS.search(message)
        if match:
            return int(match.group(1))
    return None


def classify_failure(exc: BaseException, status_code: int | None) -> FailureKind:
    """Map an exception and its status code to a failure kind."""
    if status_code == 500:
        return "server_error"
    if status_code == 503:
        return "overloaded"
    if status_code == 429 or isinstance(exc, ProviderRateLimitError):
        return "rate_limited"
    if is_connectivity_error(exc):
        return "connectivity"
    if status_code is not None and 400 <= status_code < 500:
        return "invalid_request"
    return "unknown"


@dataclass(frozen=True)
class RetryPolicy:
    """Delays and limits for transient call failures.

    Attributes:
        overloaded_base_delay: First delay after a 503, in seconds.
        overloaded_delay_step: Added to the delay for each further 503.
        overloaded_max_delay: Cap on a single 503 delay.
        max_overloaded_retries: Consecutive 503 retries before giving up.
        transient_delays: Delay before each retry of 429/other failures;
            its length is the retry limit for that class.
    """

    overloaded_base_delay: float = 10.0
    overloaded_delay_step: float = 5.0
    overloaded_max_delay: float = 30.0
    max_overloaded_retries: int = 6
    transient_delays: tuple[float, ...] = (30.0, 45.0, 60.0)

    def overloaded_delay(self, retries_so_far: int) -> float:
        return min(
            self.overloaded_base_delay + retries_so_far * self.overloaded_delay_step,
            self.overloaded_max_delay,
        )


@dataclass
class _RetryState:
    policy: RetryPolicy
    overloaded_retries: int = 0
    other_retries: int = 0

    def next_delay(self, kind: FailureKind) -> float | None:
        """Return the delay before the next attempt, or None to give up."""
        if kind == "server_error":
            return None

        if kind == "overloaded":
            if self.overloaded_retries >= self.policy.max_overloaded_retries:
                return None
            delay = self.policy.overloaded_delay(self.overloaded_retries)
            self.overloaded_retries += 1
            self.other_retries = 0
            return delay

        if self.other_retries >= len(self.policy.transient_delays):
            return None
        delay = self.policy.transient_delays[self.other_retries]
        self.other_retries += 1
        self.overloaded_retries = 0
        return delay


def _retry_message(kind: FailureKind, delay: float, state: _RetryState) -> str:
    seconds = f"{math.ceil(delay)}s"
    if kind == "overloaded":
        return f"Model is overloaded. Retrying in {seconds}..."
    attempt = f"(Attempt {state.other_retries}/{len(state.policy.transient_delays)})"
    if kind == "rate_limited":
        return f"API rate limit reached. Retrying in {seconds}... {attempt}"
    if kind == "connectivity":
        return f"Connection to the model provider failed. Retrying in {seconds}... {attempt}"
    return f"An unknown error occurred. Retrying in {seconds}... {attempt}"


def _terminal_message(kind: FailureKind, detail: str) -> str:
    if kind == "server_error":
        return (
            "Error: A server error occurred. The input context may be too long. "
            "Please shorten your prompt or reduce the number of attached files."
            f"\n\nDetails: {detail}"
        )
    return (
        "Error: Maximum retries reached for this issue. Please try again later."
        f"\n\nDetails: {detail}"
    )


def to_langchain_messages(
    turns: tuple[Turn, ...] | list[Turn], system_instruction: str | None = None
) -> list[BaseMessage]:
    """Convert conversation turns to LangChain messages.

    Tool turns without a tool call id (command results reported back into
    the conversation) are sent as user messages.
    """
    messages: list[BaseMessage] = []
    if system_instruction:
        messages.append(SystemMessage(content=system_instruction))

    for turn in turns:
        if turn.role == "model":
            messages.append(AIMessage(content=turn.text))
        elif turn.role == "tool" and turn.tool_call_id:
            messages.append(ToolMessage(content=turn.text, tool_call_id=turn.tool_call_id))
        elif turn.role == "tool":
            messages.append(HumanMessage(content=f"Tool results:\n{turn.text}"))
        elif turn.images:
            parts: list[str | dict[str, Any]] = []
            if turn.text:
                parts.append({"type": "text", "text": turn.text})
            for image in turn.images:
                parts.append(
                    {
                        "type": "image_url",
                        "image_url": {"url": f"data:{image.mime_type};base64,{image.data}"},
                    }
                )
            messages.append(HumanMessage(content=parts))
        else:
            messages.append(HumanMessage(content=turn.text))
    return messages


def _to_langchain_tool(tool: ToolDeclaration) -> dict[str, Any]:
    """Convert a ToolDeclaration to an OpenAI-style function schema."""
    return {
        "type": "function",
        "function": {
            "name": tool.name,
            "description": tool.description,
            "parameters": tool.parameters,
        },
    }


def _content_text(content: Any) -> str:
    """Flatten LangChain message content (str or list of parts) to text."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        chunks = []
        for part in content:
            if isinstance(part, str):
                chunks.append(part)
            elif isinstance(part, dict) and part.get("type", "text") == "text":
                chunks.append(str(part.get("text", "")))
        return "".join(chunks)
    return str(content) if content is not None else ""


def _usage(message: Any) -> TokenUsage | None:
    metadata = getattr(message, "usage_metadata", None)
    if not metadata:
        return None
    return TokenUsage(
        input_tokens=metadata.get("input_tokens", 0),
        output_tokens=metadata.get("output_tokens", 0),
        total_tokens=metadata.get("total_tokens", 0),
    )


def _tool_calls(message: Any) -> list[ToolCall]:
    calls: list[ToolCall] = []
    for i, tc in enumerate(getattr(message, "tool_calls", None) or []):
        name = tc.get("name")
        if not name:
            raise ProviderError("langchain", f"Received tool call without a name: {tc}")
        call_id = str(tc.get("id") or f"call_{i}")
        calls.append(ToolCall(id=call_id, name=name, args=tc.get("args") or {}))
    return calls


_EXHAUSTED = object()


async def _next_chunk(iterator: AsyncIterator[Any]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _EXHAUSTED


def request_warnings(request: ModelCallRequest) -> list[str]:
    """Describe where a request goes beyond what its model is known to accept.

    Unknown models are checked against the default limits. The gateway only
    logs these and sends the request anyway.
    """
    try:
        provider, model = parse_model_spec(request.model)
    except ValueError:
        return []
    info = get_model_info(provider, model)

    warnings: list[str] = []
    if request.estimated_input_tokens > info.context_window:
        warnings.append(
            f"estimated input of {request.estimated_input_tokens} tokens exceeds the "
            f"{info.context_window}-token context window"
        )
    if request.tools and not info.supports_tools:
        warnings.append("model is not known to support tool calls")
    if any(turn.images for turn in request.turns) and not info.supports_vision:
        warnings.append("model is not known to accept images")
    return warnings


@dataclass
class CallGateway:
    """Runs model requests with retry/backoff and cancellation.

    Attributes:
        model_resolver: Maps a model spec to a LangChain chat model.
        retry_policy: Delays and limits for transient failures.
        call_logger: Optional JSONL logger recording every attempt.
        sleep: Awaitable sleep, injectable for tests.
    """

    model_resolver: Callable[[str], BaseChatModel]
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    call_logger: CallLogger | None = None
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep

    async def invoke(
        self,
        request: ModelCallRequest,
        cancellation: CancellationToken | None = None,
        on_status: StatusCallback | None = None,
    ) -> ModelCallResult:
        """Run one request to completion.

        Args:
            request: The request to send.
            cancellation: Token that aborts the call and any backoff sleep.
            on_status: Receives human-readable retry/failure messages.

        Returns:
            ModelCallSuccess, or ModelCallFailure once retries are exhausted.

        Raises:
            OperationCancelledError: If the token fires.
        """
        self._warn_limits(request)
        state = _RetryState(self.retry_policy)
        attempt = 0
        while True:
            attempt += 1
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            start = time.perf_counter()
            try:
                result = await self._guard(self._invoke_once(request), cancellation)
            except OperationCancelledError:
                raise
            except Exception as exc:
                self._record(request, attempt, time.perf_counter() - start, error=str(exc))
                failure = await self._handle_failure(
                    request, exc, state, attempt, cancellation, on_status
                )
                if failure is not None:
                    return failure
                continue

            duration = time.perf_counter() - start
            self._record(request, attempt, duration, result=result)
            log.debug(
                "model_call_completed",
                model=request.model,
                attempt=attempt,
                duration_seconds=round(duration, 3),
                output_tokens=result.usage.output_tokens if result.usage else None,
            )
            return result

    async def stream(
        self,
        request: ModelCallRequest,
        cancellation: CancellationToken | None = None,
        on_status: StatusCallback | None = None,
    ) -> AsyncIterator[str]:
        """Stream a request's text incrementally.

        Failures before the first chunk are retried like ``invoke``. Once
        text has been yielded, a failure ends the stream.

        Yields:
            Text chunks as they arrive.

        Raises:
            ModelCallError: On a terminal failure.
            OperationCancelledError: If the token fires.
        """
        self._warn_limits(request)
        state = _RetryState(self.retry_policy)
        attempt = 0
        while True:
            attempt += 1
            if cancellation is not None:
                cancellation.raise_if_cancelled()

            start = time.perf_counter()
            chunks: list[str] = []
            try:
                chat_model = self.model_resolver(request.model)
                messages = to_langchain_messages(request.turns, request.system_instruction)
                iterator = chat_model.astream(messages).__aiter__()
                try:
                    while True:
                        chunk = await self._guard(_next_chunk(iterator), cancellation)
                        if chunk is _EXHAUSTED:
                            break
                        text = _content_text(getattr(chunk, "content", chunk))
                        if text:
                            chunks.append(text)
                            yield text
                finally:
                    aclose = getattr(iterator, "aclose", None)
                    if aclose is not None:
                        await aclose()
            except OperationCancelledError:
                raise
            except Exception as exc:
                duration = time.perf_counter() - start
                self._record(request, attempt, duration, content="".join(chunks), error=str(exc))
                if chunks:
                    status = extract_status_code(exc)
                    kind = classify_failure(exc, status)
                    log.warning("model_stream_interrupted", model=request.model, error=str(exc))
                    raise ModelCallError(
                        ModelCallFailure(kind=kind, message=str(exc), status_code=status)
                    ) from exc
                failure = await self._handle_failure(
                    request, exc, state, attempt, cancellation, on_status
                )
                if failure is not None:
                    raise ModelCallError(failure) from exc
                continue

            self._record(request, attempt, time.perf_counter() - start, content="".join(chunks))
            return

    async def _invoke_once(self, request: ModelCallRequest) -> ModelCallSuccess:
        chat_model: Any = self.model_resolver(request.model)
        if request.tools:
            chat_model = chat_model.bind_tools(
                [_to_langchain_tool(t) for t in request.tools], tool_choice="auto"
            )
        messages = to_langchain_messages(request.turns, request.system_instruction)
        response = await chat_model.ainvoke(messages)
        return ModelCallSuccess(
            text=_content_text(response.content),
            tool_calls=_tool_calls(response),
            usage=_usage(response),
        )

    async def _handle_failure(
        self,
        request: ModelCallRequest,
        exc: Exception,
        state: _RetryState,
        attempt: int,
        cancellation: CancellationToken | None,
        on_status: StatusCallback | None,
    ) -> ModelCallFailure | None:
        """Sleep before the next attempt, or return the terminal failure."""
        status = extract_status_code(exc)
        kind = classify_failure(exc, status)
        delay = state.next_delay(kind)

        if delay is None:
            log.warning(
                "model_call_failed",
                model=request.model,
                kind=kind,
                status_code=status,
                attempts=attempt,
                error=str(exc),
            )
            if on_status is not None:
                on_status(_terminal_message(kind, str(exc)))
            return ModelCallFailure(kind=kind, message=str(exc), status_code=status)

        log.info(
            "model_call_retry",
            model=request.model,
            kind=kind,
            status_code=status,
            attempt=attempt,
            delay_seconds=delay,
        )
        if on_status is not None:
            on_status(_retry_message(kind, delay, state))
        await self._guard(self.sleep(delay), cancellation)
        return None

    @staticmethod
    def _warn_limits(request: ModelCallRequest) -> None:
        for warning in request_warnings(request):
            log.warning("request_exceeds_model_limits", model=request.model, detail=warning)

    @staticmethod
    async def _guard(awaitable: Awaitable[Any], cancellation: CancellationToken | None) -> Any:
        if cancellation is None:
            return await awaitable
        return await cancellation.guard(awaitable)

    def _record(
        self,
        request: ModelCallRequest,
        attempt: int,
        duration: float,
        *,
        result: ModelCallSuccess | None = None,
        content: str = "",
        error: str | None = None,
    ) -> None:
        if self.call_logger is None or not self.call_logger.enabled:
            return
        usage = result.usage if result is not None else None
        entry = self.call_logger.create_entry(
            model=request.model,
            turns=[{"role": t.role, "text": t.text} for t in request.turns],
            content=result.text if result is not None else content,
            duration_seconds=round(duration, 3),
            system_instruction=request.system_instruction,
            attempt=attempt,
            input_tokens=usage.input_tokens if usage else 0,
            output_tokens=usage.output_tokens if usage else 0,
            error=error,
            tool_calls=[tc.model_dump() for tc in result.tool_calls] if result else None,
            estimated_input_tokens=request.estimated_input_tokens,
        )
        self.call_logger.log(entry)
