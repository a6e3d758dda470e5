"""Provider error types."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from coderelay.models.calls import ModelCallFailure


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderConnectionError(ProviderError):
    """Raised when connection to the provider fails."""

    pass


class ProviderRateLimitError(ProviderError):
    """Raised when rate limit is exceeded."""

    pass


class ModelCallError(Exception):
    """Raised where a terminal call failure cannot be returned as a value.

    Streaming calls raise this instead of yielding a failure, and single-call
    pipeline phases raise it to escalate a failed call into a phase error.

    Attributes:
        failure: The failure value produced by the gateway.
    """

    def __init__(self, failure: ModelCallFailure) -> None:
        self.failure = failure
        super().__init__(failure.message)

    @property
    def kind(self) -> str:
        return self.failure.kind
