"""JSONL logger for model calls.

Writes one structured entry per model call attempt to logs/model_calls.jsonl.
Content is never truncated - full turns and responses are preserved.

Only active when --log flag is passed to CLI.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from pathlib import Path


@dataclass
class CallLogEntry:
    """Entry for model call logging."""

    timestamp: str
    model: str

    # Request
    turns: list[dict[str, str]]
    system_instruction: str | None

    # Response
    content: str
    duration_seconds: float
    attempt: int = 1

    # Token breakdown (0 if provider doesn't report)
    input_tokens: int = 0
    output_tokens: int = 0

    error: str | None = None
    tool_calls: list[dict[str, Any]] | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


class CallLogger:
    """Logger for model calls in JSONL format.

    Attributes:
        log_path: Path to the JSONL log file.
        enabled: Whether logging is enabled.
    """

    def __init__(self, project_path: Path, enabled: bool = True) -> None:
        """Initialize call logger.

        Args:
            project_path: Root path of the project.
            enabled: Whether to actually write logs.
        """
        self.enabled = enabled
        self.log_path = project_path / "logs" / "model_calls.jsonl"
        if enabled:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)

    def log(self, entry: CallLogEntry) -> None:
        """Append an entry to the JSONL log."""
        if not self.enabled:
            return

        with self.log_path.open("a", encoding="utf-8") as f:
            f.write(json.dumps(asdict(entry)) + "\n")

    @staticmethod
    def create_entry(
        model: str,
        turns: list[dict[str, str]],
        content: str,
        duration_seconds: float,
        system_instruction: str | None = None,
        attempt: int = 1,
        input_tokens: int = 0,
        output_tokens: int = 0,
        error: str | None = None,
        tool_calls: list[dict[str, Any]] | None = None,
        **metadata: Any,
    ) -> CallLogEntry:
        """Create a log entry stamped with the current time.

        Args:
            model: Model spec used for the call.
            turns: Conversation turns as role/text dicts.
            content: Response text (empty on failure).
            duration_seconds: Time taken for the attempt.
            system_instruction: System instruction sent with the call.
            attempt: 1-based attempt number within the retry loop.
            input_tokens: Input tokens reported by the provider.
            output_tokens: Output tokens reported by the provider.
            error: Error message if the attempt failed.
            tool_calls: Tool calls returned by the model.
            **metadata: Additional metadata.

        Returns:
            CallLogEntry ready for logging.
        """
        return CallLogEntry(
            timestamp=datetime.now(UTC).isoformat(),
            model=model,
            turns=turns,
            system_instruction=system_instruction,
            content=content,
            duration_seconds=duration_seconds,
            attempt=attempt,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            error=error,
            tool_calls=tool_calls,
            metadata=dict(metadata),
        )

    def read_entries(self) -> list[CallLogEntry]:
        """Read all entries from the log file."""
        if not self.log_path.exists():
            return []

        entries = []
        with self.log_path.open(encoding="utf-8") as f:
            for line in f:
                if line.strip():
                    entries.append(CallLogEntry(**json.loads(line)))
        return entries
