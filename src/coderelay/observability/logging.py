"""Structured logging for coderelay.

Events are structlog event dicts routed through stdlib ``logging`` and
rendered per handler by ``structlog.stdlib.ProcessorFormatter``:

- Console (stderr, rich): ``-v`` selects the level. Each line leads with the
  submission and pipeline phase it belongs to, e.g.
  ``[#2 drafting-1] batch_started model=gemini-2.5-pro size=3``.
- File (``--log``): every event as one JSON object per line in
  ``{project}/logs/debug.jsonl``.

Submission and phase context is bound with ``structlog.contextvars`` by the
session and the orchestrator, so scheduler and gateway events pick it up
without passing it around.
"""

from __future__ import annotations

import logging
from pathlib import Path  # noqa: TC003 - Used at runtime for path operations
from typing import TYPE_CHECKING

import structlog
from rich.console import Console
from rich.logging import RichHandler

if TYPE_CHECKING:
    from structlog.typing import EventDict, Processor, WrappedLogger

_configured = False
_file_handler: logging.FileHandler | None = None
_logs_dir: Path | None = None

# Dependencies whose DEBUG output drowns out pipeline events
_NOISY_LOGGERS = (
    "httpx",
    "httpcore",
    "urllib3",
    "langchain",
    "langchain_core",
    "langchain_google_genai",
    "google_genai",
    "asyncio",
)

# Context keys shown as the console line prefix instead of as key=value pairs
_PREFIX_KEYS = ("submission", "phase")

# Keys the rich handler already shows
_CONSOLE_HIDDEN_KEYS = frozenset({"level", "timestamp", "logger"})


def render_console(_logger: WrappedLogger, _method: str, event_dict: EventDict) -> str:
    """Render an event as ``[#<submission> <phase>] event key=value ...``."""
    event_dict = dict(event_dict)
    prefix: list[str] = []
    for key in _PREFIX_KEYS:
        value = event_dict.pop(key, None)
        if value is not None:
            prefix.append(f"#{value}" if key == "submission" else str(value))

    event = str(event_dict.pop("event", ""))
    exc = event_dict.pop("exception", None)
    pairs = " ".join(
        f"{key}={value}"
        for key, value in sorted(event_dict.items())
        if key not in _CONSOLE_HIDDEN_KEYS
    )

    line = f"[{' '.join(prefix)}] {event}" if prefix else event
    if pairs:
        line = f"{line} {pairs}"
    if exc:
        line = f"{line}\n{exc}"
    return line


def _console_formatter(shared: list[Processor]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            render_console,
        ],
    )


def _jsonl_formatter(shared: list[Processor]) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.dict_tracebacks,
            structlog.processors.EventRenamer("message"),
            structlog.processors.JSONRenderer(default=str),
        ],
    )


def configure_logging(
    verbosity: int = 0,
    log_to_file: bool = False,
    project_path: Path | None = None,
) -> None:
    """Configure console and optional file logging.

    Safe to call again, for example once the project directory is known;
    the previous file handler is closed first.

    Args:
        verbosity: 0=WARNING (default), 1=INFO, 2+=DEBUG on the console.
        log_to_file: Also write every event to {project_path}/logs/debug.jsonl.
        project_path: Project directory. Required if log_to_file=True.

    Raises:
        ValueError: If log_to_file=True but project_path is not provided.
    """
    global _configured, _file_handler, _logs_dir

    if log_to_file and project_path is None:
        raise ValueError("project_path is required when log_to_file=True")

    close_file_logging()

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    console_level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    console_handler = RichHandler(
        console=Console(stderr=True),
        rich_tracebacks=False,
        show_time=verbosity >= 1,
        show_path=verbosity >= 2,
        markup=False,
        level=console_level,
    )
    console_handler.setFormatter(_console_formatter(shared))
    handlers: list[logging.Handler] = [console_handler]

    if log_to_file and project_path is not None:
        _logs_dir = project_path / "logs"
        _logs_dir.mkdir(parents=True, exist_ok=True)
        _file_handler = logging.FileHandler(_logs_dir / "debug.jsonl", mode="a", encoding="utf-8")
        _file_handler.setLevel(logging.DEBUG)
        _file_handler.setFormatter(_jsonl_formatter(shared))
        handlers.append(_file_handler)
    else:
        _logs_dir = None

    root_level = logging.DEBUG if (verbosity > 0 or log_to_file) else logging.WARNING
    logging.basicConfig(level=root_level, handlers=handlers, force=True)
    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            *shared,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(root_level),
        # Module loggers exist from import time and must see later reconfiguration
        cache_logger_on_first_use=False,
    )
    _configured = True


def get_logger(name: str | None = None) -> structlog.typing.FilteringBoundLogger:
    """Get a structured logger, configuring logging on first use.

    Args:
        name: Logger name (typically __name__).
    """
    if not _configured:
        configure_logging()

    logger: structlog.typing.FilteringBoundLogger = structlog.get_logger(name)
    return logger


def get_logs_dir() -> Path | None:
    """Get the configured logs directory, or None if file logging is off."""
    return _logs_dir


def close_file_logging() -> None:
    """Close the JSONL file handler, if any."""
    global _file_handler
    if _file_handler is not None:
        logging.getLogger().removeHandler(_file_handler)
        _file_handler.close()
        _file_handler = None
