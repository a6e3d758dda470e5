"""Observability module for coderelay.

Provides structured logging and model call tracking.
"""

from coderelay.observability.call_logger import CallLogEntry, CallLogger
from coderelay.observability.logging import (
    close_file_logging,
    configure_logging,
    get_logger,
    get_logs_dir,
)

__all__ = [
    "CallLogEntry",
    "CallLogger",
    "close_file_logging",
    "configure_logging",
    "get_logger",
    "get_logs_dir",
]
