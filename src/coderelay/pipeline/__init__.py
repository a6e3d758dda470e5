"""Multi-phase pipeline: scheduling, orchestration and response parsing."""

from coderelay.pipeline.cancellation import CancellationToken, OperationCancelledError
from coderelay.pipeline.config import (
    PipelineConfig,
    ProjectConfig,
    ProjectConfigError,
    ProvidersConfig,
    cycles_for_phase_count,
    load_project_config,
)
from coderelay.pipeline.interpreter import ProtocolError, parse_response, strip_think
from coderelay.pipeline.orchestrator import (
    AllReplicasFailedError,
    PhaseError,
    PhaseOrchestrator,
    PipelineError,
    build_phase_records,
)
from coderelay.pipeline.scheduler import RateWindowRegistry, TokenBudgetScheduler
from coderelay.pipeline.tokens import count_text_tokens, estimate_request_tokens

__all__ = [
    "AllReplicasFailedError",
    "CancellationToken",
    "OperationCancelledError",
    "PhaseError",
    "PhaseOrchestrator",
    "PipelineConfig",
    "PipelineError",
    "ProjectConfig",
    "ProjectConfigError",
    "ProtocolError",
    "ProvidersConfig",
    "RateWindowRegistry",
    "TokenBudgetScheduler",
    "build_phase_records",
    "count_text_tokens",
    "cycles_for_phase_count",
    "estimate_request_tokens",
    "load_project_config",
    "parse_response",
    "strip_think",
]
