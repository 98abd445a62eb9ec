"""Dual-path pipeline orchestration.

Provides the run context, builders, the per-event state machine and the
runners for the dual-path, full-chain and truth-fitting modes.
"""

from .builder import (
    StageChain,
    build_device_runtime,
    build_event_source,
    build_run_context,
    build_stage_chain,
)
from .context import DeviceRuntime, RunContext
from .full_chain import FullChainAlgorithm, HostFullChain, run_full_chain
from .runner import DualPathPipeline, EventResult, RunSummary, run_pipeline
from .state import EventState, EventStateMachine
from .statistics import RunStatistics, format_summary
from .truth_fitting import TruthFittingPipeline, truth_track_candidates

__all__ = [
    "DeviceRuntime",
    "DualPathPipeline",
    "EventResult",
    "EventState",
    "EventStateMachine",
    "FullChainAlgorithm",
    "HostFullChain",
    "RunContext",
    "RunStatistics",
    "RunSummary",
    "StageChain",
    "TruthFittingPipeline",
    "build_device_runtime",
    "build_event_source",
    "build_run_context",
    "build_stage_chain",
    "format_summary",
    "run_full_chain",
    "run_pipeline",
    "truth_track_candidates",
]
