"""Dual-path (host/device) track reconstruction pipeline with result comparison."""

from .comparison import (
    AssignmentMatchStrategy,
    Comparator,
    ComparisonResult,
    FirstMatchStrategy,
    MatchStrategy,
)
from .config import PipelineConfig
from .errors import (
    AllocationError,
    InputReadError,
    NavigationBufferOverflowError,
    PipelineStateError,
    TrackChainError,
    TransferError,
)
from .io import CsvEventSource, EventData, EventSource
from .pipeline import (
    DualPathPipeline,
    FullChainAlgorithm,
    RunContext,
    TruthFittingPipeline,
    run_pipeline,
)
from .simulation import SyntheticEventSource

__version__ = "0.1.0"

__all__ = [
    "AllocationError",
    "AssignmentMatchStrategy",
    "Comparator",
    "ComparisonResult",
    "CsvEventSource",
    "DualPathPipeline",
    "EventData",
    "EventSource",
    "FirstMatchStrategy",
    "FullChainAlgorithm",
    "InputReadError",
    "MatchStrategy",
    "NavigationBufferOverflowError",
    "PipelineConfig",
    "PipelineStateError",
    "RunContext",
    "SyntheticEventSource",
    "TrackChainError",
    "TransferError",
    "TruthFittingPipeline",
    "run_pipeline",
]
