"""PipelineProfiler wrapping torch.profiler with CUDA warmup and trace export."""

import logging
from pathlib import Path

import torch
from torch.profiler import ProfilerActivity, profile

from ..config import PipelineConfig
from .analyzer import ProfileReport, analyze_profile

logger = logging.getLogger(__name__)

TRACE_FILE = "trace.json"


class PipelineProfiler:
    """Wrapper around torch.profiler for profiling single events.

    The timer scopes of ``TimingInfo`` open ``record_function`` regions, so
    every timing label shows up in the trace and in the report.
    """

    def __init__(self, activities: list[str] | None = None, record_shapes: bool = False):
        """Initialize profiler.

        Args:
            activities: Activities to profile, from ``["cpu", "cuda"]``.
                Defaults to both; ``cuda`` is dropped when unavailable.
            record_shapes: Record tensor shapes (larger traces).
        """
        if activities is None:
            activities = ["cpu", "cuda"]

        self.activities = []
        if "cpu" in activities:
            self.activities.append(ProfilerActivity.CPU)
        if "cuda" in activities and torch.cuda.is_available():
            self.activities.append(ProfilerActivity.CUDA)

        self.record_shapes = record_shapes
        self.prof = None

    def _cuda_warmup(self):
        """Run one small kernel so context creation is not profiled."""
        if torch.cuda.is_available():
            dummy = torch.randn(100, 100, device="cuda")
            _ = dummy @ dummy
            torch.cuda.synchronize()

    def __enter__(self):
        self._cuda_warmup()
        self.prof = profile(
            activities=self.activities,
            profile_memory=False,
            record_shapes=self.record_shapes,
            with_stack=False,
        )
        self.prof.__enter__()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.prof is not None:
            self.prof.__exit__(exc_type, exc_val, exc_tb)

    def export_chrome_trace(self, path: Path) -> None:
        """Export Chrome trace JSON (open in chrome://tracing or Perfetto).

        Args:
            path: Output path for trace JSON file.
        """
        if self.prof is None:
            raise RuntimeError("Profiler must be run before exporting trace")
        Path(path).parent.mkdir(parents=True, exist_ok=True)
        self.prof.export_chrome_trace(str(path))

    def get_report(self, stage_names: list[str]) -> ProfileReport:
        if self.prof is None:
            raise RuntimeError("Profiler must be run before generating report")
        return analyze_profile(self.prof, stage_names)


def profile_event(
    config: PipelineConfig, event: int = 0, trace_path: Path | None = None
) -> tuple[ProfileReport, Path]:
    """Profile one event of the dual-path pipeline.

    The event is processed once unprofiled so allocator pages and kernels are
    warm, then again under the profiler.

    Args:
        config: Pipeline configuration.
        event: Event index to profile.
        trace_path: Chrome trace output path (default
            ``<output.directory>/trace.json``).

    Returns:
        The profile report and the trace path.
    """
    from ..pipeline.runner import DualPathPipeline

    pipeline = DualPathPipeline(config)
    pipeline.process_event(event)

    profiler = PipelineProfiler()
    with profiler:
        pipeline.process_event(event)
    pipeline.runtime.stream.synchronize()

    if trace_path is None:
        trace_path = Path(config.output.directory) / TRACE_FILE
    profiler.export_chrome_trace(trace_path)
    logger.info("Chrome trace written to %s", trace_path)
    return profiler.get_report(pipeline.timing.labels), Path(trace_path)
