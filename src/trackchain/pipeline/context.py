"""Run-scoped state shared by every event of one pipeline run."""

import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import torch

from ..buffers import BufferPool
from ..config import PipelineConfig
from ..geometry import Geometry
from ..memory import MemoryResources
from ..profiling.timing import TimingInfo
from ..stream import Stream
from .statistics import RunStatistics

logger = logging.getLogger(__name__)

SUMMARY_FILE = "summary.json"


@dataclass
class DeviceRuntime:
    """Stream, allocators and uploaded geometry of one pipeline instance.

    Never shared between instances: each instance builds its own.
    """

    resources: MemoryResources
    stream: Stream
    pool: BufferPool
    modules: torch.Tensor

    @property
    def device(self) -> torch.device:
        return self.resources.device


@dataclass
class RunContext:
    """Timing, statistics and bookkeeping of one run.

    ``start()`` creates the output directory; ``finish()`` writes
    ``summary.json``. Used as a context manager, the summary is only written
    when the run completes without an exception.
    """

    config: PipelineConfig
    geometry: Geometry
    output_dir: Path
    timing: TimingInfo = field(default_factory=TimingInfo)
    statistics: RunStatistics = field(default_factory=RunStatistics)
    performance: dict[str, str] = field(default_factory=dict)
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    started_at: str | None = None
    finished_at: str | None = None
    _start_clock: float = 0.0

    def start(self) -> "RunContext":
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.started_at = datetime.now(timezone.utc).isoformat()
        self._start_clock = time.perf_counter()
        self.statistics.modules = len(self.geometry)
        logger.info("Run %s started (output: %s)", self.run_id, self.output_dir)
        return self

    @property
    def summary_path(self) -> Path:
        return self.output_dir / SUMMARY_FILE

    def to_dict(self) -> dict:
        return {
            "run_id": self.run_id,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "wall_time": time.perf_counter() - self._start_clock if self._start_clock else 0.0,
            "device": self.config.accelerator.device,
            "mirrored_stages": self.config.mirrored_stages,
            "statistics": self.statistics.to_dict(),
            "timing": self.timing.to_dict(),
            "performance": dict(self.performance),
            "config": self.config.model_dump(mode="json"),
        }

    def finish(self) -> Path:
        """Write ``summary.json`` and return its path."""
        self.finished_at = datetime.now(timezone.utc).isoformat()
        with open(self.summary_path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)
        logger.info("Run summary written to %s", self.summary_path)
        return self.summary_path

    def __enter__(self) -> "RunContext":
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type is None:
            self.finish()
        else:
            logger.error("Run %s aborted, no summary written", self.run_id)
