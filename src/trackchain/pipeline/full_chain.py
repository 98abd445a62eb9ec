"""Cells-to-track-parameters chain, on either execution path."""

import logging
import sys
from dataclasses import dataclass, field

from tqdm import tqdm

from ..comparison import Comparator, ComparisonResult, get_strategy
from ..config import PipelineConfig
from ..edm import BoundTrackParameters, Cell
from ..geometry import Geometry
from ..profiling.timing import TimingInfo
from ..stages import (
    DeviceClusterization,
    DeviceParamsEstimation,
    DevicePartitioning,
    DeviceSeeding,
    DeviceSpacepointFormation,
    HostClusterization,
    HostParamsEstimation,
    HostPartitioning,
    HostSeeding,
    HostSpacepointFormation,
)
from ..transfer import CollectionD2H, CollectionH2D
from .builder import build_device_runtime, build_event_source
from .statistics import ComparisonTotals

logger = logging.getLogger(__name__)


class FullChainAlgorithm:
    """Device chain: cells -> partitions -> measurements -> spacepoints ->
    seeds -> track parameters.

    Every instance owns its stream, memory resources and buffer pool, so
    ``copy()`` yields an algorithm that can run next to this one without
    sharing allocator or stream state.

    Args:
        geometry: Detector geometry.
        config: Pipeline configuration (accelerator and seeding sections).
        timing: Timing record; a new one when omitted.
    """

    def __init__(self, geometry: Geometry, config: PipelineConfig, timing: TimingInfo | None = None):
        self.geometry = geometry
        self.config = config
        self.timing = timing or TimingInfo()
        self.runtime = build_device_runtime(config, geometry)
        stream, pool, modules = self.runtime.stream, self.runtime.pool, self.runtime.modules
        self.partitioning = DevicePartitioning(
            stream, pool, config.accelerator.max_cells_per_partition
        )
        self.clusterization = DeviceClusterization(stream, pool, modules)
        self.spacepoint_formation = DeviceSpacepointFormation(stream, pool, modules)
        self.seeding = DeviceSeeding(stream, pool, config.seeding)
        self.params = DeviceParamsEstimation(stream, pool, config.seeding.bfield_z)

    def copy(self) -> "FullChainAlgorithm":
        """Independent instance with its own stream and allocator state."""
        return FullChainAlgorithm(self.geometry, self.config)

    def __call__(self, cells: list[Cell]) -> list[BoundTrackParameters]:
        timing = self.timing
        stream, pool = self.runtime.stream, self.runtime.pool
        sync = stream.synchronize if self.config.runtime.synchronize_timers else None
        try:
            with timing.timer("Upload (device)", sync):
                cells_d = CollectionH2D(pool, stream)(cells, Cell)
            with timing.timer("Clusterization (device)", sync):
                partitions = self.partitioning.process(cells_d)
                measurements = self.clusterization.process(cells_d, partitions)
                spacepoints = self.spacepoint_formation.process(measurements)
            with timing.timer("Seeding (device)", sync):
                seeds = self.seeding.process(spacepoints)
            with timing.timer("Track params (device)", sync):
                params = self.params.process(spacepoints, seeds)
            with timing.timer("Download (device)"):
                return CollectionD2H(stream)(params)
        finally:
            pool.release_all()


class HostFullChain:
    """Host counterpart of ``FullChainAlgorithm``."""

    def __init__(self, geometry: Geometry, config: PipelineConfig, timing: TimingInfo | None = None):
        self.timing = timing or TimingInfo()
        self.partitioning = HostPartitioning(config.accelerator.max_cells_per_partition)
        self.clusterization = HostClusterization(geometry)
        self.spacepoint_formation = HostSpacepointFormation(geometry)
        self.seeding = HostSeeding(config.seeding)
        self.params = HostParamsEstimation(config.seeding.bfield_z)

    def __call__(self, cells: list[Cell]) -> list[BoundTrackParameters]:
        timing = self.timing
        with timing.timer("Clusterization (host)"):
            partitions = self.partitioning.process(cells)
            measurements = self.clusterization.process(cells, partitions)
            spacepoints = self.spacepoint_formation.process(measurements)
        with timing.timer("Seeding (host)"):
            seeds = self.seeding.process(spacepoints)
        with timing.timer("Track params (host)"):
            return self.params.process(spacepoints, seeds)


@dataclass
class FullChainSummary:
    events: int
    device_params: int
    host_params: int
    comparison: ComparisonTotals
    timing: TimingInfo
    results: list[ComparisonResult] = field(default_factory=list)


def run_full_chain(config: PipelineConfig) -> FullChainSummary:
    """Run cells -> params on both paths for every event and compare.

    Args:
        config: Pipeline configuration; events come from ``config.input``.

    Returns:
        FullChainSummary with counts, comparison totals and timing.
    """
    source = build_event_source(config)
    timing = TimingInfo()
    device_chain = FullChainAlgorithm(source.geometry, config, timing=timing)
    host_chain = HostFullChain(source.geometry, config, timing=timing)
    c = config.comparison
    comparator = Comparator.for_records(
        BoundTrackParameters,
        c.tolerance,
        strategy=get_strategy(c.strategy),
        expected_match_rate=c.expected_match_rate,
    )
    totals = ComparisonTotals()
    summary = FullChainSummary(
        events=0, device_params=0, host_params=0, comparison=totals, timing=timing
    )

    skip = config.input.skip
    for index in tqdm(
        range(skip, skip + config.input.events),
        desc="Full chain",
        disable=config.runtime.quiet or not sys.stderr.isatty(),
        unit="event",
    ):
        timing.begin_event(index)
        with timing.timer("Input reading (host)"):
            event = source.read_event(index)
        if not event.cells:
            logger.warning("Event %d has no cells", index)
        device_params = device_chain(event.cells)
        host_params = host_chain(event.cells)
        with timing.timer("Comparison"):
            result = comparator.compare(host_params, device_params)
        totals.add(result)
        summary.results.append(result)
        summary.events += 1
        summary.device_params += len(device_params)
        summary.host_params += len(host_params)
    return summary
