"""Dual-path pipeline runner: per-event state machine and public API."""

import logging
import sys
from dataclasses import dataclass, field
from pathlib import Path

from tqdm import tqdm

from ..comparison import Comparator, ComparisonResult, get_strategy
from ..config import PipelineConfig
from ..edm import (
    TRACK_CANDIDATES,
    TRACK_STATES,
    BoundTrackParameters,
    Cell,
    Measurement,
    Module,
    Seed,
    Spacepoint,
)
from ..efficiency import (
    FindingPerformanceWriter,
    FittingPerformanceWriter,
    SeedingPerformanceWriter,
)
from ..errors import AllocationError, InputReadError, TransferError
from ..io import EventData, EventSource, ResultWriter, write_records
from ..profiling.timing import TimingInfo
from ..stages.finding import NAVIGATION_WIDTH
from ..transfer import CollectionD2H, CollectionH2D, ContainerD2H
from .builder import (
    build_device_runtime,
    build_event_source,
    build_run_context,
    build_stage_chain,
)
from .state import EventState, EventStateMachine
from .statistics import RunStatistics, format_summary

logger = logging.getLogger(__name__)

# Result collection produced by each stage.
STAGE_RESULTS = {
    "seeding": "seeds",
    "params": "params",
    "finding": "candidates",
    "fitting": "tracks",
}

# Errors that abort the whole run.
FATAL_ERRORS = (InputReadError, AllocationError, TransferError)


@dataclass
class EventResult:
    """Outcome of one processed event.

    Attributes:
        index: Event index.
        device: Device results materialized on the host, by result kind.
        host: Host mirror results, by result kind (mirrored stages only).
        comparisons: One comparison per mirrored stage.
        states: Every state the event went through.
    """

    index: int
    device: dict[str, list] = field(default_factory=dict)
    host: dict[str, list] = field(default_factory=dict)
    comparisons: list[ComparisonResult] = field(default_factory=list)
    states: list[EventState] = field(default_factory=list)

    def counts(self, path: str) -> dict[str, int]:
        results = self.device if path == "device" else self.host
        return {kind: len(records) for kind, records in results.items()}

    def comparison(self, label: str) -> ComparisonResult | None:
        for result in self.comparisons:
            if result.label == label:
                return result
        return None


@dataclass
class RunSummary:
    """Outcome of a complete run."""

    events: int
    statistics: RunStatistics
    timing: TimingInfo
    report: str
    summary_path: Path
    performance: dict[str, str] = field(default_factory=dict)


class DualPathPipeline:
    """Run every event on the device path and, optionally, the host path.

    The device chain is stream-ordered; the host mirror runs the configured
    prefix of stages synchronously on the original host input. Device results
    are downloaded (blocking) before comparison and output. Buffers leased for
    an event are returned to the caching allocator when the event ends.

    Example:
        pipeline = DualPathPipeline(config)
        summary = pipeline.run()

    Args:
        config: Full pipeline configuration.
        source: Event source; built from ``config.input`` when omitted.
    """

    def __init__(self, config: PipelineConfig, source: EventSource | None = None):
        self.config = config
        self.source = source if source is not None else build_event_source(config)
        self.geometry = self.source.geometry
        self.runtime = build_device_runtime(config, self.geometry)
        self.device_chain = build_stage_chain("device", config, self.geometry, self.runtime)
        self.host_chain = build_stage_chain("host", config, self.geometry)
        self.mirrored = config.mirrored_stages
        self.comparators = self._build_comparators()
        self.timing = TimingInfo()
        self.statistics = RunStatistics(modules=len(self.geometry))
        self.state_machine = EventStateMachine()

        output = config.output
        self.writer = (
            ResultWriter(output.directory) if output.write_results or output.write_inputs else None
        )
        self.performance_writers = {}
        if output.write_performance:
            perf_dir = Path(output.directory) / "performance"
            self.performance_writers = {
                "seeds": SeedingPerformanceWriter(perf_dir),
                "candidates": FindingPerformanceWriter(perf_dir),
                "tracks": FittingPerformanceWriter(perf_dir),
            }

        logger.info(
            "Dual-path pipeline on %s, host mirror: %s",
            self.runtime.device,
            ", ".join(self.mirrored) or "off",
        )

    def _build_comparators(self) -> dict[str, Comparator]:
        c = self.config.comparison
        kwargs = {
            "strategy": get_strategy(c.strategy),
            "expected_match_rate": c.expected_match_rate,
        }
        comparators = {
            "seeding": Comparator.for_records(Seed, c.tolerance, **kwargs),
            "params": Comparator.for_records(BoundTrackParameters, c.tolerance, **kwargs),
            "finding": Comparator.for_items("candidates", Measurement, c.tolerance, **kwargs),
            "fitting": Comparator.for_container("tracks", *TRACK_STATES, c.tolerance, **kwargs),
        }
        return {stage: comparators[stage] for stage in self.mirrored}

    # --- Event processing ---

    def process_event(self, index: int) -> EventResult:
        """Process one event through every state.

        Args:
            index: Event index to read.

        Returns:
            EventResult with the materialized results and comparisons.

        Raises:
            InputReadError: If the event cannot be read.
            AllocationError: If a device buffer cannot be allocated.
            TransferError: If a host/device copy does not fit its buffer.
        """
        sm = self.state_machine
        try:
            result = self._process(index, sm)
        except FATAL_ERRORS as e:
            logger.error("Event %d: %s in state %s: %s", index, type(e).__name__, sm.state.value, e)
            raise
        finally:
            self.runtime.pool.release_all()
        sm.advance(EventState.IDLE)
        result.states.append(EventState.IDLE)
        return result

    def _process(self, index: int, sm: EventStateMachine) -> EventResult:
        timing = self.timing
        stream, pool = self.runtime.stream, self.runtime.pool
        chain = self.device_chain
        sync = stream.synchronize if self.config.runtime.synchronize_timers else None
        timing.begin_event(index)
        result = EventResult(index=index)

        with timing.timer("Input reading (host)"):
            event = self.source.read_event(index)
        sm.advance(EventState.INPUT_READ)

        with timing.timer("Upload (device)", sync):
            h2d = CollectionH2D(pool, stream)
            spacepoints = h2d(event.spacepoints, Spacepoint)
            measurements = h2d(event.measurements, Measurement)
        sm.advance(EventState.UPLOADED)

        with timing.timer("Seeding (device)", sync):
            seeds = chain.seeding.process(spacepoints)
        sm.advance(EventState.DEVICE_SEEDED)

        with timing.timer("Track params (device)", sync):
            params = chain.params.process(spacepoints, seeds)
        sm.advance(EventState.DEVICE_PARAMS_ESTIMATED)

        # Upper bound only; overflow is handled by the finder's policy.
        with timing.timer("Navigation buffer (device)", sync):
            capacity = self.config.accelerator.navigation_buffer_size_scaler * len(seeds)
            navigation = pool.rows("navigation", capacity, NAVIGATION_WIDTH)
        sm.advance(EventState.DEVICE_NAV_BUFFER_SIZED)

        with timing.timer("Track finding (device)", sync):
            candidates = chain.finding.process(measurements, params, navigation)
        sm.advance(EventState.DEVICE_FOUND)

        with timing.timer("Track fitting (device)", sync):
            tracks = chain.fitting.process(candidates)
        sm.advance(EventState.DEVICE_FITTED)

        if self.mirrored:
            result.host = self._run_host(event)
            sm.advance(EventState.HOST_MIRROR)

        with timing.timer("Download (device)"):
            collection_d2h = CollectionD2H(stream)
            container_d2h = ContainerD2H(stream)
            result.device = {
                "seeds": collection_d2h(seeds),
                "params": collection_d2h(params),
                "candidates": container_d2h(candidates),
                "tracks": container_d2h(tracks),
            }

        with timing.timer("Comparison"):
            for stage, comparator in self.comparators.items():
                kind = STAGE_RESULTS[stage]
                result.comparisons.append(
                    comparator.compare(result.host[kind], result.device[kind])
                )
        sm.advance(EventState.COMPARED)

        with timing.timer("Output (host)"):
            self._record(event, result)
        sm.advance(EventState.RECORDED)
        result.states = list(sm.history)
        return result

    def _run_host(self, event: EventData) -> dict[str, list]:
        """Run the mirrored stage prefix on the original host input."""
        timing, chain, mirrored = self.timing, self.host_chain, self.mirrored
        host: dict[str, list] = {}
        with timing.timer("Seeding (host)"):
            host["seeds"] = chain.seeding.process(event.spacepoints)
        if "params" in mirrored:
            with timing.timer("Track params (host)"):
                host["params"] = chain.params.process(event.spacepoints, host["seeds"])
        if "finding" in mirrored:
            with timing.timer("Track finding (host)"):
                host["candidates"] = chain.finding.process(event.measurements, host["params"])
        if "fitting" in mirrored:
            with timing.timer("Track fitting (host)"):
                host["tracks"] = chain.fitting.process(host["candidates"])
        return host

    def _record(self, event: EventData, result: EventResult) -> None:
        stats = self.statistics
        stats.events += 1
        stats.cells += len(event.cells)
        stats.measurements += len(event.measurements)
        stats.spacepoints += len(event.spacepoints)
        stats.add_counts("device", result.counts("device"))
        stats.add_counts("host", result.counts("host"))
        for comparison in result.comparisons:
            stats.add_comparison(comparison)

        if self.writer is not None:
            self._write(event, result)
        for kind, writer in self.performance_writers.items():
            writer.write(event, result.device[kind])

        logger.debug(
            "Event %d: %d seeds, %d candidates, %d tracks (device)",
            event.index,
            len(result.device["seeds"]),
            len(result.device["candidates"]),
            len(result.device["tracks"]),
        )

    def _write(self, event: EventData, result: EventResult) -> None:
        writer, index = self.writer, event.index
        if self.config.output.write_inputs:
            writer.write_collection("inputs", index, event.cells, Cell)
            writer.write_collection("inputs", index, event.measurements, Measurement)
            writer.write_collection("inputs", index, event.spacepoints, Spacepoint)
        if not self.config.output.write_results:
            return
        for path, results in (("device", result.device), ("host", result.host)):
            if "seeds" in results:
                writer.write_collection(path, index, results["seeds"], Seed)
            if "params" in results:
                writer.write_collection(path, index, results["params"], BoundTrackParameters)
            if "candidates" in results:
                writer.write_container(path, index, results["candidates"], *TRACK_CANDIDATES, kind="candidates")
            if "tracks" in results:
                writer.write_container(path, index, results["tracks"], *TRACK_STATES, kind="tracks")

    # --- Run ---

    def event_indices(self) -> range:
        skip = self.config.input.skip
        return range(skip, skip + self.config.input.events)

    def run(self) -> RunSummary:
        """Process every configured event and write the run summary.

        ``summary.json`` is only written when every event succeeds.

        Returns:
            RunSummary with statistics, timing and the printed report.
        """
        config = self.config
        ctx = build_run_context(
            config, self.geometry, timing=self.timing, statistics=self.statistics
        )
        with ctx:
            if self.writer is not None and config.output.write_inputs:
                write_records(self.writer.path_dir("inputs") / "geometry.txt", self.geometry.modules, Module)

            indices = self.event_indices()
            logger.info("Processing events %d to %d", indices.start, indices.stop - 1)
            for index in tqdm(
                indices,
                desc="Processing events",
                disable=config.runtime.quiet or not sys.stderr.isatty(),
                unit="event",
            ):
                self.process_event(index)

            for name, writer in self.performance_writers.items():
                ctx.performance[name] = writer.finalize()
            report = format_summary(self.statistics, self.timing, self.mirrored)

        print(report)
        for text in ctx.performance.values():
            print(text)
        logger.info("Pipeline complete")
        return RunSummary(
            events=self.statistics.events,
            statistics=self.statistics,
            timing=self.timing,
            report=report,
            summary_path=ctx.summary_path,
            performance=dict(ctx.performance),
        )


def run_pipeline(config: PipelineConfig) -> RunSummary:
    """Run the dual-path pipeline over the configured events.

    Args:
        config: Full pipeline configuration.

    Returns:
        RunSummary of the completed run.
    """
    return DualPathPipeline(config).run()
