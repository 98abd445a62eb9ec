"""Fit truth track candidates on the device and, optionally, the host."""

import logging
import math
import sys
from collections import defaultdict
from dataclasses import dataclass, field

from tqdm import tqdm

from ..comparison import Comparator, ComparisonResult, get_strategy
from ..config import PipelineConfig
from ..edm import TRACK_CANDIDATES, BoundTrackParameters, ContainerElement, FittingResult
from ..efficiency import MIN_PARTICLE_HITS, FittingPerformanceWriter
from ..errors import AllocationError, InputReadError, TransferError
from ..geometry import PT_PER_TESLA_MM, Geometry
from ..io import EventData, EventSource
from ..profiling.timing import TimingInfo
from ..simulation import helix_center
from ..stages import DeviceFitting, HostFitting
from ..transfer import ContainerD2H, ContainerH2D
from .builder import build_device_runtime, build_event_source, build_run_context
from .statistics import RunStatistics, format_summary

logger = logging.getLogger(__name__)


def truth_track_candidates(
    event: EventData, geometry: Geometry, bfield_z: float
) -> list[ContainerElement]:
    """Build one track candidate per reconstructable truth particle.

    The header holds the true track parameters at the innermost measurement;
    the items are the particle's measurements ordered by radius.

    Raises:
        InputReadError: If the event has no truth map.
    """
    if not event.has_truth:
        raise InputReadError(f"event {event.index}: truth fitting needs a truth map")
    hits = defaultdict(list)
    for m in event.measurements:
        particle_id = event.truth.get(m.measurement_id)
        if particle_id is not None:
            x, y, _ = geometry.local_to_global(m.module_link, m.local0, m.local1)
            hits[particle_id].append((math.hypot(x, y), x, y, m))

    candidates = []
    for p in sorted(event.particles, key=lambda p: p.particle_id):
        track = sorted(hits.get(p.particle_id, []), key=lambda h: h[0])
        if len(track) < MIN_PARTICLE_HITS:
            continue
        _, x, y, first = track[0]
        radius = p.pt / (PT_PER_TESLA_MM * bfield_z)
        cx, cy = helix_center(p.vx, p.vy, p.phi, radius, p.charge)
        alpha = math.atan2(y - cy, x - cx)
        sign = 1.0 if p.charge > 0 else -1.0
        header = BoundTrackParameters(
            surface_link=first.module_link,
            loc0=first.local0,
            loc1=first.local1,
            phi=math.atan2(-sign * math.cos(alpha), sign * math.sin(alpha)),
            theta=2.0 * math.atan(math.exp(-p.eta)),
            qop=p.charge / (p.pt * math.cosh(p.eta)),
        )
        candidates.append(ContainerElement(header=header, items=[h[3] for h in track]))
    return candidates


@dataclass
class TruthFitResult:
    index: int
    candidates: int
    device: list[ContainerElement] = field(default_factory=list)
    host: list[ContainerElement] = field(default_factory=list)
    comparison: ComparisonResult | None = None


class TruthFittingPipeline:
    """Truth candidates -> H2D -> device fit -> D2H, with an optional host fit.

    Args:
        config: Pipeline configuration. The host fit runs when
            ``comparison.compare_with_host`` is set.
        source: Event source with truth; built from ``config.input`` when
            omitted.
    """

    def __init__(self, config: PipelineConfig, source: EventSource | None = None):
        self.config = config
        self.source = source if source is not None else build_event_source(config)
        self.geometry = self.source.geometry
        self.bfield_z = config.seeding.bfield_z
        self.runtime = build_device_runtime(config, self.geometry)
        self.device_fitting = DeviceFitting(
            self.runtime.stream, self.runtime.pool, self.runtime.modules, self.bfield_z
        )
        self.host_fitting = HostFitting(self.geometry, self.bfield_z)
        c = config.comparison
        self.comparator = Comparator.for_records(
            FittingResult,
            c.tolerance,
            strategy=get_strategy(c.strategy),
            expected_match_rate=c.expected_match_rate,
        )
        self.timing = TimingInfo()
        self.statistics = RunStatistics(modules=len(self.geometry))
        self.performance = None
        if config.output.write_performance:
            self.performance = FittingPerformanceWriter(f"{config.output.directory}/performance")

    def process_event(self, index: int) -> TruthFitResult:
        timing = self.timing
        stream, pool = self.runtime.stream, self.runtime.pool
        sync = stream.synchronize if self.config.runtime.synchronize_timers else None
        compare = self.config.comparison.compare_with_host
        timing.begin_event(index)
        try:
            with timing.timer("Input reading (host)"):
                event = self.source.read_event(index)
                candidates = truth_track_candidates(event, self.geometry, self.bfield_z)
            with timing.timer("Upload (device)", sync):
                candidates_d = ContainerH2D(pool, stream)(candidates, *TRACK_CANDIDATES)
            with timing.timer("Track fitting (device)", sync):
                tracks_d = self.device_fitting.process(candidates_d)
            with timing.timer("Download (device)"):
                device = ContainerD2H(stream)(tracks_d)
        except (InputReadError, AllocationError, TransferError) as e:
            logger.error("Event %d: %s: %s", index, type(e).__name__, e)
            raise
        finally:
            pool.release_all()

        result = TruthFitResult(index=index, candidates=len(candidates), device=device)
        if compare:
            with timing.timer("Track fitting (host)"):
                result.host = self.host_fitting.process(candidates)
            with timing.timer("Comparison"):
                result.comparison = self.comparator.compare(
                    [e.header for e in result.host], [e.header for e in device]
                )
            self.statistics.add_comparison(result.comparison)
            self.statistics.add_counts("host", {"tracks": len(result.host)})

        self.statistics.events += 1
        self.statistics.measurements += len(event.measurements)
        self.statistics.add_counts("device", {"candidates": len(candidates), "tracks": len(device)})
        if self.performance is not None:
            self.performance.write(event, device)
        return result

    def run(self) -> str:
        """Fit every configured event; returns the printed report."""
        config = self.config
        ctx = build_run_context(
            config, self.geometry, timing=self.timing, statistics=self.statistics
        )
        skip = config.input.skip
        with ctx:
            for index in tqdm(
                range(skip, skip + config.input.events),
                desc="Truth fitting",
                disable=config.runtime.quiet or not sys.stderr.isatty(),
                unit="event",
            ):
                self.process_event(index)
            if self.performance is not None:
                ctx.performance["fitting"] = self.performance.finalize()
            mirrored = ["fitting"] if config.comparison.compare_with_host else []
            report = format_summary(self.statistics, self.timing, mirrored)
        print(report)
        for text in ctx.performance.values():
            print(text)
        return report
