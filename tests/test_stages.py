"""Tests for the host and device stage implementations."""

import math

import pytest

from trackchain.buffers import BufferPool
from trackchain.comparison import Comparator
from trackchain.config import FindingConfig, SeedingConfig, SimulationConfig
from trackchain.edm import (
    TRACK_CANDIDATES,
    TRACK_STATES,
    BoundTrackParameters,
    Cell,
    ContainerElement,
    Measurement,
    Partition,
    Seed,
    Spacepoint,
)
from trackchain.errors import NavigationBufferOverflowError
from trackchain.memory import create_memory_resources
from trackchain.simulation import SyntheticEventSource
from trackchain.stages import (
    DeviceClusterization,
    DeviceFinding,
    DeviceFitting,
    DeviceParamsEstimation,
    DevicePartitioning,
    DeviceSeeding,
    DeviceSpacepointFormation,
    HostClusterization,
    HostFinding,
    HostFitting,
    HostParamsEstimation,
    HostPartitioning,
    HostSeeding,
    HostSpacepointFormation,
    Stage,
)
from trackchain.stages.finding import NAVIGATION_WIDTH
from trackchain.stages.helix import (
    arc_and_distance,
    curvature_to_qop,
    qop_to_curvature,
    triplet_curvature,
)
from trackchain.stages.partitioning import pack_modules
from trackchain.stream import Stream
from trackchain.transfer import CollectionD2H, CollectionH2D, ContainerD2H, ContainerH2D

BFIELD = 2.0
TOLERANCE = 1e-9


@pytest.fixture(scope="module")
def source():
    """Small simulated events with a few vertices."""
    return SyntheticEventSource(
        SimulationConfig(n_vertices=2, tracks_per_vertex=6, random_seed=7), bfield_z=BFIELD
    )


@pytest.fixture(scope="module")
def event(source):
    return source.read_event(0)


@pytest.fixture
def runtime(device, source):
    """Stream, pool and uploaded geometry on the test device."""
    stream = Stream(device)
    pool = BufferPool(create_memory_resources(device))
    modules = stream.enqueue("upload geometry", source.geometry.to_tensor, device=device)
    return stream, pool, modules


def _assert_records_match(record_type, host, device):
    result = Comparator.for_records(record_type, TOLERANCE).compare(host, device)
    assert len(device) == len(host)
    assert result.match_rate == 1.0


class TestHelix:
    """Tests for the shared transverse track model."""

    def test_straight_triplet(self):
        """Collinear points have zero curvature."""
        assert triplet_curvature(0.0, 0.0, 1.0, 1.0, 2.0, 2.0) == pytest.approx(0.0, abs=1e-15)

    def test_circle_curvature_sign(self):
        """Counter-clockwise motion has positive curvature."""
        r = 50.0
        points = [(r * math.cos(a), r * math.sin(a)) for a in (0.0, 0.3, 0.6)]
        k = triplet_curvature(*points[0], *points[1], *points[2])
        assert k == pytest.approx(1.0 / r)
        reverse = triplet_curvature(*points[2], *points[1], *points[0])
        assert reverse == pytest.approx(-1.0 / r)

    def test_qop_round_trip(self):
        """qop and curvature conversions invert each other."""
        theta = 1.1
        qop = curvature_to_qop(0.002, theta, BFIELD)
        assert qop_to_curvature(qop, theta, BFIELD) == pytest.approx(0.002)

    def test_positive_charge_turns_clockwise(self):
        """A positive qop maps to negative curvature."""
        assert qop_to_curvature(0.5, math.pi / 2, BFIELD) < 0.0

    def test_arc_and_distance_on_circle(self):
        """Points on the circle have zero distance and the right arc length."""
        r = 100.0
        k = 1.0 / r
        # start at (r, 0) moving counter-clockwise around the origin
        angle = 0.4
        s, d = arc_and_distance(r, 0.0, math.pi / 2, k, r * math.cos(angle), r * math.sin(angle))
        assert s == pytest.approx(r * angle)
        assert d == pytest.approx(0.0, abs=1e-9)

    def test_arc_and_distance_straight(self):
        """The straight-line limit measures along and across the line."""
        s, d = arc_and_distance(0.0, 0.0, 0.0, 0.0, 10.0, 2.0)
        assert s == pytest.approx(10.0)
        assert d == pytest.approx(2.0)


class TestFrontEnd:
    """Tests for partitioning, clusterization and spacepoint formation."""

    def test_pack_modules_never_splits(self):
        """Module runs stay whole inside partitions."""
        partitions = pack_modules([3, 4, 2, 6], max_cells=7)
        assert partitions == [Partition(0, 7), Partition(7, 9), Partition(9, 15)]

    def test_pack_modules_oversized(self):
        """A module larger than the limit gets its own partition."""
        assert pack_modules([10], max_cells=4) == [Partition(0, 10)]
        assert pack_modules([], max_cells=4) == []

    def test_host_clusterization(self, geometry):
        """8-connected cells on one module form one cluster."""
        cells = [
            Cell(0, 10, 10, 1.0),
            Cell(0, 11, 11, 1.0),
            Cell(0, 20, 5, 2.0),
            Cell(1, 10, 10, 1.0),
        ]
        partitions = HostPartitioning(1024).process(cells)
        measurements = HostClusterization(geometry).process(cells, partitions)
        assert len(measurements) == 3
        assert [m.measurement_id for m in measurements] == [0, 1, 2]
        module = geometry[0]
        assert measurements[0].local0 == pytest.approx(
            module.min_corner_x + 11.0 * module.pitch_x
        )
        assert measurements[0].var0 == pytest.approx(module.pitch_x**2 / 12.0)

    def test_partitioning_agrees(self, event, runtime):
        """Device partitioning equals the host partitioning."""
        stream, pool, _ = runtime
        host = HostPartitioning(64).process(event.cells)
        cells = CollectionH2D(pool, stream)(event.cells, Cell)
        device = CollectionD2H(stream)(DevicePartitioning(stream, pool, 64).process(cells))
        assert device == host
        assert host[-1].end == len(event.cells)

    def test_clusterization_agrees(self, source, event, runtime):
        """Device clusters equal host clusters."""
        stream, pool, modules = runtime
        partitions = HostPartitioning(256).process(event.cells)
        host = HostClusterization(source.geometry).process(event.cells, partitions)

        cells_d = CollectionH2D(pool, stream)(event.cells, Cell)
        partitions_d = DevicePartitioning(stream, pool, 256).process(cells_d)
        device = CollectionD2H(stream)(
            DeviceClusterization(stream, pool, modules).process(cells_d, partitions_d)
        )
        _assert_records_match(Measurement, host, device)

    def test_clusters_recover_measurements(self, source, event):
        """Clusterizing simulated cells reproduces the simulated hits."""
        partitions = HostPartitioning(1024).process(event.cells)
        clustered = HostClusterization(source.geometry).process(event.cells, partitions)
        assert len(clustered) == len(event.measurements)
        truth = sorted((m.module_link, m.local0) for m in event.measurements)
        found = sorted((m.module_link, m.local0) for m in clustered)
        for (t_link, t0), (f_link, f0) in zip(truth, found):
            assert t_link == f_link
            assert f0 == pytest.approx(t0, abs=1e-6)

    def test_spacepoint_formation_agrees(self, source, event, runtime):
        """Device spacepoints equal host spacepoints."""
        stream, pool, modules = runtime
        host = HostSpacepointFormation(source.geometry).process(event.measurements)
        measurements = CollectionH2D(pool, stream)(event.measurements, Measurement)
        device = CollectionD2H(stream)(
            DeviceSpacepointFormation(stream, pool, modules).process(measurements)
        )
        _assert_records_match(Spacepoint, host, device)
        assert [sp.measurement_link for sp in host] == list(range(len(host)))

    def test_empty_inputs(self, runtime):
        """Empty cell collections produce empty outputs."""
        stream, pool, modules = runtime
        cells = CollectionH2D(pool, stream)([], Cell)
        partitions = DevicePartitioning(stream, pool, 16).process(cells)
        measurements = DeviceClusterization(stream, pool, modules).process(cells, partitions)
        assert len(partitions) == 0
        assert len(measurements) == 0


class TestSeeding:
    """Tests for triplet seeding."""

    def test_host_device_agree(self, event, runtime):
        """Both paths produce the same seeds in the same order."""
        stream, pool, _ = runtime
        config = SeedingConfig(bfield_z=BFIELD)
        host = HostSeeding(config).process(event.spacepoints)
        spacepoints = CollectionH2D(pool, stream)(event.spacepoints, Spacepoint)
        device = CollectionD2H(stream)(DeviceSeeding(stream, pool, config).process(spacepoints))
        assert host
        _assert_records_match(Seed, host, device)
        assert [(s.spM_link, s.spB_link, s.spT_link) for s in device] == sorted(
            (s.spM_link, s.spB_link, s.spT_link) for s in device
        )

    def test_deterministic(self, event, runtime):
        """Repeated device runs give identical seeds."""
        stream, pool, _ = runtime
        seeding = DeviceSeeding(stream, pool, SeedingConfig(bfield_z=BFIELD))
        results = []
        for _ in range(2):
            spacepoints = CollectionH2D(pool, stream)(event.spacepoints, Spacepoint)
            results.append(CollectionD2H(stream)(seeding.process(spacepoints)))
            pool.release_all()
        assert results[0] == results[1]

    def test_radii_increase(self, event):
        """Seed spacepoints are ordered bottom, middle, top by radius."""
        seeds = HostSeeding(SeedingConfig(bfield_z=BFIELD)).process(event.spacepoints)
        for seed in seeds:
            rb, rm, rt = (
                event.spacepoints[link].radius for link in (seed.spB_link, seed.spM_link, seed.spT_link)
            )
            assert rb < rm < rt

    def test_empty(self, runtime):
        """No spacepoints means no seeds."""
        stream, pool, _ = runtime
        assert HostSeeding(SeedingConfig()).process([]) == []
        spacepoints = CollectionH2D(pool, stream)([], Spacepoint)
        assert len(DeviceSeeding(stream, pool, SeedingConfig()).process(spacepoints)) == 0


class TestParamsEstimation:
    """Tests for track parameter estimation."""

    def test_host_device_agree(self, event, runtime):
        """Both paths estimate the same parameters from the same seeds."""
        stream, pool, _ = runtime
        seeds = HostSeeding(SeedingConfig(bfield_z=BFIELD)).process(event.spacepoints)
        host = HostParamsEstimation(BFIELD).process(event.spacepoints, seeds)

        h2d = CollectionH2D(pool, stream)
        device = CollectionD2H(stream)(
            DeviceParamsEstimation(stream, pool, BFIELD).process(
                h2d(event.spacepoints, Spacepoint), h2d(seeds, Seed)
            )
        )
        _assert_records_match(BoundTrackParameters, host, device)

    def test_parameters_near_truth(self, event):
        """Estimated theta and charge agree with the generating particle."""
        seeds = HostSeeding(SeedingConfig(bfield_z=BFIELD)).process(event.spacepoints)
        params = HostParamsEstimation(BFIELD).process(event.spacepoints, seeds)
        particles = {p.particle_id: p for p in event.particles}
        checked = 0
        for seed, p in zip(seeds, params):
            ids = {
                event.truth[event.spacepoints[link].measurement_link]
                for link in (seed.spB_link, seed.spM_link, seed.spT_link)
            }
            if len(ids) != 1:
                continue
            particle = particles[ids.pop()]
            assert p.theta == pytest.approx(2.0 * math.atan(math.exp(-particle.eta)), abs=1e-3)
            assert math.copysign(1.0, p.qop) == particle.charge
            checked += 1
        assert checked > 0

    def test_surface_is_bottom_module(self, event):
        """Parameters are bound to the bottom spacepoint's module."""
        seeds = HostSeeding(SeedingConfig(bfield_z=BFIELD)).process(event.spacepoints)
        params = HostParamsEstimation(BFIELD).process(event.spacepoints, seeds)
        for seed, p in zip(seeds, params):
            assert p.surface_link == event.spacepoints[seed.spB_link].module_link


def _host_params(event):
    seeds = HostSeeding(SeedingConfig(bfield_z=BFIELD)).process(event.spacepoints)
    return HostParamsEstimation(BFIELD).process(event.spacepoints, seeds)


class TestFinding:
    """Tests for road-based track finding."""

    def _device_find(self, runtime, geometry, event, params, config, capacity):
        stream, pool, modules = runtime
        h2d = CollectionH2D(pool, stream)
        finder = DeviceFinding(stream, pool, modules, geometry.layer_ids, config, BFIELD)
        navigation = pool.rows("navigation", capacity, NAVIGATION_WIDTH)
        candidates = finder.process(
            h2d(event.measurements, Measurement), h2d(params, BoundTrackParameters), navigation
        )
        return ContainerD2H(stream)(candidates)

    def test_host_device_agree(self, source, event, runtime):
        """Both paths find the same candidates."""
        params = _host_params(event)
        config = FindingConfig()
        host = HostFinding(source.geometry, config, BFIELD).process(event.measurements, params)
        device = self._device_find(runtime, source.geometry, event, params, config, 10 * len(params))
        assert host
        comparator = Comparator.for_container("candidates", *TRACK_CANDIDATES, TOLERANCE)
        assert comparator.compare(host, device).match_rate == 1.0
        assert len(device) == len(host)

    def test_one_measurement_per_layer(self, source, event):
        """Candidates hold at most one measurement per layer, inner first."""
        params = _host_params(event)
        candidates = HostFinding(source.geometry, FindingConfig(), BFIELD).process(
            event.measurements, params
        )
        for element in candidates:
            layers = [source.geometry[m.module_link].layer for m in element.items]
            assert layers == sorted(set(layers))
            assert len(layers) >= 3

    def test_overflow_raise(self, source, event, runtime):
        """The raise policy reports the required and allocated sizes."""
        params = _host_params(event)
        config = FindingConfig(overflow_policy="raise")
        with pytest.raises(NavigationBufferOverflowError) as exc_info:
            self._device_find(runtime, source.geometry, event, params, config, 1)
        assert exc_info.value.capacity == 1
        assert exc_info.value.required > 1

    def test_overflow_resize(self, source, event, runtime):
        """The resize policy finds the same candidates as an ample buffer."""
        params = _host_params(event)
        config = FindingConfig(overflow_policy="resize")
        host = HostFinding(source.geometry, config, BFIELD).process(event.measurements, params)
        device = self._device_find(runtime, source.geometry, event, params, config, 1)
        assert len(device) == len(host)

    def test_overflow_truncate(self, source, event, runtime):
        """The truncate policy keeps only what fits."""
        params = _host_params(event)
        config = FindingConfig(overflow_policy="truncate", min_measurements=1)
        device = self._device_find(runtime, source.geometry, event, params, config, 2)
        assert sum(len(e.items) for e in device) <= 2

    def test_no_params(self, source, event, runtime):
        """No parameters means no candidates on either path."""
        config = FindingConfig()
        assert HostFinding(source.geometry, config, BFIELD).process(event.measurements, []) == []
        assert self._device_find(runtime, source.geometry, event, [], config, 0) == []


class TestFitting:
    """Tests for the least-squares track fit."""

    def test_host_device_agree(self, source, event, runtime):
        """Both paths produce the same fitted tracks and states."""
        stream, pool, modules = runtime
        params = _host_params(event)
        candidates = HostFinding(source.geometry, FindingConfig(), BFIELD).process(
            event.measurements, params
        )
        host = HostFitting(source.geometry, BFIELD).process(candidates)

        candidates_d = ContainerH2D(pool, stream)(candidates, *TRACK_CANDIDATES)
        device = ContainerD2H(stream)(
            DeviceFitting(stream, pool, modules, BFIELD).process(candidates_d)
        )
        comparator = Comparator.for_container("tracks", *TRACK_STATES, 1e-7)
        assert comparator.compare(host, device).match_rate == 1.0

    def test_ndf_and_chi2(self, source, event):
        """ndf counts two coordinates per measurement minus five parameters."""
        params = _host_params(event)
        candidates = HostFinding(source.geometry, FindingConfig(), BFIELD).process(
            event.measurements, params
        )
        for element in HostFitting(source.geometry, BFIELD).process(candidates):
            assert element.header.ndf == 2 * len(element.items) - 5
            assert element.header.chi2 == pytest.approx(sum(s.chi2 for s in element.items))
            assert element.header.chi2 >= 0.0

    def test_straight_track_fit(self, geometry, make_event):
        """A straight track from the origin fits with zero residuals."""
        event = make_event(tracks=[(0.1, 0.5)], layers=(0, 1, 2, 3))
        header = BoundTrackParameters(
            surface_link=event.measurements[0].module_link,
            loc0=event.measurements[0].local0,
            loc1=event.measurements[0].local1,
            phi=0.1,
            theta=math.atan2(1.0, 0.5),
            qop=0.0,
        )
        fitted = HostFitting(geometry, BFIELD).process(
            [ContainerElement(header=header, items=event.measurements)]
        )[0]
        assert fitted.header.theta == pytest.approx(math.atan2(1.0, 0.5))
        assert fitted.header.chi2 == pytest.approx(0.0, abs=1e-9)
        assert fitted.header.ndf == 3


def test_stages_satisfy_protocol(source, runtime):
    """Every stage implementation is a Stage."""
    stream, pool, modules = runtime
    geometry = source.geometry
    stages = [
        HostSeeding(SeedingConfig()),
        DeviceSeeding(stream, pool, SeedingConfig()),
        HostParamsEstimation(BFIELD),
        DeviceParamsEstimation(stream, pool, BFIELD),
        HostFinding(geometry, FindingConfig(), BFIELD),
        DeviceFinding(stream, pool, modules, geometry.layer_ids, FindingConfig(), BFIELD),
        HostFitting(geometry, BFIELD),
        DeviceFitting(stream, pool, modules, BFIELD),
    ]
    for stage in stages:
        assert isinstance(stage, Stage)
