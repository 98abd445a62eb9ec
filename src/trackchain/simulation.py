"""Multi-vertex event simulator for the barrel detector.

Each event has ``n_vertices`` collision vertices with ``tracks_per_vertex``
charged particles each. Particles follow ideal helices in a solenoid field
along z; every barrel layer crossing inside the detector length becomes one
measurement, one spacepoint and a small cluster of cells. Randomness comes
from ``numpy.random.default_rng((random_seed, event))`` so any event can be
regenerated on its own.
"""

import logging
import math

import numpy as np

from .config import SimulationConfig
from .edm import Cell, Measurement, Particle, Spacepoint
from .geometry import PT_PER_TESLA_MM, Geometry, build_barrel_geometry
from .io import EventData

logger = logging.getLogger(__name__)

NEWTON_ITERATIONS = 8


def helix_center(vx: float, vy: float, phi0: float, radius: float, charge: int) -> tuple[float, float]:
    """Center of the transverse circle; positive charges turn clockwise."""
    sign = 1.0 if charge > 0 else -1.0
    return vx + sign * radius * math.sin(phi0), vy - sign * radius * math.cos(phi0)


def helix_position(
    center: tuple[float, float], alpha0: float, radius: float, charge: int, s: float
) -> tuple[float, float]:
    """Transverse position after arc length ``s``."""
    alpha = alpha0 - (1.0 if charge > 0 else -1.0) * s / radius
    return center[0] + radius * math.cos(alpha), center[1] + radius * math.sin(alpha)


def layer_crossing(
    vx: float, vy: float, phi0: float, radius: float, charge: int, layer_radius: float
) -> float | None:
    """Arc length at which the helix first reaches ``layer_radius``.

    Returns:
        Arc length in mm, or None when the circle never gets that far out.
    """
    if layer_radius >= 2.0 * radius:
        return None
    center = helix_center(vx, vy, phi0, radius, charge)
    alpha0 = math.atan2(vy - center[1], vx - center[0])
    sign = 1.0 if charge > 0 else -1.0
    s = 2.0 * radius * math.asin(layer_radius / (2.0 * radius))
    for _ in range(NEWTON_ITERATIONS):
        x, y = helix_position(center, alpha0, radius, charge, s)
        alpha = alpha0 - sign * s / radius
        dx, dy = sign * math.sin(alpha), -sign * math.cos(alpha)
        f = x * x + y * y - layer_radius * layer_radius
        df = 2.0 * (x * dx + y * dy)
        if df == 0.0:
            return None
        step = f / df
        s -= step
        if abs(step) < 1e-12:
            break
    return s if s > 0 else None


def _cells_for(
    module_link: int, u: float, v: float, activation: float, n_channels0: int, n_channels1: int
) -> list[Cell]:
    """Split a hit over up to four pixels so the weighted center is (u, v)."""
    ch0, ch1 = math.floor(u), math.floor(v)
    f, g = u - ch0, v - ch1
    cells = []
    for d0, w0 in ((0, 1.0 - f), (1, f)):
        for d1, w1 in ((0, 1.0 - g), (1, g)):
            c0, c1 = ch0 + d0, ch1 + d1
            w = w0 * w1
            if w <= 0.0 or not (0 <= c0 < n_channels0 and 0 <= c1 < n_channels1):
                continue
            cells.append(Cell(module_link, c0, c1, activation * w))
    return cells


class SyntheticEventSource:
    """Generate events in memory.

    Args:
        config: Simulation configuration (also defines the detector).
        bfield_z: Solenoid field (T).
    """

    def __init__(self, config: SimulationConfig | None = None, bfield_z: float = 2.0):
        self.config = config or SimulationConfig()
        self.bfield_z = bfield_z
        self._geometry = build_barrel_geometry(
            self.config.layer_radii,
            self.config.half_length,
            self.config.modules_per_layer,
            self.config.pitch_x,
            self.config.pitch_y,
        )

    @property
    def geometry(self) -> Geometry:
        return self._geometry

    def _particles(self, rng: np.random.Generator) -> list[Particle]:
        c = self.config
        particles = []
        for vertex_id in range(c.n_vertices):
            vx, vy = rng.normal(0.0, c.vertex_xy_stddev, size=2)
            vz = rng.normal(0.0, c.vertex_z_stddev)
            for _ in range(c.tracks_per_vertex):
                charge = int(rng.choice([-1, 1])) if c.randomize_charge else -1
                particles.append(
                    Particle(
                        particle_id=len(particles),
                        vertex_id=vertex_id,
                        charge=charge,
                        pt=float(rng.uniform(*c.pt_range)),
                        eta=float(rng.uniform(*c.eta_range)),
                        phi=float(rng.uniform(-math.pi, math.pi)),
                        vx=float(vx),
                        vy=float(vy),
                        vz=float(vz),
                    )
                )
        return particles

    def read_event(self, index: int) -> EventData:
        rng = np.random.default_rng((self.config.random_seed, index))
        particles = self._particles(rng)
        geometry = self._geometry
        hits = []
        for p in particles:
            radius = p.pt / (PT_PER_TESLA_MM * self.bfield_z)
            cot_theta = math.sinh(p.eta)
            center = helix_center(p.vx, p.vy, p.phi, radius, p.charge)
            alpha0 = math.atan2(p.vy - center[1], p.vx - center[0])
            for layer, layer_radius in enumerate(self.config.layer_radii):
                s = layer_crossing(p.vx, p.vy, p.phi, radius, p.charge, layer_radius)
                if s is None:
                    break
                z = p.vz + s * cot_theta
                if abs(z) > geometry.half_length:
                    break
                x, y = helix_position(center, alpha0, radius, p.charge, s)
                module_link = geometry.find_module(layer, math.atan2(y, x))
                loc0, loc1 = geometry.global_to_local(module_link, x, y, z)
                hits.append((module_link, loc0, loc1, p.particle_id))

        # measurements are grouped by module, like a detector readout
        hits.sort(key=lambda h: (h[0], h[1], h[2]))
        measurements, spacepoints, cells, truth = [], [], [], {}
        for module_link, loc0, loc1, particle_id in hits:
            module = geometry[module_link]
            measurement_id = len(measurements)
            measurements.append(
                Measurement(
                    measurement_id=measurement_id,
                    module_link=module_link,
                    local0=loc0,
                    local1=loc1,
                    var0=module.pitch_x**2 / 12.0,
                    var1=module.pitch_y**2 / 12.0,
                )
            )
            x, y, z = geometry.local_to_global(module_link, loc0, loc1)
            spacepoints.append(Spacepoint(measurement_id, module_link, x, y, z, loc0, loc1))
            truth[measurement_id] = particle_id
            n0 = int(math.ceil(-2.0 * module.min_corner_x / module.pitch_x))
            n1 = int(math.ceil(-2.0 * module.min_corner_y / module.pitch_y))
            cells.extend(
                _cells_for(
                    module_link,
                    (loc0 - module.min_corner_x) / module.pitch_x - 0.5,
                    (loc1 - module.min_corner_y) / module.pitch_y - 0.5,
                    float(rng.uniform(0.5, 1.5)),
                    n0,
                    n1,
                )
            )
        cells.sort(key=lambda c: (c.module_link, c.channel0, c.channel1))

        logger.debug(
            "Simulated event %d: %d particles, %d measurements, %d cells",
            index,
            len(particles),
            len(measurements),
            len(cells),
        )
        return EventData(
            index=index,
            cells=cells,
            measurements=measurements,
            spacepoints=spacepoints,
            particles=particles,
            truth=truth,
        )
