"""Least-squares track fitting of track candidates.

The transverse circle is taken from the candidate parameters. Each measurement
is projected onto it, giving a transverse arc length ``s`` and a transverse
residual. A straight-line fit of ``z`` against ``s`` refines ``theta`` and
``loc1`` (``qop`` is rescaled so the curvature is unchanged). Candidates with
fewer than two distinct arc lengths keep their input parameters.
"""

import logging
import math

import torch

from ..buffers import BufferPool, DeviceContainer
from ..edm import (
    TRACK_STATES,
    BoundTrackParameters,
    ContainerElement,
    FittingResult,
    Measurement,
    TrackState,
)
from ..geometry import Geometry, local_to_global_tensor
from ..stream import Stream
from .helix import arc_and_distance, arc_and_distance_t, qop_to_curvature, qop_to_curvature_t

logger = logging.getLogger(__name__)

# Relative threshold on the normal-equation determinant.
DEGENERATE_FIT = 1e-12


def fitted_ndf(n_measurements: int) -> int:
    return 2 * n_measurements - 5


class HostFitting:
    name = "fitting"

    def __init__(self, geometry: Geometry, bfield_z: float):
        self.geometry = geometry
        self.bfield_z = bfield_z

    def _fit_one(self, element: ContainerElement) -> ContainerElement:
        p = element.header
        geometry = self.geometry
        bx, by, bz = geometry.local_to_global(p.surface_link, p.loc0, p.loc1)
        k = qop_to_curvature(p.qop, p.theta, self.bfield_z)
        points = []
        for m in element.items:
            px, py, pz = geometry.local_to_global(m.module_link, m.local0, m.local1)
            s, d = arc_and_distance(bx, by, p.phi, k, px, py)
            points.append((s, d, pz))

        n = len(points)
        s_sum = sum(s for s, _, _ in points)
        z_sum = sum(z for _, _, z in points)
        ss_sum = sum(s * s for s, _, _ in points)
        sz_sum = sum(s * z for s, _, z in points)
        denom = n * ss_sum - s_sum * s_sum
        if n >= 2 and denom > DEGENERATE_FIT * n * ss_sum:
            cot_theta = (n * sz_sum - s_sum * z_sum) / denom
            z0 = (z_sum - cot_theta * s_sum) / n
            theta = math.atan2(1.0, cot_theta)
        else:
            cot_theta = math.cos(p.theta) / math.sin(p.theta)
            z0 = bz
            theta = p.theta

        states = []
        for m, (s, d, z) in zip(element.items, points):
            dz = z - (z0 + cot_theta * s)
            states.append(
                TrackState(
                    measurement_link=m.measurement_id,
                    residual0=d,
                    residual1=dz,
                    chi2=d * d / m.var0 + dz * dz / m.var1,
                )
            )
        result = FittingResult(
            surface_link=p.surface_link,
            loc0=p.loc0,
            loc1=p.loc1 + (z0 - bz),
            phi=p.phi,
            theta=theta,
            qop=p.qop * math.sin(theta) / math.sin(p.theta),
            time=p.time,
            ndf=fitted_ndf(n),
            chi2=sum(state.chi2 for state in states),
        )
        return ContainerElement(header=result, items=states)

    def process(self, candidates: list[ContainerElement]) -> list[ContainerElement]:
        return [self._fit_one(element) for element in candidates]


class DeviceFitting:
    """Segmented least-squares fit over the flat item array of a container."""

    name = "fitting"

    def __init__(self, stream: Stream, pool: BufferPool, modules: torch.Tensor, bfield_z: float):
        self.stream = stream
        self.pool = pool
        self.modules = modules
        self.bfield_z = bfield_z

    def _fit(self, headers: torch.Tensor, items: torch.Tensor, sizes: torch.Tensor):
        n_tracks = headers.shape[0]
        segment = torch.repeat_interleave(torch.arange(n_tracks, device=headers.device), sizes)
        pcol, mcol = BoundTrackParameters.column, Measurement.column
        ref = local_to_global_tensor(
            self.modules, headers[:, pcol("surface_link")], headers[:, pcol("loc0")], headers[:, pcol("loc1")]
        )
        phi = headers[:, pcol("phi")]
        theta = headers[:, pcol("theta")]
        qop = headers[:, pcol("qop")]
        k = qop_to_curvature_t(qop, theta, self.bfield_z)
        pos = local_to_global_tensor(
            self.modules, items[:, mcol("module_link")], items[:, mcol("local0")], items[:, mcol("local1")]
        )
        s, d = arc_and_distance_t(
            ref[segment, 0], ref[segment, 1], phi[segment], k[segment], pos[:, 0], pos[:, 1]
        )
        z = pos[:, 2]

        sums = torch.zeros((n_tracks, 5), dtype=headers.dtype, device=headers.device)
        sums.index_add_(0, segment, torch.stack([torch.ones_like(s), s, z, s * s, s * z], dim=1))
        n, s_sum, z_sum, ss_sum, sz_sum = sums.unbind(dim=1)
        denom = n * ss_sum - s_sum * s_sum
        ok = (n >= 2) & (denom > DEGENERATE_FIT * n * ss_sum)
        safe_denom = torch.where(ok, denom, torch.ones_like(denom))
        safe_n = torch.where(ok, n, torch.ones_like(n))
        fit_cot = (n * sz_sum - s_sum * z_sum) / safe_denom
        cot_theta = torch.where(ok, fit_cot, torch.cos(theta) / torch.sin(theta))
        z0 = torch.where(ok, (z_sum - fit_cot * s_sum) / safe_n, ref[:, 2])
        new_theta = torch.where(ok, torch.atan2(torch.ones_like(fit_cot), fit_cot), theta)

        dz = z - (z0[segment] + cot_theta[segment] * s)
        chi2 = d * d / items[:, mcol("var0")] + dz * dz / items[:, mcol("var1")]
        total_chi2 = torch.zeros(n_tracks, dtype=headers.dtype, device=headers.device)
        total_chi2.index_add_(0, segment, chi2)

        fitted = torch.stack(
            [
                headers[:, pcol("surface_link")],
                headers[:, pcol("loc0")],
                headers[:, pcol("loc1")] + (z0 - ref[:, 2]),
                phi,
                new_theta,
                qop * torch.sin(new_theta) / torch.sin(theta),
                headers[:, pcol("time")],
                (2 * sizes - 5).to(headers.dtype),
                total_chi2,
            ],
            dim=1,
        )
        states = torch.stack([items[:, mcol("measurement_id")], d, dz, chi2], dim=1)
        return fitted, states

    def process(self, candidates: DeviceContainer) -> DeviceContainer:
        header_type, item_type = TRACK_STATES
        result = self.pool.container(header_type, item_type, candidates.item_sizes)
        if len(candidates) == 0:
            return result
        fitted, states = self.stream.enqueue(
            "track fitting", self._fit, candidates.headers, candidates.items, candidates.sizes
        )
        self.stream.copy(fitted, result.headers, label="fitted headers")
        if states.shape[0]:
            self.stream.copy(states, result.items, label="track states")
        self.stream.copy(candidates.sizes, result.sizes, label="track state sizes")
        return result
