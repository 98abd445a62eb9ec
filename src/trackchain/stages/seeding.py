"""Triplet seeding on spacepoints.

A seed is a bottom/middle/top spacepoint triplet at increasing radius that
passes the doublet radial window, the cot(theta) compatibility cut, the
minimum-pT curvature cut, the transverse impact cut and the collision-region
cut on the extrapolated vertex z. Seeds are ordered by (middle, bottom, top).
"""

import logging
import math

import torch

from ..buffers import BufferPool, DeviceCollection
from ..config import SeedingConfig
from ..edm import Seed, Spacepoint
from ..geometry import PT_PER_TESLA_MM
from ..stream import Stream
from .helix import (
    impact_parameter,
    impact_parameter_t,
    tangent_phi,
    tangent_phi_t,
    triplet_curvature,
    triplet_curvature_t,
)

logger = logging.getLogger(__name__)


def max_curvature(config: SeedingConfig) -> float:
    """Curvature of a ``min_pt`` track in ``bfield_z`` (1/mm)."""
    return PT_PER_TESLA_MM * config.bfield_z / config.min_pt


class HostSeeding:
    name = "seeding"

    def __init__(self, config: SeedingConfig):
        self.config = config
        self.k_max = max_curvature(config)

    def _in_window(self, dr: float) -> bool:
        return self.config.dr_min <= dr <= self.config.dr_max

    def process(self, spacepoints: list[Spacepoint]) -> list[Seed]:
        c = self.config
        radii = [sp.radius for sp in spacepoints]
        seeds = []
        for m, spM in enumerate(spacepoints):
            bottoms = [b for b in range(len(spacepoints)) if self._in_window(radii[m] - radii[b])]
            tops = [t for t in range(len(spacepoints)) if self._in_window(radii[t] - radii[m])]
            if not bottoms or not tops:
                continue
            for b in bottoms:
                spB = spacepoints[b]
                cot_bm = (spM.z - spB.z) / (radii[m] - radii[b])
                z_vertex = spB.z - radii[b] * cot_bm
                if abs(z_vertex) > c.collision_region:
                    continue
                for t in tops:
                    spT = spacepoints[t]
                    cot_mt = (spT.z - spM.z) / (radii[t] - radii[m])
                    delta = abs(cot_bm - cot_mt)
                    if delta > c.max_cot_theta_diff:
                        continue
                    k = triplet_curvature(spB.x, spB.y, spM.x, spM.y, spT.x, spT.y)
                    if abs(k) > self.k_max:
                        continue
                    phi = tangent_phi(spB.x, spB.y, spM.x, spM.y, k)
                    if impact_parameter(spB.x, spB.y, phi, k) > c.impact_max:
                        continue
                    seeds.append(Seed(b, m, t, -delta, z_vertex))
        logger.debug("Host seeding: %d spacepoints -> %d seeds", len(spacepoints), len(seeds))
        return seeds


def _doublet_join(bm: torch.Tensor, mt: torch.Tensor, n: int) -> tuple[torch.Tensor, ...]:
    """Combine (b, m) and (m, t) doublets sharing a middle into triplets."""
    mt_counts = torch.bincount(mt[:, 0], minlength=n)
    mt_offsets = torch.cumsum(mt_counts, 0) - mt_counts
    per_doublet = mt_counts[bm[:, 1]]
    doublet = torch.repeat_interleave(torch.arange(bm.shape[0], device=bm.device), per_doublet)
    group_start = torch.repeat_interleave(torch.cumsum(per_doublet, 0) - per_doublet, per_doublet)
    within = torch.arange(doublet.shape[0], device=bm.device) - group_start
    b = bm[doublet, 0]
    m = bm[doublet, 1]
    t = mt[mt_offsets[m] + within, 1]
    return b, m, t


class DeviceSeeding:
    name = "seeding"

    def __init__(self, stream: Stream, pool: BufferPool, config: SeedingConfig):
        self.stream = stream
        self.pool = pool
        self.config = config
        self.k_max = max_curvature(config)

    def _seed(self, rows: torch.Tensor) -> torch.Tensor:
        c = self.config
        n = rows.shape[0]
        x = rows[:, Spacepoint.column("x")]
        y = rows[:, Spacepoint.column("y")]
        z = rows[:, Spacepoint.column("z")]
        r = torch.hypot(x, y)
        dr = r[None, :] - r[:, None]
        window = (dr >= c.dr_min) & (dr <= c.dr_max)
        # window[i, j]: j may follow i, so the same mask yields both doublet lists
        doublets = torch.nonzero(window)
        b, m, t = _doublet_join(doublets, doublets, n)

        cot_bm = (z[m] - z[b]) / (r[m] - r[b])
        cot_mt = (z[t] - z[m]) / (r[t] - r[m])
        z_vertex = z[b] - r[b] * cot_bm
        delta = torch.abs(cot_bm - cot_mt)
        k = triplet_curvature_t(x[b], y[b], x[m], y[m], x[t], y[t])
        phi = tangent_phi_t(x[b], y[b], x[m], y[m], k)
        impact = impact_parameter_t(x[b], y[b], phi, k)
        keep = (
            (torch.abs(z_vertex) <= c.collision_region)
            & (delta <= c.max_cot_theta_diff)
            & (torch.abs(k) <= self.k_max)
            & (impact <= c.impact_max)
        )
        b, m, t = b[keep], m[keep], t[keep]
        order = torch.argsort((m * n + b) * n + t)
        seeds = torch.stack(
            [
                b[order].to(rows.dtype),
                m[order].to(rows.dtype),
                t[order].to(rows.dtype),
                -delta[keep][order],
                z_vertex[keep][order],
            ],
            dim=1,
        )
        return seeds

    def process(self, spacepoints: DeviceCollection) -> DeviceCollection:
        if spacepoints.size == 0:
            return self.pool.collection(Seed, 0)
        rows = self.stream.enqueue("seeding", self._seed, spacepoints.rows)
        return self.pool.adopt(Seed, rows, self.stream)
