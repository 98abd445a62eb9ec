"""Track parameter estimation from seeds.

Parameters are bound to the bottom spacepoint's module. ``phi`` is the
direction of the seed circle at the bottom spacepoint, ``theta`` comes from
the bottom-top chord in (r, z), and ``qop`` from the circle curvature; a
straight triplet gives ``qop = 0``.
"""

import math

import torch

from ..buffers import BufferPool, DeviceCollection
from ..edm import BoundTrackParameters, Seed, Spacepoint
from ..stream import Stream
from .helix import (
    curvature_to_qop,
    curvature_to_qop_t,
    tangent_phi,
    tangent_phi_t,
    triplet_curvature,
    triplet_curvature_t,
)


class HostParamsEstimation:
    name = "params_estimation"

    def __init__(self, bfield_z: float):
        self.bfield_z = bfield_z

    def process(self, spacepoints: list[Spacepoint], seeds: list[Seed]) -> list[BoundTrackParameters]:
        params = []
        for seed in seeds:
            spB = spacepoints[seed.spB_link]
            spM = spacepoints[seed.spM_link]
            spT = spacepoints[seed.spT_link]
            k = triplet_curvature(spB.x, spB.y, spM.x, spM.y, spT.x, spT.y)
            theta = math.atan2(spT.radius - spB.radius, spT.z - spB.z)
            params.append(
                BoundTrackParameters(
                    surface_link=spB.module_link,
                    loc0=spB.local0,
                    loc1=spB.local1,
                    phi=tangent_phi(spB.x, spB.y, spM.x, spM.y, k),
                    theta=theta,
                    qop=curvature_to_qop(k, theta, self.bfield_z),
                )
            )
        return params


class DeviceParamsEstimation:
    name = "params_estimation"

    def __init__(self, stream: Stream, pool: BufferPool, bfield_z: float):
        self.stream = stream
        self.pool = pool
        self.bfield_z = bfield_z

    def _estimate(self, sps: torch.Tensor, seeds: torch.Tensor) -> torch.Tensor:
        def point(link: str) -> torch.Tensor:
            return sps.index_select(0, seeds[:, Seed.column(link)].long())

        b, m, t = point("spB_link"), point("spM_link"), point("spT_link")
        x, y, z = (Spacepoint.column(name) for name in ("x", "y", "z"))
        k = triplet_curvature_t(b[:, x], b[:, y], m[:, x], m[:, y], t[:, x], t[:, y])
        r_b = torch.hypot(b[:, x], b[:, y])
        r_t = torch.hypot(t[:, x], t[:, y])
        theta = torch.atan2(r_t - r_b, t[:, z] - b[:, z])
        return torch.stack(
            [
                b[:, Spacepoint.column("module_link")],
                b[:, Spacepoint.column("local0")],
                b[:, Spacepoint.column("local1")],
                tangent_phi_t(b[:, x], b[:, y], m[:, x], m[:, y], k),
                theta,
                curvature_to_qop_t(k, theta, self.bfield_z),
                torch.zeros_like(theta),
            ],
            dim=1,
        )

    def process(self, spacepoints: DeviceCollection, seeds: DeviceCollection) -> DeviceCollection:
        if seeds.size == 0:
            return self.pool.collection(BoundTrackParameters, 0)
        rows = self.stream.enqueue("params estimation", self._estimate, spacepoints.rows, seeds.rows)
        return self.pool.adopt(BoundTrackParameters, rows, self.stream)
