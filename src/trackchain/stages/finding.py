"""Road-based track finding.

Each parameter set defines a helix through its reference point. A measurement
is compatible when it lies ahead of the reference point (same transverse
hemisphere as the track direction) and inside the (``road_xy``, ``road_z``)
road. For every layer the compatible measurement with the smallest normalized
residual is kept (ties go to the lower measurement index). Candidates with
fewer than ``min_measurements`` are dropped; items are ordered by layer.

The device finder first writes every accepted (parameter index, measurement
index) pair into the navigation buffer, then assembles candidates from it.
What happens when the buffer is too small is set by ``overflow_policy``.
"""

import logging
import math

import torch

from ..buffers import BufferPool, DeviceCollection, DeviceContainer
from ..config import FindingConfig
from ..edm import TRACK_CANDIDATES, BoundTrackParameters, ContainerElement, Measurement
from ..errors import NavigationBufferOverflowError
from ..geometry import Geometry, local_to_global_tensor, module_layers_tensor
from ..stream import Stream
from .helix import arc_and_distance, arc_and_distance_t, qop_to_curvature, qop_to_curvature_t

logger = logging.getLogger(__name__)

NAVIGATION_WIDTH = 2


class HostFinding:
    name = "finding"

    def __init__(self, geometry: Geometry, config: FindingConfig, bfield_z: float):
        self.geometry = geometry
        self.config = config
        self.bfield_z = bfield_z

    def process(
        self, measurements: list[Measurement], params: list[BoundTrackParameters]
    ) -> list[ContainerElement]:
        c = self.config
        geometry = self.geometry
        positions = [
            geometry.local_to_global(m.module_link, m.local0, m.local1) for m in measurements
        ]
        layers = [geometry[m.module_link].layer for m in measurements]
        candidates = []
        for p in params:
            bx, by, bz = geometry.local_to_global(p.surface_link, p.loc0, p.loc1)
            k = qop_to_curvature(p.qop, p.theta, self.bfield_z)
            cot_theta = math.cos(p.theta) / math.sin(p.theta)
            cos_phi, sin_phi = math.cos(p.phi), math.sin(p.phi)
            best: dict[int, tuple[float, int]] = {}
            for j, (px, py, pz) in enumerate(positions):
                if px * cos_phi + py * sin_phi <= 0.0:
                    continue
                s, d = arc_and_distance(bx, by, p.phi, k, px, py)
                dz = pz - (bz + s * cot_theta)
                if abs(d) > c.road_xy or abs(dz) > c.road_z:
                    continue
                score = (d / c.road_xy) ** 2 + (dz / c.road_z) ** 2
                if layers[j] not in best or score < best[layers[j]][0]:
                    best[layers[j]] = (score, j)
            if len(best) >= c.min_measurements:
                items = [measurements[best[layer][1]] for layer in sorted(best)]
                candidates.append(ContainerElement(header=p, items=items))
        logger.debug("Host finding: %d params -> %d candidates", len(params), len(candidates))
        return candidates


class DeviceFinding:
    """Track finding on the device with an orchestrator-sized navigation buffer."""

    name = "finding"

    def __init__(
        self,
        stream: Stream,
        pool: BufferPool,
        modules: torch.Tensor,
        layer_ids: list[int],
        config: FindingConfig,
        bfield_z: float,
    ):
        self.stream = stream
        self.pool = pool
        self.modules = modules
        self.layer_ids = list(layer_ids)
        self.config = config
        self.bfield_z = bfield_z

    def _best_per_layer(self, meas: torch.Tensor, params: torch.Tensor):
        c = self.config
        col = Measurement.column
        pos = local_to_global_tensor(
            self.modules, meas[:, col("module_link")], meas[:, col("local0")], meas[:, col("local1")]
        )
        layers = module_layers_tensor(self.modules, meas[:, col("module_link")])
        pcol = BoundTrackParameters.column
        ref = local_to_global_tensor(
            self.modules, params[:, pcol("surface_link")], params[:, pcol("loc0")], params[:, pcol("loc1")]
        )
        phi = params[:, pcol("phi")][:, None]
        theta = params[:, pcol("theta")]
        k = qop_to_curvature_t(params[:, pcol("qop")], theta, self.bfield_z)[:, None]
        cot_theta = (torch.cos(theta) / torch.sin(theta))[:, None]

        px, py, pz = pos[None, :, 0], pos[None, :, 1], pos[None, :, 2]
        ahead = px * torch.cos(phi) + py * torch.sin(phi) > 0.0
        s, d = arc_and_distance_t(ref[:, 0:1], ref[:, 1:2], phi, k, px, py)
        dz = pz - (ref[:, 2:3] + s * cot_theta)
        accept = ahead & (torch.abs(d) <= c.road_xy) & (torch.abs(dz) <= c.road_z)
        score = (d / c.road_xy) ** 2 + (dz / c.road_z) ** 2
        score = torch.where(accept, score, torch.full_like(score, math.inf))

        best_idx, valid = [], []
        for layer in self.layer_ids:
            masked = torch.where(layers[None, :] == layer, score, torch.full_like(score, math.inf))
            value, index = masked.min(dim=1)
            best_idx.append(index)
            valid.append(torch.isfinite(value))
        return torch.stack(best_idx, dim=1), torch.stack(valid, dim=1)

    def _fill_navigation(self, navigation: torch.Tensor, pairs: torch.Tensor) -> torch.Tensor:
        required, capacity = pairs.shape[0], navigation.shape[0]
        if required > capacity:
            policy = self.config.overflow_policy
            if policy == "raise":
                raise NavigationBufferOverflowError(required, capacity)
            if policy == "resize":
                logger.warning(
                    "Navigation buffer overflow: %d pairs, capacity %d; resizing",
                    required,
                    capacity,
                )
                navigation = self.pool.rows("navigation", required, NAVIGATION_WIDTH)
            else:
                logger.warning(
                    "Navigation buffer overflow: %d pairs, capacity %d; truncating",
                    required,
                    capacity,
                )
                pairs = pairs[:capacity]
        used = navigation[: pairs.shape[0]]
        if pairs.shape[0]:
            self.stream.copy(pairs, used, label="navigation pairs")
        return used

    def process(
        self,
        measurements: DeviceCollection,
        params: DeviceCollection,
        navigation: torch.Tensor,
    ) -> DeviceContainer:
        header_type, item_type = TRACK_CANDIDATES
        if params.size == 0 or measurements.size == 0:
            return self.pool.container(header_type, item_type, [])

        best_idx, valid = self.stream.enqueue(
            "track finding", self._best_per_layer, measurements.rows, params.rows
        )

        def pair_list(best_idx: torch.Tensor, valid: torch.Tensor) -> torch.Tensor:
            seed, layer = torch.nonzero(valid, as_tuple=True)
            return torch.stack([seed, best_idx[seed, layer]], dim=1)

        pairs = self.stream.enqueue("navigation pairs", pair_list, best_idx, valid)
        # the pair count sizes the buffer, so it must be known on the host
        self.stream.synchronize()
        used = self._fill_navigation(navigation, pairs)

        def candidate_counts(used: torch.Tensor) -> torch.Tensor:
            return torch.bincount(used[:, 0].long(), minlength=params.size)

        counts = self.stream.enqueue("candidate sizes", candidate_counts, used)
        self.stream.synchronize()
        counts_host = counts.cpu()
        kept = [i for i, n in enumerate(counts_host.tolist()) if n >= self.config.min_measurements]
        item_sizes = [int(counts_host[i]) for i in kept]
        container = self.pool.container(header_type, item_type, item_sizes)
        if not kept:
            return container

        def assemble(used, meas_rows, param_rows):
            kept_t = torch.tensor(kept, device=param_rows.device)
            keep_pair = torch.isin(used[:, 0].long(), kept_t)
            items = meas_rows.index_select(0, used[keep_pair, 1].long())
            headers = param_rows.index_select(0, kept_t)
            sizes = torch.tensor(item_sizes, dtype=torch.int64, device=param_rows.device)
            return headers, items, sizes

        headers, items, sizes = self.stream.enqueue(
            "assemble candidates", assemble, used, measurements.rows, params.rows
        )
        self.stream.copy(headers, container.headers, label="candidate headers")
        self.stream.copy(items, container.items, label="candidate items")
        self.stream.copy(sizes, container.sizes, label="candidate sizes")
        return container
