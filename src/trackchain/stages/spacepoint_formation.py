"""Measurement -> spacepoint conversion through the module geometry."""

import torch

from ..buffers import BufferPool, DeviceCollection
from ..edm import Measurement, Spacepoint
from ..geometry import Geometry, local_to_global_tensor
from ..stream import Stream


class HostSpacepointFormation:
    name = "spacepoint_formation"

    def __init__(self, geometry: Geometry):
        self.geometry = geometry

    def process(self, measurements: list[Measurement]) -> list[Spacepoint]:
        spacepoints = []
        for link, m in enumerate(measurements):
            x, y, z = self.geometry.local_to_global(m.module_link, m.local0, m.local1)
            spacepoints.append(Spacepoint(link, m.module_link, x, y, z, m.local0, m.local1))
        return spacepoints


class DeviceSpacepointFormation:
    name = "spacepoint_formation"

    def __init__(self, stream: Stream, pool: BufferPool, modules: torch.Tensor):
        self.stream = stream
        self.pool = pool
        self.modules = modules

    def process(self, measurements: DeviceCollection) -> DeviceCollection:
        if measurements.size == 0:
            return self.pool.collection(Spacepoint, 0)

        def form(rows: torch.Tensor) -> torch.Tensor:
            module_link = rows[:, Measurement.column("module_link")]
            loc0 = rows[:, Measurement.column("local0")]
            loc1 = rows[:, Measurement.column("local1")]
            xyz = local_to_global_tensor(self.modules, module_link, loc0, loc1)
            link = torch.arange(rows.shape[0], dtype=rows.dtype, device=rows.device)
            return torch.cat(
                [link[:, None], module_link[:, None], xyz, loc0[:, None], loc1[:, None]], dim=1
            )

        rows = self.stream.enqueue("spacepoint formation", form, measurements.rows)
        return self.pool.adopt(Spacepoint, rows, self.stream)
