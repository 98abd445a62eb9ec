"""Connected-component clustering of cells into measurements.

Cells are 8-connected when they sit on the same module and differ by at most
one channel in each direction. A cluster becomes one measurement at the
activation-weighted mean position with variance ``pitch**2 / 12``. Within a
partition, clusters are ordered by their first cell and measurement ids count
up across partitions.
"""

import logging

import torch

from ..buffers import BufferPool, DeviceCollection
from ..edm import Cell, Measurement, Module, Partition
from ..geometry import Geometry
from ..stream import Stream

logger = logging.getLogger(__name__)

_MIN_X = Module.column("min_corner_x")
_MIN_Y = Module.column("min_corner_y")
_PITCH_X = Module.column("pitch_x")
_PITCH_Y = Module.column("pitch_y")


def _adjacent(a: Cell, b: Cell) -> bool:
    return (
        a.module_link == b.module_link
        and abs(a.channel0 - b.channel0) <= 1
        and abs(a.channel1 - b.channel1) <= 1
    )


class HostClusterization:
    name = "clusterization"

    def __init__(self, geometry: Geometry):
        self.geometry = geometry

    def _clusters(self, cells: list[Cell]) -> list[list[int]]:
        parent = list(range(len(cells)))

        def find(i: int) -> int:
            while parent[i] != i:
                parent[i] = parent[parent[i]]
                i = parent[i]
            return i

        for i in range(len(cells)):
            for j in range(i + 1, len(cells)):
                if _adjacent(cells[i], cells[j]):
                    ri, rj = find(i), find(j)
                    if ri != rj:
                        parent[max(ri, rj)] = min(ri, rj)

        groups: dict[int, list[int]] = {}
        for i in range(len(cells)):
            groups.setdefault(find(i), []).append(i)
        return [groups[root] for root in sorted(groups)]

    def process(self, cells: list[Cell], partitions: list[Partition]) -> list[Measurement]:
        measurements = []
        for partition in partitions:
            chunk = cells[partition.start : partition.end]
            for members in self._clusters(chunk):
                module_link = chunk[members[0]].module_link
                module = self.geometry[module_link]
                total = sum(chunk[i].activation for i in members)
                mean0 = sum(chunk[i].activation * chunk[i].channel0 for i in members) / total
                mean1 = sum(chunk[i].activation * chunk[i].channel1 for i in members) / total
                measurements.append(
                    Measurement(
                        measurement_id=len(measurements),
                        module_link=module_link,
                        local0=module.min_corner_x + (mean0 + 0.5) * module.pitch_x,
                        local1=module.min_corner_y + (mean1 + 0.5) * module.pitch_y,
                        var0=module.pitch_x**2 / 12.0,
                        var1=module.pitch_y**2 / 12.0,
                    )
                )
        return measurements


def _label_partition(cells: torch.Tensor) -> torch.Tensor:
    """Min-label propagation over the p x p adjacency of one partition."""
    module = cells[:, Cell.column("module_link")]
    ch0 = cells[:, Cell.column("channel0")]
    ch1 = cells[:, Cell.column("channel1")]
    adjacency = (
        (module[:, None] == module[None, :])
        & ((ch0[:, None] - ch0[None, :]).abs() <= 1)
        & ((ch1[:, None] - ch1[None, :]).abs() <= 1)
    )
    n = cells.shape[0]
    labels = torch.arange(n, device=cells.device)
    big = torch.full((n, n), n, dtype=labels.dtype, device=cells.device)
    while True:
        updated = torch.where(adjacency, labels[None, :].expand(n, n), big).amin(dim=1)
        updated = torch.minimum(updated, labels)
        # pointer jumping speeds up long chains
        updated = updated[updated]
        if torch.equal(updated, labels):
            return labels
        labels = updated


def _cluster_measurements(
    cells: torch.Tensor, labels: torch.Tensor, modules: torch.Tensor
) -> torch.Tensor:
    roots, inverse = torch.unique(labels, sorted=True, return_inverse=True)
    n_clusters = roots.shape[0]
    activation = cells[:, Cell.column("activation")]
    weighted0 = activation * cells[:, Cell.column("channel0")]
    weighted1 = activation * cells[:, Cell.column("channel1")]
    sums = torch.zeros((n_clusters, 3), dtype=cells.dtype, device=cells.device)
    sums.index_add_(0, inverse, torch.stack([activation, weighted0, weighted1], dim=1))
    module_link = cells[roots, Cell.column("module_link")]
    geo = modules.index_select(0, module_link.long())
    mean0 = sums[:, 1] / sums[:, 0]
    mean1 = sums[:, 2] / sums[:, 0]
    return torch.stack(
        [
            torch.zeros_like(mean0),
            module_link,
            geo[:, _MIN_X] + (mean0 + 0.5) * geo[:, _PITCH_X],
            geo[:, _MIN_Y] + (mean1 + 0.5) * geo[:, _PITCH_Y],
            geo[:, _PITCH_X] ** 2 / 12.0,
            geo[:, _PITCH_Y] ** 2 / 12.0,
        ],
        dim=1,
    )


class DeviceClusterization:
    """Clusterize one partition at a time on the device stream."""

    name = "clusterization"

    def __init__(self, stream: Stream, pool: BufferPool, modules: torch.Tensor):
        self.stream = stream
        self.pool = pool
        self.modules = modules

    def process(self, cells: DeviceCollection, partitions: DeviceCollection) -> DeviceCollection:
        width = Measurement.width()
        if cells.size == 0 or partitions.size == 0:
            return self.pool.collection(Measurement, 0)

        # partition bounds drive the launch loop, so they are read back first
        bounds = self.stream.enqueue(
            "partition bounds", lambda rows: rows.long().cpu(), partitions.rows
        )
        self.stream.synchronize()

        def clusterize(rows: torch.Tensor) -> torch.Tensor:
            chunks = []
            for start, end in bounds.tolist():
                part = rows[start:end]
                labels = _label_partition(part)
                chunks.append(_cluster_measurements(part, labels, self.modules))
            out = torch.cat(chunks) if chunks else rows.new_empty((0, width))
            out[:, Measurement.column("measurement_id")] = torch.arange(
                out.shape[0], dtype=out.dtype, device=out.device
            )
            return out

        rows = self.stream.enqueue("clusterization", clusterize, cells.rows)
        return self.pool.adopt(Measurement, rows, self.stream)
