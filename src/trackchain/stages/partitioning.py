"""Split cells into partitions for batched clusterization."""

import logging

import torch

from ..buffers import BufferPool, DeviceCollection
from ..edm import Cell, Partition
from ..stream import Stream

logger = logging.getLogger(__name__)


def pack_modules(run_lengths: list[int], max_cells: int) -> list[Partition]:
    """Greedily pack consecutive module runs into partitions.

    A partition never splits a module. A single module larger than
    ``max_cells`` gets a partition of its own.
    """
    partitions = []
    start = end = 0
    for n in run_lengths:
        if end > start and end - start + n > max_cells:
            partitions.append(Partition(start, end))
            start = end
        end += n
    if end > start:
        partitions.append(Partition(start, end))
    oversized = [p for p in partitions if p.size > max_cells]
    if oversized:
        logger.warning(
            "%d partition(s) exceed max_cells_per_partition=%d (largest module run: %d cells)",
            len(oversized),
            max_cells,
            max(p.size for p in oversized),
        )
    return partitions


class HostPartitioning:
    """Partition cells grouped by module."""

    name = "partitioning"

    def __init__(self, max_cells_per_partition: int):
        self.max_cells = max_cells_per_partition

    def process(self, cells: list[Cell]) -> list[Partition]:
        run_lengths = []
        previous = None
        for cell in cells:
            if cell.module_link != previous:
                run_lengths.append(0)
                previous = cell.module_link
            run_lengths[-1] += 1
        return pack_modules(run_lengths, self.max_cells)


class DevicePartitioning:
    """Partition device cells.

    Module run lengths are computed on the device. Packing is sequential, so
    the (small) run-length vector is synchronized back before packing.
    """

    name = "partitioning"

    def __init__(self, stream: Stream, pool: BufferPool, max_cells_per_partition: int):
        self.stream = stream
        self.pool = pool
        self.max_cells = max_cells_per_partition

    def process(self, cells: DeviceCollection) -> DeviceCollection:
        if cells.size == 0:
            return self.pool.collection(Partition, 0)

        def run_lengths(modules: torch.Tensor) -> torch.Tensor:
            _, counts = torch.unique_consecutive(modules, return_counts=True)
            return counts

        counts = self.stream.enqueue(
            "module run lengths", run_lengths, cells.column("module_link")
        )
        self.stream.synchronize()
        partitions = pack_modules(counts.tolist(), self.max_cells)
        rows = self.stream.enqueue(
            "partition table",
            torch.tensor,
            [p.to_row() for p in partitions],
            dtype=cells.rows.dtype,
            device=cells.device,
        )
        return self.pool.adopt(Partition, rows, self.stream)
