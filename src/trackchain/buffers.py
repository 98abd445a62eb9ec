"""Device buffers and the per-event buffer pool.

A device buffer is an opaque handle over raw storage served by the run's
memory resources. Its element count is fixed at allocation and it cannot be
iterated on the host: copy it back with the D2H adapters in ``transfer``.
"""

import logging
from dataclasses import dataclass

import torch

from .edm import ROW_DTYPE, Record
from .memory import MemoryBlock, MemoryResources, size_class

logger = logging.getLogger(__name__)

_ROW_BYTES = torch.empty((), dtype=ROW_DTYPE).element_size()


@dataclass
class DeviceCollection:
    """Flat device collection of ``size`` records of one type.

    Attributes:
        record_type: Record class defining the column layout.
        size: Number of records (fixed at allocation).
        rows: ``(size, width)`` float64 tensor over the leased block.
    """

    record_type: type[Record]
    size: int
    rows: torch.Tensor

    def __len__(self) -> int:
        return self.size

    def __iter__(self):
        raise TypeError(
            f"device collection of {self.record_type.__name__} is not host readable; "
            "copy it back with CollectionD2H first"
        )

    @property
    def device(self) -> torch.device:
        return self.rows.device

    def column(self, name: str) -> torch.Tensor:
        return self.rows[:, self.record_type.column(name)]


@dataclass
class DeviceContainer:
    """Jagged device container: one header per element plus a flat item array.

    Item counts are known on the host before allocation (``item_sizes``) and
    mirrored on the device in ``sizes``.

    Attributes:
        header_type: Record class of the headers.
        item_type: Record class of the items.
        headers: ``(n, header width)`` tensor.
        items: ``(sum(item_sizes), item width)`` tensor, element-major.
        item_sizes: Host copy of the per-element item counts.
        sizes: Device copy of the per-element item counts (int64).
    """

    header_type: type[Record]
    item_type: type[Record]
    headers: torch.Tensor
    items: torch.Tensor
    item_sizes: list[int]
    sizes: torch.Tensor

    def __len__(self) -> int:
        return len(self.item_sizes)

    def __iter__(self):
        raise TypeError(
            f"device container of {self.header_type.__name__} is not host readable; "
            "copy it back with ContainerD2H first"
        )

    @property
    def total_items(self) -> int:
        return sum(self.item_sizes)

    @property
    def offsets(self) -> list[int]:
        """Start index of each element's items in ``items``."""
        offsets, start = [], 0
        for n in self.item_sizes:
            offsets.append(start)
            start += n
        return offsets


@dataclass
class _Slot:
    key: tuple[str, int]
    block: MemoryBlock
    leased: bool = True


@dataclass
class PoolStats:
    leases: int = 0
    leased_bytes: int = 0


class BufferPool:
    """Per-event arena of leased buffers.

    Slots are indexed by (record type, capacity class). Raw storage comes from
    ``resources.main`` and goes back to it in ``release_all()``, which the
    orchestrator calls at the end of every event. Nothing leased from the pool
    may be used after that call.

    Args:
        resources: Memory resources of the owning pipeline instance.
    """

    def __init__(self, resources: MemoryResources):
        self.resources = resources
        self.device = resources.device
        self._slots: list[_Slot] = []
        self._index: dict[tuple[str, int], list[int]] = {}
        self._staging: list[MemoryBlock] = []
        self.stats = PoolStats()

    def _lease(self, name: str, nbytes: int) -> MemoryBlock:
        key = (name, size_class(nbytes) if nbytes else 0)
        block = self.resources.main.allocate(nbytes)
        self._index.setdefault(key, []).append(len(self._slots))
        self._slots.append(_Slot(key=key, block=block))
        self.stats.leases += 1
        self.stats.leased_bytes += nbytes
        return block

    def rows(self, name: str, n: int, width: int, dtype: torch.dtype = ROW_DTYPE) -> torch.Tensor:
        """Lease an uninitialized ``(n, width)`` tensor."""
        element = torch.empty((), dtype=dtype).element_size()
        block = self._lease(name, n * width * element)
        return block.view(dtype, (n, width))

    def collection(self, record_type: type[Record], size: int) -> DeviceCollection:
        """Lease an uninitialized device collection of ``size`` records."""
        rows = self.rows(record_type.__name__, size, record_type.width())
        return DeviceCollection(record_type=record_type, size=size, rows=rows)

    def container(
        self,
        header_type: type[Record],
        item_type: type[Record],
        item_sizes: list[int],
    ) -> DeviceContainer:
        """Lease an uninitialized jagged container with known item counts."""
        n = len(item_sizes)
        headers = self.rows(header_type.__name__, n, header_type.width())
        items = self.rows(item_type.__name__, sum(item_sizes), item_type.width())
        sizes = self.rows(f"{header_type.__name__}.sizes", n, 1, dtype=torch.int64).view(n)
        return DeviceContainer(
            header_type=header_type,
            item_type=item_type,
            headers=headers,
            items=items,
            item_sizes=list(item_sizes),
            sizes=sizes,
        )

    def adopt(self, record_type: type[Record], rows: torch.Tensor, stream) -> DeviceCollection:
        """Move stage-computed rows into a pool-owned collection.

        The copy is enqueued on ``stream`` so it stays ordered behind the
        compute that produced ``rows``.
        """
        collection = self.collection(record_type, rows.shape[0])
        if collection.size:
            stream.copy(rows, collection.rows, label=f"adopt {record_type.kind}")
        return collection

    def staging(self, nbytes: int) -> MemoryBlock | None:
        """Host staging block for an H2D copy, or None without a host resource."""
        if self.resources.host is None:
            return None
        block = self.resources.host.allocate(nbytes)
        self._staging.append(block)
        return block

    def slots_for(self, record_type: type[Record]) -> int:
        """Number of slots ever leased for one record type in this event."""
        name = record_type.__name__
        return sum(len(v) for k, v in self._index.items() if k[0] == name)

    @property
    def leased(self) -> int:
        return sum(1 for slot in self._slots if slot.leased)

    def release_all(self) -> None:
        """Return every leased block to its resource and reset the index."""
        for slot in self._slots:
            if slot.leased:
                self.resources.main.deallocate(slot.block)
                slot.leased = False
        host = self.resources.host
        for block in self._staging:
            host.deallocate(block)
        logger.debug(
            "Released %d buffer slots (%d bytes leased)",
            len(self._slots),
            self.stats.leased_bytes,
        )
        self._slots.clear()
        self._index.clear()
        self._staging.clear()
        self.stats = PoolStats()
