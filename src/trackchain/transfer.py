"""Host <-> device copy adapters for collections and jagged containers.

Sizes are computed on the host and device buffers are preallocated before the
copy is enqueued. H2D copies are non-blocking and staged through pinned host
memory when the pool has a host resource. D2H copies are blocking: they
synchronize the stream before records are materialized, which is the only
legal way to read device results on the host.
"""

import logging

import torch

from .buffers import BufferPool, DeviceCollection, DeviceContainer
from .edm import ROW_DTYPE, ContainerElement, Record, records_to_tensor, tensor_to_records
from .errors import TransferError
from .stream import Stream

logger = logging.getLogger(__name__)


def _stage_rows(pool: BufferPool, rows: torch.Tensor) -> torch.Tensor:
    """Copy host rows into a pinned staging block when one is available."""
    nbytes = rows.numel() * rows.element_size()
    block = pool.staging(nbytes)
    if block is None:
        return rows
    staged = block.view(rows.dtype, tuple(rows.shape))
    staged.copy_(rows)
    return staged


def _upload(pool: BufferPool, stream: Stream, rows: torch.Tensor, dst: torch.Tensor, label: str):
    if tuple(rows.shape) != tuple(dst.shape):
        raise TransferError(
            f"{label}: host shape {tuple(rows.shape)} does not match "
            f"device buffer shape {tuple(dst.shape)}"
        )
    if rows.numel() == 0:
        return
    stream.copy(_stage_rows(pool, rows), dst, label=label)


def _download(stream: Stream, src: torch.Tensor, label: str) -> torch.Tensor:
    host = torch.empty(tuple(src.shape), dtype=src.dtype, pin_memory=stream.is_async)
    if src.numel():
        stream.copy(src, host, label=label)
    stream.synchronize()
    return host


class CollectionH2D:
    """Upload a host record list into a new device collection."""

    def __init__(self, pool: BufferPool, stream: Stream):
        self.pool = pool
        self.stream = stream

    def __call__(self, records: list, record_type: type[Record]) -> DeviceCollection:
        collection = self.pool.collection(record_type, len(records))
        rows = records_to_tensor(records, record_type)
        _upload(self.pool, self.stream, rows, collection.rows, f"H2D {record_type.kind}")
        return collection


class CollectionD2H:
    """Download a device collection into host records (blocking)."""

    def __init__(self, stream: Stream):
        self.stream = stream

    def __call__(self, collection: DeviceCollection) -> list:
        if collection.rows.shape[0] != collection.size:
            raise TransferError(
                f"D2H {collection.record_type.kind}: buffer holds "
                f"{collection.rows.shape[0]} rows, expected {collection.size}"
            )
        host = _download(self.stream, collection.rows, f"D2H {collection.record_type.kind}")
        return tensor_to_records(host, collection.record_type)


class ContainerH2D:
    """Upload a jagged host container (header + item list per element)."""

    def __init__(self, pool: BufferPool, stream: Stream):
        self.pool = pool
        self.stream = stream

    def __call__(
        self,
        container: list[ContainerElement],
        header_type: type[Record],
        item_type: type[Record],
    ) -> DeviceContainer:
        item_sizes = [len(element.items) for element in container]
        buffer = self.pool.container(header_type, item_type, item_sizes)
        headers = records_to_tensor([e.header for e in container], header_type)
        items = records_to_tensor(
            [item for e in container for item in e.items], item_type
        )
        sizes = torch.tensor(item_sizes, dtype=torch.int64)
        kind = header_type.kind
        _upload(self.pool, self.stream, headers, buffer.headers, f"H2D {kind} headers")
        _upload(self.pool, self.stream, items, buffer.items, f"H2D {kind} items")
        _upload(self.pool, self.stream, sizes, buffer.sizes, f"H2D {kind} sizes")
        return buffer


class ContainerD2H:
    """Download a device container into ``ContainerElement``s (blocking)."""

    def __init__(self, stream: Stream):
        self.stream = stream

    def __call__(self, container: DeviceContainer) -> list[ContainerElement]:
        kind = container.header_type.kind
        if container.items.shape[0] != container.total_items:
            raise TransferError(
                f"D2H {kind}: item buffer holds {container.items.shape[0]} rows, "
                f"expected {container.total_items}"
            )
        headers = _download(self.stream, container.headers, f"D2H {kind} headers")
        items = _download(self.stream, container.items, f"D2H {kind} items")
        header_records = tensor_to_records(headers, container.header_type)
        item_records = tensor_to_records(items, container.item_type)
        result = []
        for header, start, n in zip(header_records, container.offsets, container.item_sizes):
            result.append(ContainerElement(header=header, items=item_records[start : start + n]))
        return result


def upload_rows(pool: BufferPool, stream: Stream, rows: torch.Tensor, name: str) -> torch.Tensor:
    """Upload an arbitrary host tensor (e.g. the geometry table) into the pool."""
    rows = rows.to(ROW_DTYPE) if rows.dtype != ROW_DTYPE else rows
    dst = pool.rows(name, rows.shape[0], rows.shape[1])
    _upload(pool, stream, rows, dst, f"H2D {name}")
    return dst
