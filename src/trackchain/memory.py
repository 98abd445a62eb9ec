"""Memory resources serving every buffer allocation of a run.

A run owns one primary device resource, an optional pinned-host resource for
staging transfers, and a caching wrapper that pools freed blocks by size class
so that per-event buffers do not hit the primary allocator again.

Allocation failures are fatal: ``AllocationError`` propagates to the run loop
without a retry. Reduce the batch size (cells per partition) to fit.
"""

import itertools
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

import torch

from .errors import AllocationError

logger = logging.getLogger(__name__)

_block_ids = itertools.count()


@dataclass
class MemoryBlock:
    """Raw byte storage handed out by a memory resource.

    Attributes:
        nbytes: Requested size in bytes.
        storage: ``uint8`` tensor backing the block. May be larger than
            ``nbytes`` when the block comes from a size-class pool.
        resource: Name of the resource that satisfied the request.
        block_id: Unique handle for bookkeeping.
    """

    nbytes: int
    storage: torch.Tensor
    resource: str
    block_id: int = field(default_factory=lambda: next(_block_ids))

    @property
    def capacity(self) -> int:
        return self.storage.numel()

    @property
    def device(self) -> torch.device:
        return self.storage.device

    def view(self, dtype: torch.dtype, shape: tuple[int, ...]) -> torch.Tensor:
        """Typed view over the first bytes of the block."""
        count = 1
        for dim in shape:
            count *= dim
        nbytes = count * torch.empty((), dtype=dtype).element_size()
        if nbytes > self.capacity:
            raise ValueError(
                f"view of {nbytes} bytes exceeds block capacity {self.capacity}"
            )
        return self.storage[:nbytes].view(dtype).view(shape)


@runtime_checkable
class MemoryResource(Protocol):
    """Allocation scope: ``allocate(nbytes)`` / ``deallocate(block)``."""

    name: str

    def allocate(self, nbytes: int) -> MemoryBlock: ...

    def deallocate(self, block: MemoryBlock) -> None: ...


def _empty_block(device: torch.device, resource: str) -> MemoryBlock:
    return MemoryBlock(
        nbytes=0,
        storage=torch.empty(0, dtype=torch.uint8, device=device),
        resource=resource,
    )


class DeviceMemoryResource:
    """Primary allocator for the compute device."""

    def __init__(self, device: str | torch.device = "cpu", name: str | None = None):
        self.device = torch.device(device)
        self.name = name or f"device[{self.device}]"
        self.allocation_count = 0
        self.allocated_bytes = 0

    def allocate(self, nbytes: int) -> MemoryBlock:
        if nbytes < 0:
            raise ValueError(f"negative allocation size: {nbytes}")
        if nbytes == 0:
            return _empty_block(self.device, self.name)
        try:
            storage = torch.empty(nbytes, dtype=torch.uint8, device=self.device)
        except RuntimeError as e:  # torch.cuda.OutOfMemoryError is a RuntimeError
            raise AllocationError(nbytes, self.name, str(e)) from e
        self.allocation_count += 1
        self.allocated_bytes += nbytes
        return MemoryBlock(nbytes=nbytes, storage=storage, resource=self.name)

    def deallocate(self, block: MemoryBlock) -> None:
        if block.nbytes:
            self.allocated_bytes -= block.capacity


class HostMemoryResource(DeviceMemoryResource):
    """Pageable host memory."""

    def __init__(self, name: str = "host"):
        super().__init__("cpu", name=name)


class PinnedHostMemoryResource:
    """Page-locked host memory for asynchronous transfers.

    Falls back to pageable memory when CUDA is not available, since pinning
    requires a CUDA context.
    """

    def __init__(self, name: str = "pinned_host"):
        self.name = name
        self.pinned = torch.cuda.is_available()
        self.allocation_count = 0
        if not self.pinned:
            logger.info("CUDA not available, pinned host memory falls back to pageable")

    def allocate(self, nbytes: int) -> MemoryBlock:
        if nbytes == 0:
            return _empty_block(torch.device("cpu"), self.name)
        try:
            storage = torch.empty(nbytes, dtype=torch.uint8, pin_memory=self.pinned)
        except RuntimeError as e:
            raise AllocationError(nbytes, self.name, str(e)) from e
        self.allocation_count += 1
        return MemoryBlock(nbytes=nbytes, storage=storage, resource=self.name)

    def deallocate(self, block: MemoryBlock) -> None:
        pass


def size_class(nbytes: int, min_page_size: int = 256) -> int:
    """Smallest power of two that is >= ``max(nbytes, min_page_size)``."""
    size = max(nbytes, min_page_size)
    return 1 << (size - 1).bit_length()


class CachingMemoryResource:
    """Caching wrapper pooling freed blocks by power-of-two size class.

    The pool grows monotonically within a run and never returns storage to
    the upstream resource. Not safe for concurrent use by two pipelines.

    Attributes:
        upstream: Resource that serves cache misses.
        upstream_allocations: Number of requests forwarded upstream.
        cache_hits: Number of requests served from the pool.
    """

    def __init__(self, upstream: MemoryResource, min_page_size: int = 256):
        self.upstream = upstream
        self.min_page_size = min_page_size
        self.name = f"caching[{upstream.name}]"
        self.upstream_allocations = 0
        self.cache_hits = 0
        self._free: dict[int, list[torch.Tensor]] = defaultdict(list)
        self._pooled_bytes = 0

    @property
    def pooled_bytes(self) -> int:
        """Total bytes obtained from upstream (in use or free)."""
        return self._pooled_bytes

    @property
    def free_blocks(self) -> int:
        return sum(len(blocks) for blocks in self._free.values())

    def allocate(self, nbytes: int) -> MemoryBlock:
        if nbytes == 0:
            return self.upstream.allocate(0)
        page = size_class(nbytes, self.min_page_size)
        free = self._free[page]
        if free:
            self.cache_hits += 1
            storage = free.pop()
        else:
            storage = self.upstream.allocate(page).storage
            self.upstream_allocations += 1
            self._pooled_bytes += page
            logger.debug("%s: new %d byte page (%d pooled)", self.name, page, self._pooled_bytes)
        return MemoryBlock(nbytes=nbytes, storage=storage, resource=self.name)

    def deallocate(self, block: MemoryBlock) -> None:
        if block.nbytes == 0:
            return
        self._free[block.capacity].append(block.storage)


@dataclass
class MemoryResources:
    """Memory resources of one pipeline instance.

    Attributes:
        main: Resource serving device buffers (caching wrapper when enabled).
        host: Resource for host staging buffers (pinned when available).
        primary: Underlying device allocator.
    """

    main: MemoryResource
    host: MemoryResource | None
    primary: DeviceMemoryResource

    @property
    def device(self) -> torch.device:
        return self.primary.device


def create_memory_resources(
    device: str | torch.device = "cpu",
    use_pinned_host: bool = True,
    use_caching: bool = True,
    min_page_size: int = 256,
) -> MemoryResources:
    """Create an independent set of memory resources for one pipeline.

    Args:
        device: Compute device for the primary resource.
        use_pinned_host: Stage host-to-device copies through pinned memory.
        use_caching: Wrap the primary resource in a ``CachingMemoryResource``.
        min_page_size: Smallest size class of the caching wrapper.

    Returns:
        MemoryResources owning fresh allocator state.
    """
    primary = DeviceMemoryResource(device)
    main = CachingMemoryResource(primary, min_page_size) if use_caching else primary
    host = PinnedHostMemoryResource() if use_pinned_host else None
    return MemoryResources(main=main, host=host, primary=primary)
