"""Tests for memory resources and the caching allocator."""

import pytest
import torch

from trackchain.errors import AllocationError
from trackchain.memory import (
    CachingMemoryResource,
    DeviceMemoryResource,
    HostMemoryResource,
    MemoryResource,
    PinnedHostMemoryResource,
    create_memory_resources,
    size_class,
)


class TestSizeClass:
    """Tests for power-of-two size classes."""

    def test_rounds_up_to_power_of_two(self):
        """Sizes round up to the next power of two."""
        assert size_class(300) == 512
        assert size_class(512) == 512
        assert size_class(513) == 1024

    def test_min_page_size(self):
        """Small requests use the minimum page size."""
        assert size_class(1) == 256
        assert size_class(1, min_page_size=64) == 64


class TestDeviceMemoryResource:
    """Tests for the primary allocator."""

    def test_allocate_counts(self, device):
        """Each allocation is counted and sized."""
        resource = DeviceMemoryResource(device)
        block = resource.allocate(100)
        assert block.nbytes == 100
        assert block.capacity == 100
        assert block.device.type == device.type
        assert resource.allocation_count == 1
        assert resource.allocated_bytes == 100

    def test_zero_bytes(self):
        """Zero-byte requests never reach the allocator."""
        resource = DeviceMemoryResource("cpu")
        block = resource.allocate(0)
        assert block.capacity == 0
        assert resource.allocation_count == 0

    def test_negative_size_rejected(self):
        """Negative sizes are a programming error."""
        with pytest.raises(ValueError, match="negative"):
            DeviceMemoryResource("cpu").allocate(-1)

    def test_failure_raises_allocation_error(self, monkeypatch):
        """Allocator failures surface as AllocationError."""
        resource = DeviceMemoryResource("cpu")

        def fail(*args, **kwargs):
            raise RuntimeError("out of memory")

        monkeypatch.setattr(torch, "empty", fail)
        with pytest.raises(AllocationError) as exc_info:
            resource.allocate(1024)
        assert exc_info.value.nbytes == 1024
        assert exc_info.value.resource == resource.name

    def test_view(self):
        """Blocks expose typed views over their first bytes."""
        block = DeviceMemoryResource("cpu").allocate(64)
        view = block.view(torch.float64, (2, 3))
        assert view.shape == (2, 3)
        with pytest.raises(ValueError, match="exceeds block capacity"):
            block.view(torch.float64, (3, 3))

    def test_protocol(self):
        """Every resource satisfies the MemoryResource protocol."""
        primary = DeviceMemoryResource("cpu")
        assert isinstance(primary, MemoryResource)
        assert isinstance(HostMemoryResource(), MemoryResource)
        assert isinstance(PinnedHostMemoryResource(), MemoryResource)
        assert isinstance(CachingMemoryResource(primary), MemoryResource)


class TestCachingMemoryResource:
    """Tests for the size-class pool."""

    def test_same_size_reuses_block(self, device):
        """N same-size allocate/free cycles hit upstream once."""
        primary = DeviceMemoryResource(device)
        caching = CachingMemoryResource(primary)
        n = 10
        for _ in range(n):
            block = caching.allocate(1000)
            caching.deallocate(block)
        assert primary.allocation_count == 1
        assert caching.upstream_allocations == 1
        assert caching.cache_hits == n - 1

    def test_same_class_shares_page(self):
        """Requests in the same size class share a freed page."""
        primary = DeviceMemoryResource("cpu")
        caching = CachingMemoryResource(primary)
        caching.deallocate(caching.allocate(600))
        block = caching.allocate(1000)
        assert block.capacity == 1024
        assert block.nbytes == 1000
        assert caching.cache_hits == 1

    def test_live_blocks_are_distinct(self):
        """Blocks in use are never handed out twice."""
        caching = CachingMemoryResource(DeviceMemoryResource("cpu"))
        a = caching.allocate(100)
        b = caching.allocate(100)
        assert a.storage.data_ptr() != b.storage.data_ptr()
        assert caching.upstream_allocations == 2

    def test_pool_grows_monotonically(self):
        """Freed pages stay pooled instead of returning upstream."""
        caching = CachingMemoryResource(DeviceMemoryResource("cpu"))
        blocks = [caching.allocate(2000) for _ in range(3)]
        for block in blocks:
            caching.deallocate(block)
        assert caching.pooled_bytes == 3 * 2048
        assert caching.free_blocks == 3

    def test_upstream_failure_propagates(self):
        """A failed upstream allocation is not retried or swallowed."""

        class FailingResource:
            name = "failing"

            def allocate(self, nbytes):
                raise AllocationError(nbytes, self.name)

            def deallocate(self, block):
                pass

        caching = CachingMemoryResource(FailingResource())
        with pytest.raises(AllocationError, match="failing"):
            caching.allocate(10)


class TestCreateMemoryResources:
    """Tests for per-pipeline resource sets."""

    def test_defaults(self):
        """Caching and pinned staging are on by default."""
        resources = create_memory_resources("cpu")
        assert isinstance(resources.main, CachingMemoryResource)
        assert isinstance(resources.host, PinnedHostMemoryResource)
        assert resources.device == torch.device("cpu")

    def test_without_caching(self):
        """Without caching the primary resource serves directly."""
        resources = create_memory_resources("cpu", use_pinned_host=False, use_caching=False)
        assert resources.main is resources.primary
        assert resources.host is None

    def test_min_page_size(self):
        """The minimum page size reaches the caching wrapper."""
        resources = create_memory_resources("cpu", min_page_size=1024)
        assert resources.main.min_page_size == 1024

    def test_instances_are_independent(self):
        """Two resource sets never share allocator state."""
        a = create_memory_resources("cpu")
        b = create_memory_resources("cpu")
        a.main.deallocate(a.main.allocate(100))
        assert a.main.upstream_allocations == 1
        assert b.main.upstream_allocations == 0
        assert a.primary is not b.primary
