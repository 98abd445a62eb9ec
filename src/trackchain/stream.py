"""Ordered asynchronous execution queue for the device path.

On CUDA a ``Stream`` wraps ``torch.cuda.Stream``: kernels run inside
``torch.cuda.stream(...)`` and copies are issued with ``non_blocking=True``,
so the host returns as soon as the work is queued. On CPU there is no
asynchronous engine and operations execute eagerly in enqueue order.

Either way, operations on one stream complete in enqueue order. Nothing orders
two distinct streams unless ``wait_stream`` adds the dependency.
"""

import itertools
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable

import torch

logger = logging.getLogger(__name__)

DEFAULT_LOG_SIZE = 4096


@dataclass
class StreamOperation:
    """One logged stream operation.

    Attributes:
        sequence: Position in the stream's enqueue order.
        kind: ``"kernel"``, ``"copy"`` or ``"sync"``.
        label: Human-readable operation name.
        enqueued_at: ``time.perf_counter()`` when the host issued the operation.
        completed_at: Time the operation was known complete, or None while
            it may still be in flight.
    """

    sequence: int
    kind: str
    label: str
    enqueued_at: float
    completed_at: float | None = None


class Stream:
    """Ordered queue of device operations for one pipeline instance."""

    def __init__(self, device: str | torch.device = "cpu", log_size: int = DEFAULT_LOG_SIZE):
        self.device = torch.device(device)
        self._sequence = itertools.count()
        self._log: deque[StreamOperation] = deque(maxlen=log_size)
        self._pending: list[StreamOperation] = []
        if self.device.type == "cuda":
            self._cuda_stream = torch.cuda.Stream(device=self.device)
        else:
            self._cuda_stream = None

    @property
    def is_async(self) -> bool:
        return self._cuda_stream is not None

    @property
    def operations(self) -> list[StreamOperation]:
        """Logged operations, oldest first (bounded)."""
        return list(self._log)

    def _record(self, kind: str, label: str) -> StreamOperation:
        op = StreamOperation(
            sequence=next(self._sequence),
            kind=kind,
            label=label,
            enqueued_at=time.perf_counter(),
        )
        self._log.append(op)
        return op

    def _complete(self, op: StreamOperation) -> None:
        if self.is_async:
            self._pending.append(op)
        else:
            op.completed_at = time.perf_counter()

    def enqueue(self, label: str, fn: Callable[..., Any], *args, **kwargs) -> Any:
        """Schedule kernel work on this stream.

        Args:
            label: Operation name for the log.
            fn: Callable issuing the tensor operations.
            *args: Positional arguments for ``fn``.
            **kwargs: Keyword arguments for ``fn``.

        Returns:
            Whatever ``fn`` returns. On CUDA, tensors in the result must not be
            read on host before ``synchronize()``.
        """
        op = self._record("kernel", label)
        if self._cuda_stream is not None:
            with torch.cuda.stream(self._cuda_stream):
                result = fn(*args, **kwargs)
        else:
            result = fn(*args, **kwargs)
        self._complete(op)
        return result

    def copy(self, src: torch.Tensor, dst: torch.Tensor, label: str = "copy") -> torch.Tensor:
        """Enqueue ``dst.copy_(src)`` without blocking the host.

        Returns:
            ``dst``.
        """
        op = self._record("copy", label)
        if self._cuda_stream is not None:
            with torch.cuda.stream(self._cuda_stream):
                dst.copy_(src, non_blocking=True)
                # keep the source alive until the copy has been consumed
                if src.is_cuda:
                    src.record_stream(self._cuda_stream)
        else:
            dst.copy_(src)
        self._complete(op)
        return dst

    def wait_stream(self, other: "Stream") -> None:
        """Make future work on this stream wait for work queued on ``other``."""
        if self._cuda_stream is not None and other._cuda_stream is not None:
            self._cuda_stream.wait_stream(other._cuda_stream)
        elif other.is_async:
            other.synchronize()

    def synchronize(self) -> None:
        """Block until every operation enqueued on this stream has completed."""
        op = self._record("sync", "synchronize")
        if self._cuda_stream is not None:
            self._cuda_stream.synchronize()
        now = time.perf_counter()
        for pending in self._pending:
            pending.completed_at = now
        self._pending.clear()
        op.completed_at = now

    def __repr__(self) -> str:
        return f"Stream(device={self.device}, async={self.is_async})"


def create_stream(device: str | torch.device = "cpu", log_size: int = DEFAULT_LOG_SIZE) -> Stream:
    """Create a new stream. Never share one between pipeline instances."""
    stream = Stream(device, log_size=log_size)
    logger.debug("Created %r", stream)
    return stream
