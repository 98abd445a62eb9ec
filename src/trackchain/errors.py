"""Exception taxonomy for the dual-path pipeline.

Every error the orchestrator treats as fatal derives from ``TrackChainError``.
The run is the unit of failure: none of these are caught per event.
"""


class TrackChainError(Exception):
    """Base class for all TrackChain errors."""


class InputReadError(TrackChainError):
    """Event or geometry input is missing, unreadable, or malformed."""


class AllocationError(TrackChainError):
    """A memory resource could not satisfy an allocation request.

    Attributes:
        nbytes: Size of the failed request in bytes.
        resource: Name of the resource that failed.
    """

    def __init__(self, nbytes: int, resource: str, reason: str = ""):
        self.nbytes = nbytes
        self.resource = resource
        message = f"{resource}: failed to allocate {nbytes} bytes"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)


class TransferError(TrackChainError):
    """A host/device copy did not match the preallocated buffer shape."""


class NavigationBufferOverflowError(TrackChainError):
    """Track finding needed more navigation slots than were allocated."""

    def __init__(self, required: int, capacity: int):
        self.required = required
        self.capacity = capacity
        super().__init__(
            f"navigation buffer overflow: {required} candidate slots required, "
            f"{capacity} allocated"
        )


class PipelineStateError(TrackChainError):
    """The per-event state machine was driven through an illegal transition."""
