"""Protocol interfaces for stage algorithms."""

from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Stage(Protocol):
    """One step of the reconstruction chain.

    Host variants take and return host collections (lists of records or of
    ``ContainerElement``). Device variants take and return device buffers and
    are bound to a stream and buffer pool at construction. A stage keeps no
    state between calls beyond its construction-time configuration.
    """

    name: str

    def process(self, *inputs: Any) -> Any:
        """Produce this stage's output collection for one event."""
        ...
