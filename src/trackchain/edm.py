"""Event data model: fixed-layout records shared by the host and device paths.

Every record is a dataclass whose fields are all ``int`` or ``float``. On the
host a collection is a plain ``list`` of records; on the device the same
collection is a ``float64`` tensor with one row per record, columns in field
declaration order. Integer fields survive the round trip exactly (they are
well below 2**53).
"""

import math
from dataclasses import astuple, dataclass, field, fields
from functools import lru_cache
from typing import ClassVar, TypeVar

import torch

ROW_DTYPE = torch.float64

R = TypeVar("R", bound="Record")


class Record:
    """Mixin giving a dataclass a fixed numeric row layout."""

    kind: ClassVar[str] = "records"

    @classmethod
    def layout(cls) -> tuple[str, ...]:
        """Field names in row order."""
        return tuple(f.name for f in fields(cls))

    @classmethod
    def width(cls) -> int:
        """Number of columns in the row representation."""
        return len(fields(cls))

    @classmethod
    def column(cls, name: str) -> int:
        """Column index of a field.

        Raises:
            KeyError: If the record has no such field.
        """
        try:
            return cls.layout().index(name)
        except ValueError:
            raise KeyError(f"{cls.__name__} has no field {name!r}") from None

    def to_row(self) -> tuple[float, ...]:
        return tuple(float(v) for v in astuple(self))

    @classmethod
    def from_row(cls: type[R], row) -> R:
        int_mask = _int_fields(cls)
        return cls(
            *(int(v) if is_int else float(v) for v, is_int in zip(row, int_mask))
        )


@lru_cache(maxsize=None)
def _int_fields(record_type: type) -> tuple[bool, ...]:
    return tuple(f.type is int or f.type == "int" for f in fields(record_type))


@dataclass
class Cell(Record):
    """One activated readout channel of a pixel module."""

    kind: ClassVar[str] = "cells"

    module_link: int
    channel0: int
    channel1: int
    activation: float
    time: float = 0.0


@dataclass
class Module(Record):
    """Barrel detector module (surface) description.

    Local coordinates: ``loc0`` is the arc length along the layer circle
    measured from ``phi_center``; ``loc1`` is ``z - z_center``.
    """

    kind: ClassVar[str] = "modules"

    surface_id: int
    layer: int
    radius: float
    phi_center: float
    z_center: float
    min_corner_x: float
    min_corner_y: float
    pitch_x: float
    pitch_y: float


@dataclass
class Partition(Record):
    """Half-open range ``[start, end)`` of cell indices processed together."""

    kind: ClassVar[str] = "partitions"

    start: int
    end: int

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass
class Measurement(Record):
    kind: ClassVar[str] = "measurements"

    measurement_id: int
    module_link: int
    local0: float
    local1: float
    var0: float
    var1: float


@dataclass
class Spacepoint(Record):
    kind: ClassVar[str] = "spacepoints"

    measurement_link: int
    module_link: int
    x: float
    y: float
    z: float
    local0: float
    local1: float

    @property
    def radius(self) -> float:
        return math.hypot(self.x, self.y)


@dataclass
class Seed(Record):
    """Bottom/middle/top spacepoint triplet (links index the spacepoints)."""

    kind: ClassVar[str] = "seeds"

    spB_link: int
    spM_link: int
    spT_link: int
    weight: float
    z_vertex: float


@dataclass
class BoundTrackParameters(Record):
    kind: ClassVar[str] = "params"

    surface_link: int
    loc0: float
    loc1: float
    phi: float
    theta: float
    qop: float
    time: float = 0.0


@dataclass
class FittingResult(Record):
    kind: ClassVar[str] = "fitted"

    surface_link: int
    loc0: float
    loc1: float
    phi: float
    theta: float
    qop: float
    time: float
    ndf: int
    chi2: float


@dataclass
class TrackState(Record):
    kind: ClassVar[str] = "track_states"

    measurement_link: int
    residual0: float
    residual1: float
    chi2: float


@dataclass
class Particle(Record):
    kind: ClassVar[str] = "particles"

    particle_id: int
    vertex_id: int
    charge: int
    pt: float
    eta: float
    phi: float
    vx: float
    vy: float
    vz: float


@dataclass
class TruthHit(Record):
    kind: ClassVar[str] = "truth"

    measurement_id: int
    particle_id: int


@dataclass
class ContainerElement:
    """One element of a jagged container: a header plus its item list."""

    header: Record
    items: list = field(default_factory=list)


# Jagged container layouts: (header type, item type).
TRACK_CANDIDATES = (BoundTrackParameters, Measurement)
TRACK_STATES = (FittingResult, TrackState)


def records_to_tensor(
    records: list, record_type: type[Record], device=None
) -> torch.Tensor:
    """Pack records into a ``(n, width)`` float64 tensor.

    Args:
        records: Host records, all of ``record_type``.
        record_type: Record class defining the column layout.
        device: Target device (defaults to CPU).

    Returns:
        Tensor of shape ``(len(records), record_type.width())``.
    """
    if not records:
        return torch.empty((0, record_type.width()), dtype=ROW_DTYPE, device=device)
    return torch.tensor(
        [r.to_row() for r in records], dtype=ROW_DTYPE, device=device
    ).reshape(len(records), record_type.width())


def tensor_to_records(rows: torch.Tensor, record_type: type[R]) -> list[R]:
    """Unpack a host-resident ``(n, width)`` tensor into records."""
    if rows.device.type != "cpu":
        raise ValueError("tensor_to_records requires a host tensor")
    return [record_type.from_row(row) for row in rows.tolist()]


def container_item_count(container: list[ContainerElement]) -> int:
    return sum(len(element.items) for element in container)
