"""Event input sources and per-path output writers.

Files are comma-separated with one header line naming the record fields,
followed by one row per record. Event files are named
``event<9 digits>-<kind>.<ext>``: ``.csv`` for inputs and ``.txt`` for
per-path outputs, which live under ``host/`` and ``device/`` subdirectories of
the output root so the two paths never collide.
"""

import csv
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from .edm import (
    Cell,
    ContainerElement,
    Measurement,
    Module,
    Particle,
    Record,
    Spacepoint,
    TruthHit,
)
from .errors import InputReadError
from .geometry import Geometry

logger = logging.getLogger(__name__)

GEOMETRY_FILE = "geometry.csv"


@dataclass
class EventData:
    """Input collections of one event.

    Attributes:
        index: Event index.
        cells: Raw readout cells (may be empty).
        measurements: Measurements; spacepoints link into this list.
        spacepoints: Spacepoints, the input of seeding.
        particles: Truth particles (empty without truth).
        truth: ``measurement_id -> particle_id`` map (empty without truth).
    """

    index: int
    cells: list[Cell] = field(default_factory=list)
    measurements: list[Measurement] = field(default_factory=list)
    spacepoints: list[Spacepoint] = field(default_factory=list)
    particles: list[Particle] = field(default_factory=list)
    truth: dict[int, int] = field(default_factory=dict)

    @property
    def has_truth(self) -> bool:
        return bool(self.truth)


@runtime_checkable
class EventSource(Protocol):
    """Source of events and the detector geometry they refer to."""

    @property
    def geometry(self) -> Geometry: ...

    def read_event(self, index: int) -> EventData: ...


def get_event_filename(event: int, suffix: str) -> str:
    """``get_event_filename(3, "-seeds.txt")`` -> ``"event000000003-seeds.txt"``."""
    return f"event{event:09d}{suffix}"


def read_records(path: str | Path, record_type: type[Record]) -> list:
    """Read a record CSV file.

    Raises:
        InputReadError: If the file is missing, lacks a field column, or holds
            a value that does not parse.
    """
    path = Path(path)
    if not path.is_file():
        raise InputReadError(f"Input file not found: {path}")
    layout = record_type.layout()
    records = []
    try:
        with open(path, newline="") as f:
            reader = csv.DictReader(f)
            missing = [name for name in layout if name not in (reader.fieldnames or [])]
            if missing:
                raise InputReadError(f"{path}: missing columns {missing}")
            for line, row in enumerate(reader, start=2):
                try:
                    records.append(record_type.from_row(float(row[name]) for name in layout))
                except (TypeError, ValueError) as e:
                    raise InputReadError(f"{path}:{line}: malformed row ({e})") from e
    except OSError as e:
        raise InputReadError(f"Cannot read {path}: {e}") from e
    return records


def write_records(path: str | Path, records: list, record_type: type[Record]) -> None:
    """Write records as CSV with a header line."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="") as f:
        writer = csv.writer(f)
        writer.writerow(record_type.layout())
        for record in records:
            writer.writerow(_format_row(record))


def _format_row(record: Record) -> list:
    return [
        v if isinstance(v, int) else repr(float(v))
        for v in (getattr(record, name) for name in record.layout())
    ]


def read_geometry(directory: str | Path, half_length: float = 500.0) -> Geometry:
    modules = read_records(Path(directory) / GEOMETRY_FILE, Module)
    for i, module in enumerate(modules):
        if module.surface_id != i:
            raise InputReadError(
                f"{GEOMETRY_FILE}: surface_id {module.surface_id} at row {i}, "
                "modules must be listed in surface_id order"
            )
    return Geometry(modules=modules, half_length=half_length)


class CsvEventSource:
    """Read events from a directory of CSV files.

    ``event<9 digits>-spacepoints.csv`` and ``-measurements.csv`` are required
    for every event. ``-cells.csv``, ``-particles.csv`` and ``-truth.csv`` are
    optional.

    Args:
        directory: Input directory, also holding ``geometry.csv``.

    Raises:
        InputReadError: If the directory or its geometry cannot be read.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        if not self.directory.is_dir():
            raise InputReadError(f"Input directory not found: {self.directory}")
        self._geometry = read_geometry(self.directory)
        logger.info("Loaded geometry with %d modules from %s", len(self._geometry), self.directory)

    @property
    def geometry(self) -> Geometry:
        return self._geometry

    def _path(self, index: int, kind: str) -> Path:
        return self.directory / get_event_filename(index, f"-{kind}.csv")

    def _optional(self, index: int, record_type: type[Record]) -> list:
        path = self._path(index, record_type.kind)
        return read_records(path, record_type) if path.is_file() else []

    def _check_module_links(self, index: int, records: list, kind: str) -> None:
        n_modules = len(self._geometry)
        for i, record in enumerate(records):
            if not 0 <= record.module_link < n_modules:
                raise InputReadError(
                    f"event {index}: {kind} row {i} links module {record.module_link} "
                    f"but the geometry has {n_modules} modules"
                )

    def read_event(self, index: int) -> EventData:
        cells = self._optional(index, Cell)
        measurements = read_records(self._path(index, Measurement.kind), Measurement)
        spacepoints = read_records(self._path(index, Spacepoint.kind), Spacepoint)
        for records, kind in [(cells, Cell.kind), (measurements, Measurement.kind), (spacepoints, Spacepoint.kind)]:
            self._check_module_links(index, records, kind)
        for sp in spacepoints:
            if not 0 <= sp.measurement_link < len(measurements):
                raise InputReadError(
                    f"event {index}: spacepoint links measurement {sp.measurement_link} "
                    f"but only {len(measurements)} measurements exist"
                )
        truth_hits = self._optional(index, TruthHit)
        return EventData(
            index=index,
            cells=cells,
            measurements=measurements,
            spacepoints=spacepoints,
            particles=self._optional(index, Particle),
            truth={hit.measurement_id: hit.particle_id for hit in truth_hits},
        )


def write_event(directory: str | Path, event: EventData, geometry: Geometry | None = None) -> None:
    """Write an event in the layout ``CsvEventSource`` reads."""
    directory = Path(directory)
    if geometry is not None:
        write_records(directory / GEOMETRY_FILE, geometry.modules, Module)
    for records, record_type in [
        (event.cells, Cell),
        (event.measurements, Measurement),
        (event.spacepoints, Spacepoint),
        (event.particles, Particle),
    ]:
        write_records(
            directory / get_event_filename(event.index, f"-{record_type.kind}.csv"),
            records,
            record_type,
        )
    truth = [TruthHit(m, p) for m, p in sorted(event.truth.items())]
    write_records(
        directory / get_event_filename(event.index, f"-{TruthHit.kind}.csv"), truth, TruthHit
    )


class ResultWriter:
    """Per-path writer of result collections.

    Args:
        directory: Output root; files go to ``<directory>/<path>/``.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_dir(self, path: str) -> Path:
        return self.directory / path

    def write_collection(self, path: str, event: int, records: list, record_type: type[Record]) -> Path:
        out = self.path_dir(path) / get_event_filename(event, f"-{record_type.kind}.txt")
        write_records(out, records, record_type)
        return out

    def write_container(
        self,
        path: str,
        event: int,
        container: list[ContainerElement],
        header_type: type[Record],
        item_type: type[Record],
        kind: str | None = None,
    ) -> Path:
        """Write a jagged container: each header row is followed by its items.

        Header rows start with ``H``, item rows with ``I``. ``kind`` names the
        file and defaults to the header kind.
        """
        kind = kind or header_type.kind
        out = self.path_dir(path) / get_event_filename(event, f"-{kind}.txt")
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(["H", *header_type.layout()])
            writer.writerow(["I", *item_type.layout()])
            for element in container:
                writer.writerow(["H", *_format_row(element.header)])
                for item in element.items:
                    writer.writerow(["I", *_format_row(item)])
        return out
