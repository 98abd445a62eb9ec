"""Shared pytest fixtures for TrackChain tests."""

import math

import pytest
import torch

from trackchain.config import PipelineConfig
from trackchain.edm import Measurement, Spacepoint
from trackchain.errors import InputReadError
from trackchain.geometry import Geometry, build_barrel_geometry
from trackchain.io import EventData


@pytest.fixture(params=["cpu", "cuda"])
def device(request):
    """Parametrized device fixture for CPU and CUDA testing.

    Args:
        request: pytest fixture request object.

    Returns:
        torch.device: Device to use for testing.

    Raises:
        pytest.skip: If CUDA is requested but not available.
    """
    if request.param == "cuda" and not torch.cuda.is_available():
        pytest.skip("CUDA not available")
    return torch.device(request.param)


@pytest.fixture
def geometry() -> Geometry:
    """Default seven-layer barrel geometry."""
    return build_barrel_geometry(
        layer_radii=[30.0, 60.0, 100.0, 150.0, 210.0, 280.0, 360.0],
        half_length=500.0,
        modules_per_layer=16,
        pitch_x=0.05,
        pitch_y=0.4,
    )


def track_event(
    geometry: Geometry,
    index: int = 0,
    tracks: list[tuple[float, float]] = ((0.1, 0.5),),
    layers: tuple[int, ...] = (0, 1, 2),
) -> EventData:
    """Event with straight tracks from the origin.

    Args:
        geometry: Detector geometry.
        index: Event index.
        tracks: ``(phi, cot_theta)`` per track.
        layers: Layer ids each track leaves a hit on.

    Returns:
        EventData with one measurement and spacepoint per hit; the truth map
        assigns particle ``i + 1`` to the hits of track ``i``.
    """
    measurements, spacepoints, truth = [], [], {}
    radii = {m.layer: m.radius for m in geometry.modules}
    for particle, (phi, cot_theta) in enumerate(tracks, start=1):
        for layer in layers:
            r = radii[layer]
            x, y, z = r * math.cos(phi), r * math.sin(phi), r * cot_theta
            module_link = geometry.find_module(layer, phi)
            loc0, loc1 = geometry.global_to_local(module_link, x, y, z)
            measurement_id = len(measurements)
            measurements.append(
                Measurement(measurement_id, module_link, loc0, loc1, 0.05**2 / 12, 0.4**2 / 12)
            )
            gx, gy, gz = geometry.local_to_global(module_link, loc0, loc1)
            spacepoints.append(Spacepoint(measurement_id, module_link, gx, gy, gz, loc0, loc1))
            truth[measurement_id] = particle
    return EventData(index=index, measurements=measurements, spacepoints=spacepoints, truth=truth)


class ListEventSource:
    """In-memory event source; unknown indices fail like a missing file."""

    def __init__(self, geometry: Geometry, events: list[EventData]):
        self._geometry = geometry
        self.events = {event.index: event for event in events}

    @property
    def geometry(self) -> Geometry:
        return self._geometry

    def read_event(self, index: int) -> EventData:
        if index not in self.events:
            raise InputReadError(f"no event {index}")
        return self.events[index]


@pytest.fixture
def make_event(geometry):
    """Factory for straight-track events on the default geometry."""

    def factory(
        index: int = 0, tracks=((0.1, 0.5),), layers=(0, 1, 2), detector: Geometry | None = None
    ) -> EventData:
        return track_event(detector or geometry, index, tracks, layers)

    return factory


@pytest.fixture
def make_source(geometry):
    """Factory for in-memory event sources on the default geometry."""

    def factory(events: list[EventData], detector: Geometry | None = None) -> ListEventSource:
        return ListEventSource(detector or geometry, events)

    return factory


@pytest.fixture
def make_config(tmp_path):
    """Factory for a quiet PipelineConfig writing into ``tmp_path``."""

    def factory(device: torch.device | str = "cpu", **sections) -> PipelineConfig:
        data = {
            "accelerator": {"device": torch.device(device).type},
            "output": {"directory": str(tmp_path / "output")},
            "runtime": {"quiet": True},
        }
        for name, values in sections.items():
            data.setdefault(name, {}).update(values)
        return PipelineConfig.model_validate(data)

    return factory
