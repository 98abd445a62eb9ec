"""Construction of event sources, device runtimes and stage chains."""

import logging
from dataclasses import dataclass
from pathlib import Path

import torch

from ..buffers import BufferPool
from ..config import PipelineConfig
from ..geometry import Geometry
from ..io import CsvEventSource, EventSource
from ..memory import create_memory_resources
from ..simulation import SyntheticEventSource
from ..stages import (
    DeviceFinding,
    DeviceFitting,
    DeviceParamsEstimation,
    DeviceSeeding,
    HostFinding,
    HostFitting,
    HostParamsEstimation,
    HostSeeding,
    Stage,
)
from ..stream import create_stream
from .context import DeviceRuntime, RunContext

logger = logging.getLogger(__name__)


@dataclass
class StageChain:
    """The four reconstruction stages of one execution path."""

    path: str
    seeding: Stage
    params: Stage
    finding: Stage
    fitting: Stage


def resolve_device(requested: str) -> str:
    if requested == "cuda" and not torch.cuda.is_available():
        logger.warning("CUDA requested but not available, falling back to CPU")
        return "cpu"
    return requested


def build_event_source(config: PipelineConfig) -> EventSource:
    """Create the configured event source.

    Raises:
        InputReadError: If the CSV input directory or geometry cannot be read.
    """
    if config.input.source == "csv":
        logger.info("Reading events from %s", config.input.directory)
        return CsvEventSource(config.input.directory)
    logger.info(
        "Simulating events: %d vertices x %d tracks (seed %d)",
        config.simulation.n_vertices,
        config.simulation.tracks_per_vertex,
        config.simulation.random_seed,
    )
    return SyntheticEventSource(config.simulation, bfield_z=config.seeding.bfield_z)


def build_device_runtime(config: PipelineConfig, geometry: Geometry) -> DeviceRuntime:
    """Create a fresh stream, allocator set and buffer pool for one instance."""
    accel = config.accelerator
    device = resolve_device(accel.device)
    resources = create_memory_resources(
        device,
        use_pinned_host=accel.use_pinned_host,
        use_caching=accel.use_caching,
        min_page_size=accel.min_page_size,
    )
    stream = create_stream(device, log_size=accel.stream_log_size)
    # uploaded once per run; outlives every per-event pool lease
    modules = stream.enqueue("upload geometry", geometry.to_tensor, device=device)
    return DeviceRuntime(
        resources=resources, stream=stream, pool=BufferPool(resources), modules=modules
    )


def build_stage_chain(
    path: str,
    config: PipelineConfig,
    geometry: Geometry,
    runtime: DeviceRuntime | None = None,
) -> StageChain:
    """Select the host or device implementation of every stage.

    Args:
        path: ``"host"`` or ``"device"``.
        config: Pipeline configuration.
        geometry: Detector geometry.
        runtime: Device runtime (required for the device path).

    Returns:
        StageChain for the requested path.
    """
    bfield = config.seeding.bfield_z
    if path == "host":
        return StageChain(
            path=path,
            seeding=HostSeeding(config.seeding),
            params=HostParamsEstimation(bfield),
            finding=HostFinding(geometry, config.finding, bfield),
            fitting=HostFitting(geometry, bfield),
        )
    if path != "device":
        raise ValueError(f"Unknown execution path: {path!r}")
    if runtime is None:
        raise ValueError("The device path needs a DeviceRuntime")
    stream, pool, modules = runtime.stream, runtime.pool, runtime.modules
    return StageChain(
        path=path,
        seeding=DeviceSeeding(stream, pool, config.seeding),
        params=DeviceParamsEstimation(stream, pool, bfield),
        finding=DeviceFinding(stream, pool, modules, geometry.layer_ids, config.finding, bfield),
        fitting=DeviceFitting(stream, pool, modules, bfield),
    )


def build_run_context(config: PipelineConfig, geometry: Geometry, **kwargs) -> RunContext:
    """Create the run context and save a copy of the configuration.

    Keyword arguments are passed to ``RunContext`` (e.g. an existing
    ``timing`` or ``statistics`` instance).
    """
    output_dir = Path(config.output.directory)
    output_dir.mkdir(parents=True, exist_ok=True)
    config.to_yaml(output_dir / "config.yaml")
    logger.info("Config saved to %s", output_dir / "config.yaml")
    return RunContext(config=config, geometry=geometry, output_dir=output_dir, **kwargs)
