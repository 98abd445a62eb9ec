"""Configuration management for the TrackChain pipeline."""

import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)

# Order in which stages may be mirrored on the host path.
STAGE_ORDER = ["seeding", "params", "finding", "fitting"]


def _check_range(name: str, v: tuple[float, float]) -> tuple[float, float]:
    if v[0] > v[1]:
        raise ValueError(f"{name} must be ordered (low, high), got {v}")
    return v


class InputConfig(BaseModel):
    """Configuration for the event source.

    Attributes:
        source: ``"synthetic"`` generates events in memory, ``"csv"`` reads
            ``event<9 digits>-<kind>.csv`` files from ``directory``.
        directory: Input directory for the CSV source.
        events: Number of events to process.
        skip: Number of leading events to skip.
    """

    model_config = ConfigDict(extra="allow")

    source: Literal["synthetic", "csv"] = "synthetic"
    directory: str = ""
    events: int = 1
    skip: int = 0

    @field_validator("events", "skip")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate that event counts are non-negative."""
        if v < 0:
            raise ValueError(f"must be non-negative, got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "InputConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in InputConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class SimulationConfig(BaseModel):
    """Configuration for the multi-vertex event simulator and its detector.

    Attributes:
        n_vertices: Number of collision vertices per event (pile-up).
        tracks_per_vertex: Number of charged particles per vertex.
        vertex_xy_stddev: Transverse vertex spread (mm).
        vertex_z_stddev: Longitudinal vertex spread (mm).
        pt_range: Transverse momentum range (GeV).
        eta_range: Pseudorapidity range.
        randomize_charge: Draw the particle charge at random instead of -1.
        random_seed: Base seed. Event ``i`` uses ``(random_seed, i)``.
        layer_radii: Barrel layer radii (mm), increasing.
        half_length: Barrel half length (mm).
        modules_per_layer: Azimuthal staves per layer.
        pitch_x: Pixel pitch along ``loc0`` (mm).
        pitch_y: Pixel pitch along ``loc1`` (mm).
    """

    model_config = ConfigDict(extra="allow")

    n_vertices: int = 5
    tracks_per_vertex: int = 10
    vertex_xy_stddev: float = 0.04
    vertex_z_stddev: float = 54.0
    pt_range: tuple[float, float] = (1.0, 10.0)
    eta_range: tuple[float, float] = (-1.0, 1.0)
    randomize_charge: bool = True
    random_seed: int = 0

    layer_radii: list[float] = Field(
        default_factory=lambda: [30.0, 60.0, 100.0, 150.0, 210.0, 280.0, 360.0]
    )
    half_length: float = 500.0
    modules_per_layer: int = 16
    pitch_x: float = 0.05
    pitch_y: float = 0.4

    @field_validator("n_vertices", "tracks_per_vertex")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate that multiplicities are non-negative."""
        if v < 0:
            raise ValueError(f"must be non-negative, got {v}")
        return v

    @field_validator("pt_range")
    @classmethod
    def validate_pt_range(cls, v: tuple[float, float]) -> tuple[float, float]:
        """Validate that the momentum range is positive and ordered."""
        if v[0] <= 0:
            raise ValueError(f"pt_range must be positive, got {v}")
        return _check_range("pt_range", v)

    @field_validator("eta_range")
    @classmethod
    def validate_eta_range(cls, v: tuple[float, float]) -> tuple[float, float]:
        """Validate that the pseudorapidity range is ordered."""
        return _check_range("eta_range", v)

    @field_validator("layer_radii")
    @classmethod
    def validate_layer_radii(cls, v: list[float]) -> list[float]:
        """Validate that layer radii are positive and strictly increasing."""
        if any(r <= 0 for r in v):
            raise ValueError(f"layer_radii must be positive, got {v}")
        if any(b <= a for a, b in zip(v, v[1:])):
            raise ValueError(f"layer_radii must be strictly increasing, got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "SimulationConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in SimulationConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class AcceleratorConfig(BaseModel):
    """Configuration for the device path.

    Attributes:
        device: PyTorch device for the accelerator path.
        max_cells_per_partition: Batch size of the clusterization front end.
        navigation_buffer_size_scaler: Navigation buffer rows per seed.
        use_pinned_host: Stage uploads through page-locked host memory.
        use_caching: Pool freed device blocks by size class.
        min_page_size: Smallest caching allocator size class (bytes).
        stream_log_size: Number of stream operations kept in the log.
    """

    model_config = ConfigDict(extra="allow")

    device: Literal["cpu", "cuda"] = "cpu"
    max_cells_per_partition: int = 1024
    navigation_buffer_size_scaler: int = 10
    use_pinned_host: bool = True
    use_caching: bool = True
    min_page_size: int = 256
    stream_log_size: int = 4096

    @field_validator("max_cells_per_partition", "min_page_size", "stream_log_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        """Validate that sizes are positive."""
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @field_validator("navigation_buffer_size_scaler")
    @classmethod
    def validate_scaler(cls, v: int) -> int:
        """Validate that the navigation buffer holds at least one row per seed."""
        if v < 1:
            raise ValueError(f"navigation_buffer_size_scaler must be >= 1, got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "AcceleratorConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in AcceleratorConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class SeedingConfig(BaseModel):
    """Triplet seeding cuts.

    Attributes:
        dr_min: Minimum radial distance between consecutive seed spacepoints (mm).
        dr_max: Maximum radial distance between consecutive seed spacepoints (mm).
        max_cot_theta_diff: Maximum difference between the bottom-middle and
            middle-top cot(theta).
        min_pt: Minimum transverse momentum (GeV), a bound on the circle radius.
        bfield_z: Solenoid field (T).
        impact_max: Maximum transverse impact parameter (mm).
        collision_region: Maximum |z| of the seed vertex estimate (mm).
    """

    model_config = ConfigDict(extra="allow")

    dr_min: float = 5.0
    dr_max: float = 100.0
    max_cot_theta_diff: float = 0.02
    min_pt: float = 0.5
    bfield_z: float = 2.0
    impact_max: float = 10.0
    collision_region: float = 250.0

    @field_validator("dr_min", "dr_max", "min_pt", "bfield_z", "impact_max", "collision_region")
    @classmethod
    def validate_positive(cls, v: float) -> float:
        """Validate that cuts are positive."""
        if v <= 0:
            raise ValueError(f"must be positive, got {v}")
        return v

    @model_validator(mode="after")
    def check_dr_range(self) -> "SeedingConfig":
        """Validate dr ordering and warn about extra fields."""
        if self.dr_min > self.dr_max:
            raise ValueError(f"dr_min ({self.dr_min}) must not exceed dr_max ({self.dr_max})")
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in SeedingConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class FindingConfig(BaseModel):
    """Track finding configuration.

    Attributes:
        road_xy: Transverse acceptance road around the predicted helix (mm).
        road_z: Longitudinal acceptance road (mm).
        min_measurements: Minimum measurements on a kept candidate.
        overflow_policy: What the device finder does when the navigation
            buffer is too small: ``resize``, ``truncate`` or ``raise``.
    """

    model_config = ConfigDict(extra="allow")

    road_xy: float = 0.5
    road_z: float = 3.0
    min_measurements: int = 3
    overflow_policy: Literal["resize", "truncate", "raise"] = "resize"

    @field_validator("road_xy", "road_z")
    @classmethod
    def validate_road(cls, v: float) -> float:
        """Validate that roads are positive."""
        if v <= 0:
            raise ValueError(f"road must be positive, got {v}")
        return v

    @field_validator("min_measurements")
    @classmethod
    def validate_min_measurements(cls, v: int) -> int:
        """Validate that candidates need at least one measurement."""
        if v < 1:
            raise ValueError(f"min_measurements must be >= 1, got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "FindingConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in FindingConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class ComparisonConfig(BaseModel):
    """Host/device result comparison.

    Attributes:
        compare_with_host: Run the host mirror path and compare.
        host_stages: Stages mirrored on the host, a prefix of the stage order.
        tolerance: Relative tolerance of the float predicate.
        strategy: ``first_match`` (nested scan) or ``assignment`` (one-to-one).
        expected_match_rate: Rates below this are logged as warnings.
    """

    model_config = ConfigDict(extra="allow")

    compare_with_host: bool = True
    host_stages: list[str] = Field(default_factory=lambda: list(STAGE_ORDER))
    tolerance: float = 1e-6
    strategy: Literal["first_match", "assignment"] = "first_match"
    expected_match_rate: float = 0.99

    @field_validator("host_stages")
    @classmethod
    def validate_host_stages(cls, v: list[str]) -> list[str]:
        """Validate that host_stages is a prefix of the stage order."""
        for stage in v:
            if stage not in STAGE_ORDER:
                raise ValueError(
                    f"Invalid host stage: {stage!r}. Valid stages: {STAGE_ORDER}"
                )
        if v != STAGE_ORDER[: len(v)]:
            raise ValueError(
                f"host_stages must be a prefix of {STAGE_ORDER}, got {v}"
            )
        return v

    @field_validator("tolerance")
    @classmethod
    def validate_tolerance(cls, v: float) -> float:
        """Validate that the tolerance is non-negative."""
        if v < 0:
            raise ValueError(f"tolerance must be non-negative, got {v}")
        return v

    @field_validator("expected_match_rate")
    @classmethod
    def validate_rate(cls, v: float) -> float:
        """Validate that the expected rate is a fraction."""
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"expected_match_rate must be in [0, 1], got {v}")
        return v

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "ComparisonConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in ComparisonConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class OutputConfig(BaseModel):
    """Output writers.

    Attributes:
        directory: Root output directory (``host/`` and ``device/`` below it).
        write_results: Write per-event result collections.
        write_inputs: Also write the input collections of each event.
        write_performance: Write seeding/finding/fitting efficiency files
            (needs a truth map).
    """

    model_config = ConfigDict(extra="allow")

    directory: str = "output"
    write_results: bool = False
    write_inputs: bool = False
    write_performance: bool = False

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "OutputConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in OutputConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class RuntimeConfig(BaseModel):
    """Runtime behavior.

    Attributes:
        synchronize_timers: Synchronize the stream inside timed device scopes
            so timings measure completion, not issue.
        quiet: Suppress progress output.
    """

    model_config = ConfigDict(extra="allow")

    synchronize_timers: bool = True
    quiet: bool = False

    @model_validator(mode="after")
    def warn_extra_fields(self) -> "RuntimeConfig":
        """Warn about unknown configuration keys."""
        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in RuntimeConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )
        return self


class PipelineConfig(BaseModel):
    """Top-level configuration for the dual-path reconstruction pipeline.

    Attributes:
        input: Event source configuration.
        simulation: Simulator and detector configuration.
        accelerator: Device path configuration.
        seeding: Seeding cuts.
        finding: Track finding configuration.
        comparison: Host/device comparison configuration.
        output: Output writers configuration.
        runtime: Runtime configuration.
    """

    model_config = ConfigDict(extra="allow")

    input: InputConfig = Field(default_factory=InputConfig)
    simulation: SimulationConfig = Field(default_factory=SimulationConfig)
    accelerator: AcceleratorConfig = Field(default_factory=AcceleratorConfig)
    seeding: SeedingConfig = Field(default_factory=SeedingConfig)
    finding: FindingConfig = Field(default_factory=FindingConfig)
    comparison: ComparisonConfig = Field(default_factory=ComparisonConfig)
    output: OutputConfig = Field(default_factory=OutputConfig)
    runtime: RuntimeConfig = Field(default_factory=RuntimeConfig)

    @model_validator(mode="after")
    def check_cross_section_constraints(self) -> "PipelineConfig":
        """Validate cross-section constraints and warn about extra fields."""
        if self.input.source == "csv" and not self.input.directory:
            raise ValueError("input.directory is required when input.source is 'csv'")

        if self.output.write_performance and self.input.source == "csv":
            logger.info(
                "output.write_performance needs truth files; events without "
                "truth are skipped by the performance writers"
            )

        if not self.comparison.compare_with_host and self.comparison.host_stages:
            logger.debug("comparison.compare_with_host is off, host_stages ignored")

        if self.__pydantic_extra__:
            logger.warning(
                "Unknown config keys in PipelineConfig (ignored): %s",
                list(self.__pydantic_extra__.keys()),
            )

        return self

    @property
    def mirrored_stages(self) -> list[str]:
        """Stages run on the host path for this configuration."""
        if not self.comparison.compare_with_host:
            return []
        return list(self.comparison.host_stages)

    @classmethod
    def from_yaml(cls, path: str | Path) -> "PipelineConfig":
        """Load configuration from a YAML file.

        Missing fields use their default values.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Loaded configuration with defaults filled in.

        Raises:
            FileNotFoundError: If the file does not exist.
            yaml.YAMLError: If the file is not valid YAML.
            ValueError: If validation fails (with all errors collected).
        """
        path = Path(path)
        with open(path) as f:
            data = yaml.safe_load(f)

        if data is None:
            data = {}

        cls._log_default_sections(data)

        try:
            config = cls.model_validate(data)
        except ValidationError as e:
            formatted_errors = format_validation_errors(e)
            raise ValueError(
                f"Configuration validation failed:\n{formatted_errors}"
            ) from None

        return config

    @staticmethod
    def _log_default_sections(data: dict[str, Any]) -> None:
        """Log INFO messages about sections using defaults.

        Args:
            data: Configuration dictionary.
        """
        sections = [
            "input",
            "simulation",
            "accelerator",
            "seeding",
            "finding",
            "comparison",
            "output",
            "runtime",
        ]

        for section in sections:
            if section not in data:
                logger.info("Using default: %s (all defaults)", section)

    def to_yaml(self, path: str | Path) -> None:
        """Save configuration to a YAML file.

        All fields including defaults are written for explicitness.

        Args:
            path: Path to output YAML file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")

        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False)


def format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors with YAML-style paths.

    Args:
        error: Pydantic ValidationError.

    Returns:
        Formatted error string with YAML paths and messages.
    """
    lines = []
    for err in error.errors():
        loc = err["loc"]
        path_parts = []
        for part in loc:
            if isinstance(part, int) and path_parts:
                path_parts[-1] = f"{path_parts[-1]}[{part}]"
            else:
                path_parts.append(str(part))

        path = ".".join(path_parts)
        msg = err["msg"]
        lines.append(f"  {path}: {msg}")

    return "\n".join(lines)
