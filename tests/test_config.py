"""Tests for configuration system."""

import logging

import pytest
import yaml
from pydantic import ValidationError

from trackchain.config import (
    STAGE_ORDER,
    AcceleratorConfig,
    ComparisonConfig,
    FindingConfig,
    InputConfig,
    PipelineConfig,
    SeedingConfig,
    SimulationConfig,
)


class TestInputConfig:
    """Tests for InputConfig."""

    def test_defaults(self):
        """Test default values."""
        config = InputConfig()
        assert config.source == "synthetic"
        assert config.events == 1
        assert config.skip == 0

    def test_negative_events(self):
        """Test that negative event counts are rejected."""
        with pytest.raises(ValidationError, match="non-negative"):
            InputConfig(events=-1)

    def test_invalid_source(self):
        """Test that unknown sources are rejected."""
        with pytest.raises(ValidationError):
            InputConfig(source="root")


class TestSimulationConfig:
    """Tests for SimulationConfig."""

    def test_defaults(self):
        """Test default values."""
        config = SimulationConfig()
        assert config.eta_range == (-1.0, 1.0)
        assert config.layer_radii == [30.0, 60.0, 100.0, 150.0, 210.0, 280.0, 360.0]
        assert config.randomize_charge is True

    def test_unordered_range(self):
        """Test that ranges must be ordered."""
        with pytest.raises(ValidationError, match="ordered"):
            SimulationConfig(eta_range=(1.0, -1.0))

    def test_non_positive_pt(self):
        """Test that pt must be positive."""
        with pytest.raises(ValidationError, match="positive"):
            SimulationConfig(pt_range=(0.0, 1.0))

    def test_layer_radii_increasing(self):
        """Test that layer radii must increase."""
        with pytest.raises(ValidationError, match="strictly increasing"):
            SimulationConfig(layer_radii=[30.0, 20.0])


class TestAcceleratorConfig:
    """Tests for AcceleratorConfig."""

    def test_defaults(self):
        """Test default values."""
        config = AcceleratorConfig()
        assert config.device == "cpu"
        assert config.navigation_buffer_size_scaler == 10
        assert config.use_caching is True

    def test_invalid_device(self):
        """Test that unknown devices are rejected."""
        with pytest.raises(ValidationError):
            AcceleratorConfig(device="tpu")

    def test_scaler_minimum(self):
        """Test that the navigation scaler is at least one."""
        with pytest.raises(ValidationError, match=">= 1"):
            AcceleratorConfig(navigation_buffer_size_scaler=0)

    def test_partition_size_positive(self):
        """Test that the partition size must be positive."""
        with pytest.raises(ValidationError, match="positive"):
            AcceleratorConfig(max_cells_per_partition=0)


class TestSeedingConfig:
    """Tests for SeedingConfig."""

    def test_dr_order(self):
        """Test that dr_min may not exceed dr_max."""
        with pytest.raises(ValidationError, match="must not exceed"):
            SeedingConfig(dr_min=50.0, dr_max=10.0)

    def test_positive_field(self):
        """Test that the field must be positive."""
        with pytest.raises(ValidationError):
            SeedingConfig(bfield_z=0.0)


class TestFindingConfig:
    """Tests for FindingConfig."""

    def test_overflow_policy(self):
        """Test valid and invalid overflow policies."""
        assert FindingConfig(overflow_policy="raise").overflow_policy == "raise"
        with pytest.raises(ValidationError):
            FindingConfig(overflow_policy="grow")

    def test_min_measurements(self):
        """Test that candidates need at least one measurement."""
        with pytest.raises(ValidationError, match=">= 1"):
            FindingConfig(min_measurements=0)


class TestComparisonConfig:
    """Tests for ComparisonConfig."""

    def test_defaults(self):
        """Test that every stage is mirrored by default."""
        config = ComparisonConfig()
        assert config.host_stages == STAGE_ORDER
        assert config.strategy == "first_match"

    def test_unknown_strategy(self):
        """Test that only the known match strategies are accepted."""
        assert ComparisonConfig(strategy="assignment").strategy == "assignment"
        with pytest.raises(ValidationError):
            ComparisonConfig(strategy="greedy")

    def test_prefix_required(self):
        """Test that host stages must be a prefix of the stage order."""
        with pytest.raises(ValidationError, match="prefix"):
            ComparisonConfig(host_stages=["seeding", "finding"])

    def test_unknown_stage(self):
        """Test that unknown stages are rejected."""
        with pytest.raises(ValidationError, match="Invalid host stage"):
            ComparisonConfig(host_stages=["clustering"])

    def test_negative_tolerance(self):
        """Test that the tolerance must be non-negative."""
        with pytest.raises(ValidationError, match="non-negative"):
            ComparisonConfig(tolerance=-1e-3)

    def test_rate_bounds(self):
        """Test that the expected rate is a fraction."""
        with pytest.raises(ValidationError):
            ComparisonConfig(expected_match_rate=1.5)


class TestPipelineConfig:
    """Tests for PipelineConfig."""

    def test_defaults(self):
        """Test that every section has defaults."""
        config = PipelineConfig()
        assert config.input.source == "synthetic"
        assert config.output.directory == "output"
        assert config.runtime.synchronize_timers is True

    def test_csv_needs_directory(self):
        """Test that the CSV source requires a directory."""
        with pytest.raises(ValidationError, match="input.directory is required"):
            PipelineConfig(input={"source": "csv"})

    def test_mirrored_stages(self):
        """Test that mirrored stages follow the comparison settings."""
        assert PipelineConfig().mirrored_stages == STAGE_ORDER
        config = PipelineConfig(comparison={"compare_with_host": False})
        assert config.mirrored_stages == []
        config = PipelineConfig(comparison={"host_stages": ["seeding"]})
        assert config.mirrored_stages == ["seeding"]

    def test_yaml_round_trip(self, tmp_path):
        """Test saving and loading a config."""
        config = PipelineConfig(
            input={"events": 7},
            accelerator={"navigation_buffer_size_scaler": 4},
            comparison={"strategy": "assignment"},
        )
        path = tmp_path / "config.yaml"
        config.to_yaml(path)
        loaded = PipelineConfig.from_yaml(path)
        assert loaded == config

    def test_partial_yaml(self, tmp_path, caplog):
        """Test that missing sections use defaults and are logged."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"input": {"events": 3}}))
        with caplog.at_level(logging.INFO, logger="trackchain.config"):
            config = PipelineConfig.from_yaml(path)
        assert config.input.events == 3
        assert config.seeding.bfield_z == 2.0
        assert "Using default: seeding" in caplog.text

    def test_empty_yaml(self, tmp_path):
        """Test that an empty file gives the defaults."""
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert PipelineConfig.from_yaml(path) == PipelineConfig()

    def test_validation_errors_formatted(self, tmp_path):
        """Test that validation errors carry YAML-style paths."""
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({"accelerator": {"min_page_size": 0}, "input": {"events": -2}}))
        with pytest.raises(ValueError) as exc_info:
            PipelineConfig.from_yaml(path)
        message = str(exc_info.value)
        assert "Configuration validation failed" in message
        assert "accelerator.min_page_size" in message
        assert "input.events" in message

    def test_unknown_keys_warn(self, caplog):
        """Test that unknown keys are kept but warned about."""
        with caplog.at_level(logging.WARNING, logger="trackchain.config"):
            PipelineConfig(seeding={"delta_r": 3.0})
        assert "Unknown config keys in SeedingConfig" in caplog.text

    def test_missing_file(self, tmp_path):
        """Test that a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            PipelineConfig.from_yaml(tmp_path / "missing.yaml")
