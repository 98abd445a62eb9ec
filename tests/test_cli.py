"""Tests for CLI commands."""

import logging
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml

from trackchain.cli import init_config, main, run_command, simulate_command
from trackchain.config import PipelineConfig
from trackchain.errors import InputReadError
from trackchain.io import GEOMETRY_FILE, get_event_filename


def _write_config(path: Path, output_dir: Path, **sections) -> Path:
    data = {
        "input": {"events": 1},
        "simulation": {"n_vertices": 1, "tracks_per_vertex": 3},
        "output": {"directory": str(output_dir)},
        "runtime": {"quiet": True},
    }
    data.update(sections)
    with open(path, "w") as f:
        yaml.dump(data, f)
    return path


# ============================================================================
# Tests for `init` command
# ============================================================================


def test_init_writes_defaults(tmp_path: Path, capsys):
    """Test init writes a loadable config with the given options."""
    config_path = tmp_path / "configs" / "config.yaml"
    config = init_config(config_path, events=3, output_dir=str(tmp_path / "out"))

    assert config_path.exists()
    loaded = PipelineConfig.from_yaml(config_path)
    assert loaded == config
    assert loaded.input.events == 3
    assert "Config saved to" in capsys.readouterr().out


def test_init_csv_without_directory(tmp_path: Path, capsys):
    """Test init rejects the csv source without an input directory."""
    with pytest.raises(SystemExit) as exc_info:
        init_config(tmp_path / "config.yaml", source="csv")

    assert exc_info.value.code == 1
    assert "Invalid configuration" in capsys.readouterr().err
    assert not (tmp_path / "config.yaml").exists()


# ============================================================================
# Tests for `run` command
# ============================================================================


def test_run_missing_config(tmp_path: Path):
    """Test run command exits with error when config file doesn't exist."""
    with pytest.raises(SystemExit) as exc_info:
        run_command(tmp_path / "nonexistent.yaml")

    assert exc_info.value.code == 1


def test_run_malformed_yaml(tmp_path: Path):
    """Test run command with malformed YAML exits with error."""
    config_path = tmp_path / "config.yaml"
    config_path.write_text("{invalid: yaml: content:")

    with pytest.raises(SystemExit) as exc_info:
        run_command(config_path)

    assert exc_info.value.code == 1


def test_run_invalid_config(tmp_path: Path, capsys):
    """Test run command with an invalid value exits with error."""
    config_path = _write_config(
        tmp_path / "config.yaml", tmp_path / "out", comparison={"strategy": "greedy"}
    )

    with pytest.raises(SystemExit) as exc_info:
        run_command(config_path)

    assert exc_info.value.code == 1
    assert "comparison.strategy" in capsys.readouterr().err


def test_run_overrides(tmp_path: Path):
    """Test run command applies device and event overrides."""
    config_path = _write_config(tmp_path / "config.yaml", tmp_path / "out")

    with patch("trackchain.pipeline.run_pipeline") as mock_run_pipeline:
        run_command(config_path, device="cuda", events=4)

    assert mock_run_pipeline.call_count == 1
    args, _ = mock_run_pipeline.call_args
    assert isinstance(args[0], PipelineConfig)
    assert args[0].accelerator.device == "cuda"
    assert args[0].input.events == 4


def test_run_invalid_override(tmp_path: Path, capsys):
    """Test run command validates the event count override."""
    config_path = _write_config(tmp_path / "config.yaml", tmp_path / "out")

    with patch("trackchain.pipeline.run_pipeline") as mock_run_pipeline:
        with pytest.raises(SystemExit) as exc_info:
            run_command(config_path, events=-1)

    assert exc_info.value.code == 1
    assert mock_run_pipeline.call_count == 0
    assert "input.events" in capsys.readouterr().err


def test_run_verbose_flag(tmp_path: Path):
    """Test run command --verbose sets logging to DEBUG."""
    config_path = _write_config(tmp_path / "config.yaml", tmp_path / "out")

    with patch("trackchain.pipeline.run_pipeline"):
        logging.root.handlers = []
        run_command(config_path, verbose=True)

    assert logging.getLogger().level == logging.DEBUG


def test_run_aborted(tmp_path: Path, capsys):
    """Test that a fatal pipeline error exits with code 1."""
    config_path = _write_config(tmp_path / "config.yaml", tmp_path / "out")

    with patch("trackchain.pipeline.run_pipeline", side_effect=InputReadError("no event 0")):
        with pytest.raises(SystemExit) as exc_info:
            run_command(config_path)

    assert exc_info.value.code == 1
    assert "Run aborted: no event 0" in capsys.readouterr().err


def test_run_end_to_end(tmp_path: Path, capsys):
    """Test a real run writes its summary."""
    config_path = _write_config(tmp_path / "config.yaml", tmp_path / "out")
    run_command(config_path)

    assert (tmp_path / "out" / "summary.json").exists()
    out = capsys.readouterr().out
    assert "==> Statistics" in out
    assert "Run summary:" in out


# ============================================================================
# Tests for `simulate` command
# ============================================================================


def test_simulate_writes_csv_layout(tmp_path: Path, capsys):
    """Test simulate writes the geometry and per-event files."""
    output_dir = tmp_path / "events"
    simulate_command(output_dir, events=2)

    assert (output_dir / GEOMETRY_FILE).exists()
    for index in range(2):
        assert (output_dir / get_event_filename(index, "-measurements.csv")).exists()
        assert (output_dir / get_event_filename(index, "-spacepoints.csv")).exists()
    assert "Wrote 2 event(s)" in capsys.readouterr().out


def test_simulated_events_feed_csv_run(tmp_path: Path):
    """Test that simulated CSV events run through the csv source."""
    output_dir = tmp_path / "events"
    simulate_command(output_dir, events=1)
    config_path = _write_config(
        tmp_path / "config.yaml",
        tmp_path / "out",
        input={"source": "csv", "directory": str(output_dir), "events": 1},
    )
    run_command(config_path)
    assert (tmp_path / "out" / "summary.json").exists()


# ============================================================================
# Tests for argument parsing
# ============================================================================


def test_main_run_argument_parsing(tmp_path: Path):
    """Test main() correctly parses run subcommand arguments."""
    config_path = tmp_path / "config.yaml"

    with patch("sys.argv", ["trackchain", "run", str(config_path)]):
        with patch("trackchain.cli.run_command") as mock_run_command:
            main()
            mock_run_command.assert_called_once_with(
                config_path=config_path,
                verbose=False,
                device=None,
                events=None,
            )

    with patch("sys.argv", ["trackchain", "run", "-v", "--events", "3", str(config_path)]):
        with patch("trackchain.cli.run_command") as mock_run_command:
            main()
            mock_run_command.assert_called_once_with(
                config_path=config_path,
                verbose=True,
                device=None,
                events=3,
            )

    with patch("sys.argv", ["trackchain", "run", "--device", "cuda", str(config_path)]):
        with patch("trackchain.cli.run_command") as mock_run_command:
            main()
            mock_run_command.assert_called_once_with(
                config_path=config_path,
                verbose=False,
                device="cuda",
                events=None,
            )


def test_main_other_commands(tmp_path: Path):
    """Test dispatch of the remaining subcommands."""
    config_path = tmp_path / "config.yaml"

    with patch("sys.argv", ["trackchain", "full-chain", str(config_path)]):
        with patch("trackchain.cli.full_chain_command") as mock_command:
            main()
            mock_command.assert_called_once_with(config_path=config_path, verbose=False, device=None)

    with patch("sys.argv", ["trackchain", "truth-fit", "--device", "cpu", str(config_path)]):
        with patch("trackchain.cli.truth_fit_command") as mock_command:
            main()
            mock_command.assert_called_once_with(config_path=config_path, verbose=False, device="cpu")

    with patch("sys.argv", ["trackchain", "profile", str(config_path), "--event", "2"]):
        with patch("trackchain.cli.profile_command") as mock_command:
            main()
            mock_command.assert_called_once_with(config_path=config_path, event=2, trace=None)

    with patch("sys.argv", ["trackchain", "compare", "a", "b"]):
        with patch("trackchain.cli.compare_command") as mock_command:
            main()
            mock_command.assert_called_once_with(run1=Path("a"), run2=Path("b"))


def test_main_without_command(capsys):
    """Test main() prints help and exits without a subcommand."""
    with patch("sys.argv", ["trackchain"]):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 1
    assert "usage" in capsys.readouterr().out


def test_main_compare_missing_runs(tmp_path: Path, capsys):
    """Test compare exits with error when summaries are missing."""
    with patch("sys.argv", ["trackchain", "compare", str(tmp_path / "a"), str(tmp_path / "b")]):
        with pytest.raises(SystemExit) as exc_info:
            main()

    assert exc_info.value.code == 1
    assert "Summary not found" in capsys.readouterr().err
