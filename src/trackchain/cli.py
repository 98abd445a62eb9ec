"""Command-line interface for the TrackChain pipeline."""

import argparse
import logging
import sys
from pathlib import Path

import yaml
from pydantic import ValidationError

from trackchain.config import PipelineConfig, format_validation_errors
from trackchain.errors import TrackChainError


def configure_logging(verbose: bool = False) -> None:
    """Configure root logging for a CLI command.

    Args:
        verbose: If True, set logging to DEBUG level.
    """
    log_level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def load_config(
    config_path: Path, device: str | None = None, events: int | None = None
) -> PipelineConfig:
    """Load a config file and apply CLI overrides, exiting on failure."""
    if not config_path.exists():
        print(f"Error: Config file not found: {config_path}", file=sys.stderr)
        sys.exit(1)

    try:
        config = PipelineConfig.from_yaml(config_path)
    except (OSError, ValueError, yaml.YAMLError) as e:
        print(f"Error: Failed to load config: {e}", file=sys.stderr)
        sys.exit(1)

    overrides = {}
    if device is not None:
        overrides["accelerator"] = {"device": device}
    if events is not None:
        overrides["input"] = {"events": events}
    if not overrides:
        return config

    data = config.model_dump()
    for section, values in overrides.items():
        data[section].update(values)
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as e:
        print(f"Error: Invalid override:\n{format_validation_errors(e)}", file=sys.stderr)
        sys.exit(1)


def init_config(
    config_path: Path,
    source: str = "synthetic",
    input_dir: str = "",
    output_dir: str = "output",
    events: int = 1,
    device: str = "cpu",
) -> PipelineConfig:
    """Write a configuration file with every option at its default.

    Args:
        config_path: Path where the config YAML will be saved.
        source: Event source, ``synthetic`` or ``csv``.
        input_dir: Input directory for the CSV source.
        output_dir: Output directory for results and the run summary.
        events: Number of events to process.
        device: Device of the accelerator path.

    Returns:
        The generated PipelineConfig.
    """
    try:
        config = PipelineConfig(
            input={"source": source, "directory": input_dir, "events": events},
            accelerator={"device": device},
            output={"directory": output_dir},
        )
    except ValueError as e:
        print(f"Error: Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)

    config_path.parent.mkdir(parents=True, exist_ok=True)
    config.to_yaml(config_path)

    print(f"\n{'=' * 70}")
    print("Configuration Initialization Summary")
    print(f"{'=' * 70}")
    print(f"Event source:  {source}" + (f" ({input_dir})" if input_dir else ""))
    print(f"Events:        {events}")
    print(f"Device:        {device}")
    print(f"Output:        {output_dir}")
    print(f"\nConfig saved to: {config_path}")
    print(f"{'=' * 70}\n")
    return config


def run_command(
    config_path: Path,
    verbose: bool = False,
    device: str | None = None,
    events: int | None = None,
) -> None:
    """Run the dual-path pipeline from a config file.

    Args:
        config_path: Path to the pipeline config YAML file.
        verbose: If True, set logging to DEBUG level.
        device: Optional device override (replaces config.accelerator.device).
        events: Optional event count override.
    """
    configure_logging(verbose)
    config = load_config(config_path, device=device, events=events)

    from trackchain.pipeline import run_pipeline

    try:
        summary = run_pipeline(config)
    except TrackChainError as e:
        print(f"Error: Run aborted: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"\nRun summary: {summary.summary_path}")


def simulate_command(
    output_dir: Path,
    config_path: Path | None = None,
    events: int = 1,
    verbose: bool = False,
) -> None:
    """Write simulated events in the CSV input layout.

    Args:
        output_dir: Directory receiving ``geometry.csv`` and the event files.
        config_path: Optional config whose ``simulation`` section is used.
        events: Number of events to generate.
        verbose: If True, set logging to DEBUG level.
    """
    configure_logging(verbose)
    config = load_config(config_path) if config_path is not None else PipelineConfig()

    from trackchain.io import write_event
    from trackchain.simulation import SyntheticEventSource

    source = SyntheticEventSource(config.simulation, bfield_z=config.seeding.bfield_z)
    skip = config.input.skip
    n_measurements = 0
    for index in range(skip, skip + events):
        event = source.read_event(index)
        write_event(output_dir, event, source.geometry if index == skip else None)
        n_measurements += len(event.measurements)

    print(f"Wrote {events} event(s) ({n_measurements} measurements) to {output_dir}")


def full_chain_command(
    config_path: Path, verbose: bool = False, device: str | None = None
) -> None:
    """Run cells -> track parameters on both paths and compare."""
    configure_logging(verbose)
    config = load_config(config_path, device=device)

    from trackchain.pipeline import run_full_chain

    try:
        summary = run_full_chain(config)
    except TrackChainError as e:
        print(f"Error: Run aborted: {e}", file=sys.stderr)
        sys.exit(1)

    totals = summary.comparison
    print("==> Statistics ... ")
    print(f"- read    {summary.events} events")
    print(f"- created (host)   {summary.host_params} track parameters")
    print(f"- created (device) {summary.device_params} track parameters")
    print(
        f"- params matching rate: {100.0 * totals.match_rate:.2f}% "
        f"({totals.matches}/{totals.reference})"
    )
    print("==> Elapsed times ...")
    print(summary.timing.report())


def truth_fit_command(
    config_path: Path, verbose: bool = False, device: str | None = None
) -> None:
    """Fit truth track candidates on both paths and compare."""
    configure_logging(verbose)
    config = load_config(config_path, device=device)

    from trackchain.pipeline import TruthFittingPipeline

    try:
        TruthFittingPipeline(config).run()
    except TrackChainError as e:
        print(f"Error: Run aborted: {e}", file=sys.stderr)
        sys.exit(1)


def profile_command(config_path: Path, event: int = 0, trace: Path | None = None) -> None:
    """Profile one event and export a Chrome trace.

    Args:
        config_path: Path to the pipeline config YAML file.
        event: Event index to profile.
        trace: Trace output path (default: ``<output>/trace.json``).
    """
    configure_logging()
    config = load_config(config_path)

    from trackchain.profiling import format_report, profile_event

    try:
        report, trace_path = profile_event(config, event=event, trace_path=trace)
    except TrackChainError as e:
        print(f"Error: Profiling failed: {e}", file=sys.stderr)
        sys.exit(1)

    print(format_report(report))
    print(f"\nChrome trace: {trace_path}")


def compare_command(run1: Path, run2: Path) -> None:
    """Compare two run output directories and flag regressions."""
    from trackchain.benchmark import compare_runs, format_comparison

    try:
        result = compare_runs(run1, run2)
    except (FileNotFoundError, ValueError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    print(format_comparison(result))


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "config",
        type=Path,
        help="Path to pipeline config YAML file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )
    parser.add_argument(
        "--device",
        type=str,
        choices=["cpu", "cuda"],
        default=None,
        help="Override device",
    )


def main() -> None:
    """Main entry point for the TrackChain CLI."""
    parser = argparse.ArgumentParser(
        prog="trackchain",
        description="Dual-path (host/device) track reconstruction pipeline with result comparison.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init subcommand
    init_parser = subparsers.add_parser(
        "init",
        help="Generate a default config file",
    )
    init_parser.add_argument(
        "--config",
        type=Path,
        default=Path("config.yaml"),
        help="Path to output config YAML file (default: config.yaml)",
    )
    init_parser.add_argument(
        "--source",
        choices=["synthetic", "csv"],
        default="synthetic",
        help="Event source (default: synthetic)",
    )
    init_parser.add_argument(
        "--input-dir",
        type=str,
        default="",
        help="Input directory for the csv source",
    )
    init_parser.add_argument(
        "--output-dir",
        type=str,
        default="output",
        help="Output directory (default: output)",
    )
    init_parser.add_argument(
        "--events",
        type=int,
        default=1,
        help="Number of events (default: 1)",
    )
    init_parser.add_argument(
        "--device",
        choices=["cpu", "cuda"],
        default="cpu",
        help="Accelerator device (default: cpu)",
    )

    # run subcommand
    run_parser = subparsers.add_parser(
        "run",
        help="Run the dual-path pipeline",
    )
    _add_run_options(run_parser)
    run_parser.add_argument(
        "--events",
        type=int,
        default=None,
        help="Override the number of events",
    )

    # simulate subcommand
    simulate_parser = subparsers.add_parser(
        "simulate",
        help="Write simulated events as CSV input files",
    )
    simulate_parser.add_argument(
        "--output-dir",
        type=Path,
        required=True,
        help="Directory for the generated files",
    )
    simulate_parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Config whose simulation section is used",
    )
    simulate_parser.add_argument(
        "--events",
        type=int,
        default=1,
        help="Number of events (default: 1)",
    )
    simulate_parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose (DEBUG) logging",
    )

    # full-chain subcommand
    full_chain_parser = subparsers.add_parser(
        "full-chain",
        help="Run cells -> track parameters on both paths",
    )
    _add_run_options(full_chain_parser)

    # truth-fit subcommand
    truth_fit_parser = subparsers.add_parser(
        "truth-fit",
        help="Fit truth track candidates on both paths",
    )
    _add_run_options(truth_fit_parser)

    # profile subcommand
    profile_parser = subparsers.add_parser(
        "profile",
        help="Profile one event and export a Chrome trace",
    )
    profile_parser.add_argument(
        "config",
        type=Path,
        help="Path to pipeline config YAML file",
    )
    profile_parser.add_argument(
        "--event",
        type=int,
        default=0,
        help="Event index to profile (default: 0)",
    )
    profile_parser.add_argument(
        "--trace",
        type=Path,
        default=None,
        help="Chrome trace output path (default: <output>/trace.json)",
    )

    # compare subcommand
    compare_parser = subparsers.add_parser(
        "compare",
        help="Compare two runs and flag regressions",
    )
    compare_parser.add_argument(
        "run1",
        type=Path,
        help="Baseline run output directory",
    )
    compare_parser.add_argument(
        "run2",
        type=Path,
        help="Current run output directory",
    )

    args = parser.parse_args()

    # Dispatch
    if args.command == "init":
        init_config(
            config_path=args.config,
            source=args.source,
            input_dir=args.input_dir,
            output_dir=args.output_dir,
            events=args.events,
            device=args.device,
        )
    elif args.command == "run":
        run_command(
            config_path=args.config,
            verbose=args.verbose,
            device=args.device,
            events=args.events,
        )
    elif args.command == "simulate":
        simulate_command(
            output_dir=args.output_dir,
            config_path=args.config,
            events=args.events,
            verbose=args.verbose,
        )
    elif args.command == "full-chain":
        full_chain_command(
            config_path=args.config,
            verbose=args.verbose,
            device=args.device,
        )
    elif args.command == "truth-fit":
        truth_fit_command(
            config_path=args.config,
            verbose=args.verbose,
            device=args.device,
        )
    elif args.command == "profile":
        profile_command(
            config_path=args.config,
            event=args.event,
            trace=args.trace,
        )
    elif args.command == "compare":
        compare_command(run1=args.run1, run2=args.run2)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
