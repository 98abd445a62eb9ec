"""Run comparison and regression detection from ``summary.json`` files."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path

from tabulate import tabulate

from ..pipeline.context import SUMMARY_FILE

logger = logging.getLogger(__name__)

TIME_PREFIX = "time_ms."
RATE_PREFIX = "match_rate."
COUNT_PREFIX = "count."


@dataclass
class MetricDelta:
    """Delta for a single metric between two runs.

    Attributes:
        metric_name: Name of the metric (e.g., "time_ms.Seeding (device)").
        run1_value: Value from baseline run.
        run2_value: Value from current run.
        absolute_delta: Absolute difference (run2 - run1).
        percent_delta: Percentage change ((run2 - run1) / run1 * 100).
        is_regression: Whether this metric shows a regression.
    """

    metric_name: str
    run1_value: float
    run2_value: float
    absolute_delta: float
    percent_delta: float
    is_regression: bool


@dataclass
class RunComparison:
    """Results from comparing two pipeline runs.

    Attributes:
        run1_id: Baseline run identifier.
        run2_id: Current run identifier.
        metric_deltas: Mapping of metric names to MetricDelta objects.
        regressions: List of metric names that show regressions.
    """

    run1_id: str
    run2_id: str
    metric_deltas: dict[str, MetricDelta]
    regressions: list[str]


def load_summary(run_dir: Path) -> dict:
    """Load ``summary.json`` from a run directory.

    Raises:
        FileNotFoundError: If the summary is missing.
    """
    path = Path(run_dir) / SUMMARY_FILE
    if not path.exists():
        raise FileNotFoundError(f"Summary not found: {path}")
    with open(path) as f:
        return json.load(f)


def compare_runs(
    run1_dir: Path,
    run2_dir: Path,
    time_threshold: float = 0.10,
    rate_threshold: float = 0.01,
) -> RunComparison:
    """Compare two pipeline runs and detect regressions.

    Timing metrics regress when they grow by more than ``time_threshold``;
    match rates regress when they drop by more than ``rate_threshold``
    (relative). Counts are reported but never flagged.

    Args:
        run1_dir: Output directory of the baseline run.
        run2_dir: Output directory of the current run.
        time_threshold: Relative threshold for timing metrics.
        rate_threshold: Relative threshold for match rates.

    Returns:
        RunComparison with per-metric deltas and regression flags.

    Raises:
        FileNotFoundError: If summary.json is missing from either directory.
        ValueError: If run directories are identical.
    """
    run1_dir = Path(run1_dir)
    run2_dir = Path(run2_dir)

    if run1_dir.resolve() == run2_dir.resolve():
        raise ValueError("Cannot compare a run to itself")

    run1_data = load_summary(run1_dir)
    run2_data = load_summary(run2_dir)

    run1_metrics = flatten_metrics(run1_data)
    run2_metrics = flatten_metrics(run2_data)
    thresholds = _default_thresholds(run1_metrics, time_threshold, rate_threshold)
    regression_results = detect_regressions(run1_metrics, run2_metrics, thresholds)

    metric_deltas = {}
    regressions = []
    for metric_name, (baseline_val, current_val, is_regression) in regression_results.items():
        absolute_delta = current_val - baseline_val
        percent_delta = (absolute_delta / baseline_val * 100.0) if baseline_val != 0 else 0.0
        metric_deltas[metric_name] = MetricDelta(
            metric_name=metric_name,
            run1_value=baseline_val,
            run2_value=current_val,
            absolute_delta=absolute_delta,
            percent_delta=percent_delta,
            is_regression=is_regression,
        )
        if is_regression:
            regressions.append(metric_name)

    if regressions:
        logger.warning("%d regression(s) between runs", len(regressions))
    return RunComparison(
        run1_id=run1_data["run_id"],
        run2_id=run2_data["run_id"],
        metric_deltas=metric_deltas,
        regressions=regressions,
    )


def detect_regressions(
    baseline: dict[str, float],
    current: dict[str, float],
    thresholds: dict[str, float],
) -> dict[str, tuple[float, float, bool]]:
    """Detect regressions by comparing current metrics to baseline.

    Regression rules:
    - Timing metrics (``time_ms.*``): regression if current > baseline by threshold
    - Match rates (``match_rate.*``): regression if current < baseline by threshold
    - Everything else: never a regression

    Args:
        baseline: Baseline metric values.
        current: Current metric values.
        thresholds: Per-metric relative thresholds.

    Returns:
        Dict mapping metric name to (baseline_val, current_val, is_regression).
    """
    regressions = {}

    for metric, baseline_val in baseline.items():
        if metric not in current:
            continue

        current_val = current[metric]
        threshold = thresholds.get(metric, 0.10)

        if baseline_val == 0:
            is_regression = False
        elif metric.startswith(TIME_PREFIX):
            is_regression = (current_val - baseline_val) / baseline_val > threshold
        elif metric.startswith(RATE_PREFIX):
            is_regression = (baseline_val - current_val) / baseline_val > threshold
        else:
            is_regression = False

        regressions[metric] = (baseline_val, current_val, is_regression)

    return regressions


def format_comparison(result: RunComparison) -> str:
    """Format comparison result as ASCII table.

    Args:
        result: Comparison result to format.

    Returns:
        ASCII table string.
    """
    headers = ["Metric", "Baseline", "Current", "Delta", "% Delta", "Status"]
    rows = []
    for metric_name, delta in result.metric_deltas.items():
        rows.append(
            [
                metric_name,
                f"{delta.run1_value:.4g}",
                f"{delta.run2_value:.4g}",
                f"{delta.absolute_delta:+.4g}",
                f"{delta.percent_delta:+.1f}%",
                "REGRESSION" if delta.is_regression else "OK",
            ]
        )

    table = tabulate(rows, headers=headers, tablefmt="grid")

    header = f"\nRun Comparison: {result.run1_id} -> {result.run2_id}\n"
    header += "=" * 80 + "\n"

    if result.regressions:
        summary = f"\nRegressions detected: {len(result.regressions)}\n"
        summary += "  - " + "\n  - ".join(result.regressions) + "\n"
    else:
        summary = "\nNo regressions detected.\n"

    return header + table + "\n" + summary


def flatten_metrics(run_data: dict) -> dict[str, float]:
    """Flatten a run summary into ``prefix.name -> value``.

    Timings are per event, in milliseconds, so runs over different event
    counts stay comparable.

    Args:
        run_data: Loaded summary.json data.

    Returns:
        Flat dict mapping metric name to value.
    """
    metrics = {}
    statistics = run_data.get("statistics", {})
    events = statistics.get("events", 0) or 1

    for label, seconds in run_data.get("timing", {}).items():
        metrics[f"{TIME_PREFIX}{label}"] = 1000.0 * seconds / events

    for label, comparison in statistics.get("comparisons", {}).items():
        metrics[f"{RATE_PREFIX}{label}"] = comparison["match_rate"]

    for path, counts in statistics.get("results", {}).items():
        for kind, n in counts.items():
            metrics[f"{COUNT_PREFIX}{path}.{kind}"] = float(n)

    return metrics


def _default_thresholds(
    metrics: dict[str, float], time_threshold: float, rate_threshold: float
) -> dict[str, float]:
    thresholds = {}
    for metric_name in metrics:
        if metric_name.startswith(RATE_PREFIX):
            thresholds[metric_name] = rate_threshold
        else:
            thresholds[metric_name] = time_threshold
    return thresholds
