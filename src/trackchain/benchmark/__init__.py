"""Comparison of two pipeline runs and regression detection."""

from .comparison import (
    MetricDelta,
    RunComparison,
    compare_runs,
    detect_regressions,
    format_comparison,
)

__all__ = [
    "compare_runs",
    "detect_regressions",
    "format_comparison",
    "MetricDelta",
    "RunComparison",
]
