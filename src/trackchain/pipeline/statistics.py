"""Run-level counters and the end-of-run text summary."""

from dataclasses import dataclass, field

from ..comparison import ComparisonResult
from ..profiling.timing import TimingInfo

PATHS = ("host", "device")
RESULT_KINDS = ("seeds", "params", "candidates", "tracks")


@dataclass
class ComparisonTotals:
    """Comparison counts accumulated over the run for one collection."""

    matches: int = 0
    reference: int = 0
    candidate: int = 0

    def add(self, result: ComparisonResult) -> None:
        self.matches += result.matches
        self.reference += result.reference_size
        self.candidate += result.candidate_size

    @property
    def match_rate(self) -> float:
        if self.reference == 0:
            return 1.0 if self.candidate == 0 else 0.0
        return self.matches / self.reference


@dataclass
class RunStatistics:
    """Input sizes and per-path result counts over all processed events."""

    events: int = 0
    cells: int = 0
    measurements: int = 0
    spacepoints: int = 0
    modules: int = 0
    results: dict[str, dict[str, int]] = field(
        default_factory=lambda: {path: dict.fromkeys(RESULT_KINDS, 0) for path in PATHS}
    )
    comparisons: dict[str, ComparisonTotals] = field(default_factory=dict)

    def add_counts(self, path: str, counts: dict[str, int]) -> None:
        for kind, n in counts.items():
            self.results[path][kind] += n

    def add_comparison(self, result: ComparisonResult) -> None:
        self.comparisons.setdefault(result.label, ComparisonTotals()).add(result)

    def to_dict(self) -> dict:
        return {
            "events": self.events,
            "cells": self.cells,
            "measurements": self.measurements,
            "spacepoints": self.spacepoints,
            "modules": self.modules,
            "results": {path: dict(counts) for path, counts in self.results.items()},
            "comparisons": {
                label: {
                    "matches": totals.matches,
                    "reference": totals.reference,
                    "candidate": totals.candidate,
                    "match_rate": totals.match_rate,
                }
                for label, totals in self.comparisons.items()
            },
        }


def format_summary(stats: RunStatistics, timing: TimingInfo, mirrored: list[str]) -> str:
    """Human-readable end-of-run report: counts, match rates, timing."""
    lines = ["==> Statistics ... "]
    lines.append(f"- read    {stats.events} events")
    lines.append(f"- read    {stats.spacepoints} spacepoints from {stats.modules} modules")
    lines.append(f"- read    {stats.measurements} measurements")
    if stats.cells:
        lines.append(f"- read    {stats.cells} cells")
    names = {
        "seeds": "seeds",
        "params": "track parameters",
        "candidates": "found tracks",
        "tracks": "fitted tracks",
    }
    stage_of = {"seeds": "seeding", "params": "params", "candidates": "finding", "tracks": "fitting"}
    for kind, label in names.items():
        if stage_of[kind] in mirrored:
            lines.append(f"- created (host)   {stats.results['host'][kind]} {label}")
        lines.append(f"- created (device) {stats.results['device'][kind]} {label}")
    for label, totals in stats.comparisons.items():
        lines.append(
            f"- {label} matching rate: {100.0 * totals.match_rate:.2f}% "
            f"({totals.matches}/{totals.reference})"
        )
    lines.append("==> Elapsed times ...")
    lines.append(timing.report())
    return "\n".join(lines)
