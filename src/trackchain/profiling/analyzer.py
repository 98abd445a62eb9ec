"""Profile result parsing, sorting, and reporting."""

from __future__ import annotations

from dataclasses import dataclass

import torch
from tabulate import tabulate


@dataclass
class StageProfile:
    """Profiler metrics for one timed label."""

    name: str
    cpu_time_ms: float
    cuda_time_ms: float
    self_cpu_time_ms: float
    self_cuda_time_ms: float
    count: int


@dataclass
class ProfileReport:
    """Aggregated profile report with bottleneck identification."""

    stages: dict[str, StageProfile]
    top_bottlenecks: list[tuple[str, float]]  # (name, time_ms)
    total_time_ms: float
    device: str


def _device_time(evt, attr: str, legacy_attr: str) -> float:
    # older torch releases only have the cuda_* names
    value = getattr(evt, attr, None)
    if value is None:
        value = getattr(evt, legacy_attr, 0.0)
    return value


def analyze_profile(prof: torch.profiler.profile, stage_names: list[str]) -> ProfileReport:
    """Extract per-label metrics from a finished profiler run.

    Args:
        prof: Completed torch.profiler.profile instance.
        stage_names: ``record_function`` labels to report (timer labels).

    Returns:
        ProfileReport with per-label metrics and top 3 bottlenecks.
    """
    stages = {}
    total_time = 0.0
    wanted = set(stage_names)
    for evt in prof.key_averages():
        if evt.key not in wanted:
            continue
        stage = StageProfile(
            name=evt.key,
            cpu_time_ms=evt.cpu_time_total / 1000.0,
            cuda_time_ms=_device_time(evt, "device_time_total", "cuda_time_total") / 1000.0,
            self_cpu_time_ms=evt.self_cpu_time_total / 1000.0,
            self_cuda_time_ms=_device_time(
                evt, "self_device_time_total", "self_cuda_time_total"
            )
            / 1000.0,
            count=evt.count,
        )
        stages[evt.key] = stage
        total_time += stage.cpu_time_ms

    ordered = {name: stages[name] for name in stage_names if name in stages}
    bottlenecks = sorted(
        ((name, s.cpu_time_ms + s.cuda_time_ms) for name, s in ordered.items()),
        key=lambda x: x[1],
        reverse=True,
    )
    device = "cuda" if any(s.cuda_time_ms > 0 for s in ordered.values()) else "cpu"
    return ProfileReport(
        stages=ordered,
        top_bottlenecks=bottlenecks[:3],
        total_time_ms=total_time,
        device=device,
    )


def format_report(report: ProfileReport) -> str:
    """Format ProfileReport as human-readable ASCII table.

    Args:
        report: ProfileReport to format.

    Returns:
        Formatted report string with stage breakdown and bottleneck highlights.
    """
    lines = []
    lines.append(f"Profile Report (device: {report.device})")
    lines.append(f"Total time: {report.total_time_ms:.2f} ms")
    lines.append("")

    table_data = []
    for name, stage in report.stages.items():
        table_data.append(
            [
                name,
                stage.count,
                f"{stage.cpu_time_ms:.2f}",
                f"{stage.cuda_time_ms:.2f}",
                f"{stage.cpu_time_ms + stage.cuda_time_ms:.2f}",
            ]
        )

    headers = ["Stage", "Calls", "CPU (ms)", "CUDA (ms)", "Total (ms)"]
    lines.append(tabulate(table_data, headers=headers, tablefmt="grid"))
    lines.append("")

    lines.append("Top 3 Bottlenecks:")
    for i, (name, time_ms) in enumerate(report.top_bottlenecks, 1):
        lines.append(f"  {i}. {name}: {time_ms:.2f} ms")

    return "\n".join(lines)
