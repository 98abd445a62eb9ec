"""Tests for profiler capture and profile reports."""

import json

from trackchain.profiling import (
    ProfileReport,
    StageProfile,
    format_report,
    profile_event,
)


def test_profile_event_cpu(make_config, tmp_path):
    """Test profiling one simulated event on the CPU."""
    config = make_config(simulation={"n_vertices": 1, "tracks_per_vertex": 4})
    report, trace_path = profile_event(config, event=0)

    assert trace_path == tmp_path / "output" / "trace.json"
    assert trace_path.exists()
    with open(trace_path) as f:
        assert "traceEvents" in json.load(f)

    assert report.device == "cpu"
    assert "Seeding (device)" in report.stages
    assert report.stages["Seeding (device)"].count == 1
    assert len(report.top_bottlenecks) <= 3


def test_format_report():
    """Test the report table and bottleneck list."""
    report = ProfileReport(
        stages={
            "Seeding (device)": StageProfile("Seeding (device)", 4.0, 1.0, 2.0, 1.0, 1),
            "Track finding (device)": StageProfile("Track finding (device)", 2.0, 0.0, 1.0, 0.0, 1),
        },
        top_bottlenecks=[("Seeding (device)", 5.0), ("Track finding (device)", 2.0)],
        total_time_ms=6.0,
        device="cuda",
    )
    text = format_report(report)
    assert "Profile Report (device: cuda)" in text
    assert "Total time: 6.00 ms" in text
    assert "1. Seeding (device): 5.00 ms" in text
