"""Stage timing, profiler capture and profile reports."""

from .analyzer import ProfileReport, StageProfile, analyze_profile, format_report
from .profiler import PipelineProfiler, profile_event
from .timing import TimingInfo

__all__ = [
    "PipelineProfiler",
    "ProfileReport",
    "StageProfile",
    "TimingInfo",
    "analyze_profile",
    "format_report",
    "profile_event",
]
