"""Cumulative wall-time accounting per stage label."""

import logging
import time
from collections import defaultdict
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from tabulate import tabulate
from torch.profiler import record_function

logger = logging.getLogger(__name__)


class TimingInfo:
    """Label -> cumulative duration, in first-use order.

    Every increment is also attributed to the current event (see
    ``begin_event``), so the cumulative total of a label always equals the sum
    of its per-event increments. Not thread safe: one host thread owns it.
    """

    def __init__(self):
        self._totals: dict[str, float] = {}
        self._per_event: dict[str, dict[int, float]] = defaultdict(dict)
        self._event: int = -1

    def begin_event(self, index: int) -> None:
        """Attribute subsequent increments to event ``index``."""
        self._event = index

    def add(self, label: str, seconds: float) -> None:
        self._totals[label] = self._totals.get(label, 0.0) + seconds
        events = self._per_event[label]
        events[self._event] = events.get(self._event, 0.0) + seconds

    @contextmanager
    def timer(self, label: str, synchronize: Callable[[], None] | None = None) -> Iterator[None]:
        """Time a scope and add it to ``label``.

        Args:
            label: Timing label.
            synchronize: Called at the end of the scope, before the clock is
                read. Pass ``stream.synchronize`` to time device completion
                instead of issue.
        """
        start = time.perf_counter()
        with record_function(label):
            yield
            if synchronize is not None:
                synchronize()
        self.add(label, time.perf_counter() - start)

    @property
    def labels(self) -> list[str]:
        return list(self._totals)

    @property
    def totals(self) -> dict[str, float]:
        return dict(self._totals)

    @property
    def total(self) -> float:
        """Grand total: the sum of every label."""
        return sum(self._totals.values())

    def increments(self, label: str) -> dict[int, float]:
        """Per-event increments of one label."""
        return dict(self._per_event.get(label, {}))

    def merge(self, other: "TimingInfo") -> None:
        """Add another instance's increments (e.g. a copied algorithm's)."""
        for label, events in other._per_event.items():
            for event, seconds in events.items():
                self._totals[label] = self._totals.get(label, 0.0) + seconds
                mine = self._per_event[label]
                mine[event] = mine.get(event, 0.0) + seconds

    def to_dict(self) -> dict[str, float]:
        return {**self._totals, "Total": self.total}

    def report(self) -> str:
        """Render labels and the grand total as a grid (milliseconds)."""
        total = self.total
        rows = [
            [label, f"{seconds * 1000.0:.3f}", f"{100.0 * seconds / total:.1f}%" if total else "-"]
            for label, seconds in self._totals.items()
        ]
        rows.append(["Total", f"{total * 1000.0:.3f}", "100.0%" if total else "-"])
        return tabulate(rows, headers=["Stage", "Time (ms)", "Share"], tablefmt="grid")
