"""Truth-based performance writers for seeding, finding and fitting.

Each writer consumes the final result collection of one stage for one event
together with the event truth map, appends one scoring row per truth particle
(or per fitted track) and, on ``finalize()``, writes a CSV file and returns a
human-readable summary.
"""

import csv
import logging
import math
from collections import Counter
from pathlib import Path
from typing import ClassVar

import numpy as np

from .edm import ContainerElement, Seed
from .io import EventData

logger = logging.getLogger(__name__)

# A track matches a particle when at least this share of its hits belong to it.
MATCHING_RATIO = 0.5
# Particles with fewer hits are not expected to be reconstructed.
MIN_PARTICLE_HITS = 3


def majority_particle(particle_ids: list[int | None]) -> tuple[int | None, float]:
    """Most frequent particle of a hit list and its share of the hits.

    Hits without truth count against the purity but never win.
    """
    known = [p for p in particle_ids if p is not None]
    if not known:
        return None, 0.0
    particle, count = Counter(known).most_common(1)[0]
    return particle, count / len(particle_ids)


def _hit_counts(event: EventData) -> Counter:
    return Counter(event.truth.values())


class PerformanceWriter:
    """Accumulates scoring rows and writes them as ``<directory>/<name>.csv``."""

    name: ClassVar[str] = ""
    columns: ClassVar[tuple[str, ...]] = ()

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)
        self.rows: list[tuple] = []
        self.events = 0

    def _skip(self, event: EventData) -> bool:
        if event.has_truth:
            self.events += 1
            return False
        logger.debug("%s: event %d has no truth, skipped", self.name, event.index)
        return True

    def summary(self) -> str:
        raise NotImplementedError

    def finalize(self) -> str:
        """Write the accumulated rows and return the summary."""
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / f"{self.name}.csv"
        with open(path, "w", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(self.columns)
            writer.writerows(self.rows)
        logger.info("%s performance written to %s", self.name, path)
        return self.summary()


class SeedingPerformanceWriter(PerformanceWriter):
    """Seeding efficiency and fake rate.

    A seed is true when its three spacepoints belong to the same particle. A
    reconstructable particle is found when at least one true seed points to it.
    """

    name = "seeding"
    columns = ("event", "particle_id", "pt", "eta", "n_hits", "n_seeds")

    def __init__(self, directory: str | Path):
        super().__init__(directory)
        self.n_seeds = 0
        self.n_fake = 0

    def write(self, event: EventData, seeds: list[Seed]) -> None:
        if self._skip(event):
            return
        particle_of_sp = [
            event.truth.get(event.measurements[sp.measurement_link].measurement_id) for sp in event.spacepoints
        ]
        seeds_per_particle: Counter = Counter()
        for seed in seeds:
            ids = {particle_of_sp[seed.spB_link], particle_of_sp[seed.spM_link], particle_of_sp[seed.spT_link]}
            if len(ids) == 1 and None not in ids:
                seeds_per_particle[ids.pop()] += 1
            else:
                self.n_fake += 1
        self.n_seeds += len(seeds)

        hits = _hit_counts(event)
        for p in event.particles:
            if hits[p.particle_id] < MIN_PARTICLE_HITS:
                continue
            self.rows.append(
                (event.index, p.particle_id, p.pt, p.eta, hits[p.particle_id], seeds_per_particle[p.particle_id])
            )

    def summary(self) -> str:
        found = sum(1 for row in self.rows if row[5] > 0)
        matched = self.n_seeds - self.n_fake
        lines = [f"Seeding performance ({self.events} events)"]
        lines.append(f"- efficiency: {_percent(found, len(self.rows))} ({found}/{len(self.rows)} particles)")
        lines.append(f"- fake rate:  {_percent(self.n_fake, self.n_seeds)} ({self.n_fake}/{self.n_seeds} seeds)")
        if found:
            lines.append(f"- duplicate rate: {(matched - found) / found:.3f} extra seeds per particle")
        return "\n".join(lines)


class FindingPerformanceWriter(PerformanceWriter):
    """Track-finding efficiency, fake rate and purity."""

    name = "finding"
    columns = ("event", "particle_id", "pt", "eta", "n_hits", "n_tracks", "best_purity")

    def __init__(self, directory: str | Path, matching_ratio: float = MATCHING_RATIO):
        super().__init__(directory)
        self.matching_ratio = matching_ratio
        self.n_tracks = 0
        self.n_fake = 0

    def write(self, event: EventData, candidates: list[ContainerElement]) -> None:
        if self._skip(event):
            return
        tracks_per_particle: Counter = Counter()
        best_purity: dict[int, float] = {}
        for element in candidates:
            ids = [event.truth.get(m.measurement_id) for m in element.items]
            particle, purity = majority_particle(ids)
            if particle is None or purity < self.matching_ratio:
                self.n_fake += 1
                continue
            tracks_per_particle[particle] += 1
            best_purity[particle] = max(best_purity.get(particle, 0.0), purity)
        self.n_tracks += len(candidates)

        hits = _hit_counts(event)
        for p in event.particles:
            if hits[p.particle_id] < MIN_PARTICLE_HITS:
                continue
            self.rows.append(
                (
                    event.index,
                    p.particle_id,
                    p.pt,
                    p.eta,
                    hits[p.particle_id],
                    tracks_per_particle[p.particle_id],
                    best_purity.get(p.particle_id, 0.0),
                )
            )

    def summary(self) -> str:
        found = [row for row in self.rows if row[5] > 0]
        lines = [f"Finding performance ({self.events} events)"]
        lines.append(f"- efficiency: {_percent(len(found), len(self.rows))} ({len(found)}/{len(self.rows)} particles)")
        lines.append(f"- fake rate:  {_percent(self.n_fake, self.n_tracks)} ({self.n_fake}/{self.n_tracks} tracks)")
        if found:
            lines.append(f"- mean purity: {np.mean([row[6] for row in found]):.3f}")
        return "\n".join(lines)


class FittingPerformanceWriter(PerformanceWriter):
    """Residuals of fitted ``theta`` and ``qop`` against the matched particle."""

    name = "fitting"
    columns = (
        "event",
        "particle_id",
        "theta",
        "theta_truth",
        "qop",
        "qop_truth",
        "chi2",
        "ndf",
    )

    def __init__(self, directory: str | Path, matching_ratio: float = MATCHING_RATIO):
        super().__init__(directory)
        self.matching_ratio = matching_ratio
        self.unmatched = 0

    def write(self, event: EventData, tracks: list[ContainerElement]) -> None:
        if self._skip(event):
            return
        particles = {p.particle_id: p for p in event.particles}
        for element in tracks:
            ids = [event.truth.get(state.measurement_link) for state in element.items]
            particle_id, purity = majority_particle(ids)
            if particle_id not in particles or purity < self.matching_ratio:
                self.unmatched += 1
                continue
            p = particles[particle_id]
            fit = element.header
            self.rows.append(
                (
                    event.index,
                    particle_id,
                    fit.theta,
                    2.0 * math.atan(math.exp(-p.eta)),
                    fit.qop,
                    p.charge / (p.pt * math.cosh(p.eta)),
                    fit.chi2,
                    fit.ndf,
                )
            )

    def summary(self) -> str:
        lines = [f"Fitting performance ({self.events} events, {len(self.rows)} matched tracks)"]
        if self.rows:
            rows = np.array(self.rows, dtype=float)
            d_theta = rows[:, 2] - rows[:, 3]
            d_qop = rows[:, 4] - rows[:, 5]
            lines.append(f"- theta residual: mean {d_theta.mean():.3e}, rms {np.sqrt(np.mean(d_theta**2)):.3e}")
            lines.append(f"- qop residual:   mean {d_qop.mean():.3e}, rms {np.sqrt(np.mean(d_qop**2)):.3e}")
            ndf = rows[:, 7]
            valid = ndf > 0
            if valid.any():
                lines.append(f"- mean chi2/ndf:  {np.mean(rows[valid, 6] / ndf[valid]):.3f}")
        if self.unmatched:
            lines.append(f"- unmatched tracks: {self.unmatched}")
        return "\n".join(lines)


def _percent(n: int, d: int) -> str:
    return f"{100.0 * n / d:.2f}%" if d else "n/a"
