"""Advisory comparison of host and device result collections.

For every element of the reference collection the comparator looks for an
equivalent element in the candidate collection and reports how many were
found. Identifier and link fields must match exactly; float fields match
within a relative tolerance, with ``phi`` compared modulo 2*pi. The result is
diagnostic only and never changes control flow.
"""

import logging
import math
from dataclasses import asdict, dataclass, fields
from typing import Callable, Protocol, runtime_checkable

import numpy as np
from scipy.optimize import linear_sum_assignment

from .edm import ContainerElement, Record

logger = logging.getLogger(__name__)

ANGLE_FIELDS = frozenset({"phi"})

Predicate = Callable[[object, object], bool]


def close(a: float, b: float, tolerance: float) -> bool:
    """``|a - b| <= tolerance * max(|a|, |b|, 1)``."""
    return abs(a - b) <= tolerance * max(abs(a), abs(b), 1.0)


def close_angle(a: float, b: float, tolerance: float) -> bool:
    diff = abs(math.remainder(a - b, 2.0 * math.pi))
    return diff <= tolerance * max(abs(a), abs(b), 1.0)


def record_predicate(record_type: type[Record], tolerance: float) -> Predicate:
    """Equivalence predicate for one record type.

    Args:
        record_type: Record class to compare.
        tolerance: Relative tolerance for float fields.

    Returns:
        Callable ``(a, b) -> bool``.
    """
    checks = []
    for f in fields(record_type):
        if f.type is int or f.type == "int":
            checks.append((f.name, None))
        elif f.name in ANGLE_FIELDS:
            checks.append((f.name, close_angle))
        else:
            checks.append((f.name, close))

    def equivalent(a, b) -> bool:
        for name, compare in checks:
            va, vb = getattr(a, name), getattr(b, name)
            if compare is None:
                if va != vb:
                    return False
            elif not compare(va, vb, tolerance):
                return False
        return True

    return equivalent


def items_predicate(item_type: type[Record], tolerance: float) -> Predicate:
    """Containers match when their items match pairwise in order.

    Headers are ignored. Track candidates are compared this way: two
    candidates holding the same measurements are the same candidate.
    """
    item_eq = record_predicate(item_type, tolerance)

    def equivalent(a: ContainerElement, b: ContainerElement) -> bool:
        if len(a.items) != len(b.items):
            return False
        return all(item_eq(x, y) for x, y in zip(a.items, b.items))

    return equivalent


def container_predicate(
    header_type: type[Record], item_type: type[Record], tolerance: float
) -> Predicate:
    """Containers match when headers match and items match pairwise in order."""
    header_eq = record_predicate(header_type, tolerance)
    items_eq = items_predicate(item_type, tolerance)

    def equivalent(a: ContainerElement, b: ContainerElement) -> bool:
        return header_eq(a.header, b.header) and items_eq(a, b)

    return equivalent


@runtime_checkable
class MatchStrategy(Protocol):
    """Counts reference elements with an equivalent candidate element."""

    name: str

    def count_matches(self, reference: list, candidate: list, predicate: Predicate) -> int: ...


class FirstMatchStrategy:
    """Nested scan stopping at the first equivalent candidate.

    One candidate may satisfy several reference elements; there is no
    multiplicity bookkeeping. O(n * m).
    """

    name = "first_match"

    def count_matches(self, reference: list, candidate: list, predicate: Predicate) -> int:
        matches = 0
        for ref in reference:
            for cand in candidate:
                if predicate(ref, cand):
                    matches += 1
                    break
        return matches


class AssignmentMatchStrategy:
    """One-to-one matching via a maximum bipartite assignment."""

    name = "assignment"

    def count_matches(self, reference: list, candidate: list, predicate: Predicate) -> int:
        if not reference or not candidate:
            return 0
        matrix = np.array(
            [[predicate(ref, cand) for cand in candidate] for ref in reference], dtype=bool
        )
        rows, cols = linear_sum_assignment(matrix.astype(np.float64), maximize=True)
        return int(matrix[rows, cols].sum())


STRATEGIES = {
    FirstMatchStrategy.name: FirstMatchStrategy,
    AssignmentMatchStrategy.name: AssignmentMatchStrategy,
}


def get_strategy(name: str) -> MatchStrategy:
    try:
        return STRATEGIES[name]()
    except KeyError:
        raise ValueError(
            f"Unknown match strategy: {name!r}. Valid strategies: {list(STRATEGIES)}"
        ) from None


def match_rate(matches: int, n_reference: int, n_candidate: int) -> float:
    """Fraction of reference elements matched.

    An empty reference scores 1.0 against an empty candidate and 0.0 otherwise.
    """
    if n_reference == 0:
        return 1.0 if n_candidate == 0 else 0.0
    return matches / n_reference


@dataclass
class ComparisonResult:
    """Outcome of one host/device comparison.

    Attributes:
        label: Collection name (e.g. ``"seeds"``).
        reference_size: Number of reference (host) elements.
        candidate_size: Number of candidate (device) elements.
        matches: Reference elements with an equivalent candidate.
        match_rate: ``matches / reference_size`` (see ``match_rate``).
        strategy: Name of the strategy used.
    """

    label: str
    reference_size: int
    candidate_size: int
    matches: int
    match_rate: float
    strategy: str

    def to_dict(self) -> dict:
        return asdict(self)


class Comparator:
    """Compare reference and candidate collections of one kind.

    Args:
        label: Collection name used in logs and reports.
        predicate: Element equivalence predicate.
        strategy: Matching strategy (first match by default).
        expected_match_rate: Rates below this are logged as warnings.
    """

    def __init__(
        self,
        label: str,
        predicate: Predicate,
        strategy: MatchStrategy | None = None,
        expected_match_rate: float = 0.99,
    ):
        self.label = label
        self.predicate = predicate
        self.strategy = strategy or FirstMatchStrategy()
        self.expected_match_rate = expected_match_rate

    @classmethod
    def for_records(cls, record_type: type[Record], tolerance: float, **kwargs) -> "Comparator":
        return cls(record_type.kind, record_predicate(record_type, tolerance), **kwargs)

    @classmethod
    def for_container(
        cls,
        label: str,
        header_type: type[Record],
        item_type: type[Record],
        tolerance: float,
        **kwargs,
    ) -> "Comparator":
        return cls(label, container_predicate(header_type, item_type, tolerance), **kwargs)

    @classmethod
    def for_items(cls, label: str, item_type: type[Record], tolerance: float, **kwargs) -> "Comparator":
        return cls(label, items_predicate(item_type, tolerance), **kwargs)

    def compare(self, reference: list, candidate: list) -> ComparisonResult:
        matches = self.strategy.count_matches(reference, candidate, self.predicate)
        rate = match_rate(matches, len(reference), len(candidate))
        result = ComparisonResult(
            label=self.label,
            reference_size=len(reference),
            candidate_size=len(candidate),
            matches=matches,
            match_rate=rate,
            strategy=self.strategy.name,
        )
        if rate < self.expected_match_rate:
            logger.warning(
                "%s matching rate %.2f%% below expected %.2f%% (%d/%d host, %d device)",
                self.label,
                100.0 * rate,
                100.0 * self.expected_match_rate,
                matches,
                len(reference),
                len(candidate),
            )
        else:
            logger.info("%s matching rate: %.2f%%", self.label, 100.0 * rate)
        return result
