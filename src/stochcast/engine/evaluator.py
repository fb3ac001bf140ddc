"""Event tree evaluation over batches of scenario paths.

Every node is evaluated for a whole batch at once and yields, per scenario,
the first period at which it holds (at or after a per-scenario start period)
plus an inclusion mask. A trigger equal to the path length means "never".
Conditional nodes are the only ones that narrow the inclusion mask.
"""

import logging
from typing import Iterator, Mapping

import numpy as np

from stochcast.errors import ValidationError
from stochcast.schemas import (
    AtLeastKEvent,
    CompoundEvent,
    ConditionalEvent,
    EventDecomposition,
    ProbabilityEstimate,
    SequenceEvent,
    ThresholdBreach,
)

logger = logging.getLogger(__name__)

Z_90 = 1.645
Z_95 = 1.96


# --- Validation ---


def iter_thresholds(event) -> Iterator[ThresholdBreach]:
    """Leaves of an event tree in definition order."""
    if isinstance(event, ThresholdBreach):
        yield event
    elif isinstance(event, ConditionalEvent):
        yield from iter_thresholds(event.consequent)
        yield from iter_thresholds(event.antecedent)
    else:
        for child in event.children:
            yield from iter_thresholds(child)


def validate_event(event, index: Mapping[str, int], horizon: int):
    """Reject references to unknown variables and bounds beyond the horizon."""
    errors = []
    for leaf in iter_thresholds(event):
        if leaf.variable not in index:
            errors.append(f"event references unknown variable {leaf.variable!r}")
        if leaf.by_period > horizon:
            errors.append(f"by_period {leaf.by_period} exceeds horizon {horizon} for {leaf.variable!r}")
    if errors:
        raise ValidationError(
            f"Invalid event: {errors[0]}",
            errors=[{"loc": ["event"], "msg": msg, "type": "value_error"} for msg in errors],
        )


# --- Evaluation ---


def evaluate_node(
    event, paths: np.ndarray, index: Mapping[str, int], start: np.ndarray
) -> tuple[np.ndarray, np.ndarray]:
    """First trigger period and inclusion mask of ``event`` for each scenario.

    Args:
        event: Event tree node.
        paths: Batch of paths, shape (batch, variables, periods).
        index: Variable id/code to column in ``paths``.
        start: Earliest period each scenario may trigger at.

    Returns:
        (trigger, included): trigger is ``paths.shape[2]`` where the node never holds.
    """
    never = paths.shape[2]
    batch = paths.shape[0]

    if isinstance(event, ThresholdBreach):
        values = paths[:, index[event.variable], :]
        holds = event.comparator.apply(values, event.bound)
        if event.window == "at":
            ok = holds[:, event.by_period] & (start <= event.by_period)
            trigger = np.where(ok, event.by_period, never)
        else:
            periods = np.arange(never)
            in_window = (periods[None, :] >= start[:, None]) & (periods[None, :] <= event.by_period)
            hits = holds & in_window
            trigger = np.where(hits.any(axis=1), hits.argmax(axis=1), never)
        return trigger, np.ones(batch, dtype=bool)

    if isinstance(event, ConditionalEvent):
        trigger, included = evaluate_node(event.consequent, paths, index, start)
        given, given_included = evaluate_node(event.antecedent, paths, index, start)
        return trigger, included & given_included & (given < never)

    if isinstance(event, SequenceEvent):
        included = np.ones(batch, dtype=bool)
        current = start
        previous = None
        for child in event.children:
            trigger, child_included = evaluate_node(child, paths, index, current)
            if previous is not None and event.max_gap is not None:
                trigger = np.where(trigger - previous <= event.max_gap, trigger, never)
            included &= child_included
            previous = trigger
            current = trigger
        return previous, included

    triggers = []
    included = np.ones(batch, dtype=bool)
    for child in event.children:
        trigger, child_included = evaluate_node(child, paths, index, start)
        triggers.append(trigger)
        included &= child_included
    stacked = np.stack(triggers, axis=1)

    if isinstance(event, CompoundEvent):
        if event.operator == "AND":
            return stacked.max(axis=1), included
        return stacked.min(axis=1), included

    if isinstance(event, AtLeastKEvent):
        return np.sort(stacked, axis=1)[:, event.k - 1], included

    raise ValidationError(f"Unknown event node {type(event).__name__}")


def evaluate_event(event, paths: np.ndarray, index: Mapping[str, int]) -> tuple[np.ndarray, np.ndarray]:
    """(occurred, included) masks for each scenario in the batch."""
    start = np.zeros(paths.shape[0], dtype=np.int64)
    trigger, included = evaluate_node(event, paths, index, start)
    return trigger < paths.shape[2], included


# --- Tallying ---


def binomial_interval(p: float, n: int, z: float) -> tuple[float, float]:
    """Normal-approximation interval for a proportion, clipped to [0, 1]."""
    if n <= 0:
        return 0.0, 1.0
    half = z * np.sqrt(p * (1 - p) / n)
    return float(max(0.0, p - half)), float(min(1.0, p + half))


class EventTally:
    """Hit and denominator counts for one event, plus per-variable leaf hits.

    Args:
        event: Event tree.
        index: Variable id/code to path column.
    """

    def __init__(self, event, index: Mapping[str, int]):
        self.event = event
        self.index = dict(index)
        self.leaves: dict[str, ThresholdBreach] = {}
        for leaf in iter_thresholds(event):
            self.leaves.setdefault(leaf.variable, leaf)
        self.count = 0
        self.hits = 0
        self.denominator = 0
        self.leaf_hits = {ref: 0 for ref in self.leaves}

    def update(self, paths: np.ndarray, first_scenario: int):
        occurred, included = evaluate_event(self.event, paths, self.index)
        self.count += paths.shape[0]
        self.hits += int((occurred & included).sum())
        self.denominator += int(included.sum())
        for ref, leaf in self.leaves.items():
            leaf_occurred, _ = evaluate_event(leaf, paths, self.index)
            self.leaf_hits[ref] += int(leaf_occurred.sum())

    def merge(self, other: "EventTally"):
        self.count += other.count
        self.hits += other.hits
        self.denominator += other.denominator
        for ref, hits in other.leaf_hits.items():
            self.leaf_hits[ref] += hits

    @property
    def probability(self) -> float:
        return self.hits / self.denominator if self.denominator else 0.0

    def estimate(self) -> ProbabilityEstimate:
        p = self.probability
        return ProbabilityEstimate(
            mean=p,
            ci90=binomial_interval(p, self.denominator, Z_90),
            ci95=binomial_interval(p, self.denominator, Z_95),
        )

    def decomposition(self, tail_dependence: dict[str, float] | None = None) -> EventDecomposition:
        per_variable = {ref: hits / self.count for ref, hits in self.leaf_hits.items()}
        joint_independent = float(np.prod(list(per_variable.values())))
        multiplier = self.probability / joint_independent if joint_independent > 0 else None
        return EventDecomposition(
            per_variable=per_variable,
            joint=self.probability,
            joint_independent=joint_independent,
            risk_multiplier=multiplier,
            tail_dependence=tail_dependence,
        )
