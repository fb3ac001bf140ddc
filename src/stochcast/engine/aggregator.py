"""Streaming aggregation of scenario paths.

Accumulators are fed one batch of paths at a time, shape
(batch, variables, periods), and merged across batches in batch order.
Mean and the second to fourth central moments use Welford/Chan/Pébay
updates, so skewness and kurtosis are exact whatever the batching; percentiles come from a bounded
uniform reservoir of whole trial rows, which is the complete ensemble
whenever the scenario count fits in the reservoir.
"""

import logging
from typing import Sequence

import numpy as np
import pandas as pd

from stochcast.schemas import CovenantConfig, CovenantPeriodResult, PeriodStatistics, VariableConfig

logger = logging.getLogger(__name__)

PERCENTILE_RANKS = (1, 5, 10, 25, 50, 75, 90, 95, 99)
RESERVOIR_STREAM = 0x5EED
SPREAD_EPS = 1e-12


class TrialReservoir:
    """Uniform random sample of trial rows, bounded by ``capacity``."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self.seen = 0
        self._blocks: list[np.ndarray] = []
        self._kept = 0

    def __len__(self) -> int:
        return self._kept

    def add(self, rows: np.ndarray, rng: np.random.Generator):
        self._combine([rows], len(rows), len(rows), rng)

    def merge(self, other: "TrialReservoir", rng: np.random.Generator):
        self._combine(other._blocks, other._kept, other.seen, rng)

    def values(self) -> np.ndarray:
        if len(self._blocks) != 1:
            self._blocks = [np.concatenate(self._blocks)]
        return self._blocks[0]

    def _combine(self, blocks: list[np.ndarray], kept: int, seen: int, rng: np.random.Generator):
        if self._kept + kept <= self.capacity:
            self._blocks.extend(blocks)
            self._kept += kept
            self.seen += seen
            return

        # Each side represents its own population; split the slots between
        # them in proportion to those population sizes.
        k = self.capacity
        mine = self.values() if self._kept else None
        theirs = np.concatenate(blocks)
        take = int(rng.hypergeometric(self.seen, seen, k)) if self.seen else 0
        take = min(max(take, k - len(theirs)), self._kept)
        parts = []
        if take:
            parts.append(mine[rng.choice(self._kept, take, replace=False)])
        parts.append(theirs[rng.choice(len(theirs), k - take, replace=False)])
        self._blocks = [np.concatenate(parts)]
        self._kept = k
        self.seen += seen


class StatisticsAccumulator:
    """Per (variable, period) running statistics.

    Args:
        n_variables: Number of simulated variables.
        n_periods: Periods per path including period 0.
        capacity: Reservoir size in trial rows.
        seed: Master seed; the reservoir's own stream derives from it.
        periods: Restrict tracking to these period indices (all if None).
    """

    def __init__(
        self,
        n_variables: int,
        n_periods: int,
        capacity: int,
        seed: int,
        periods: Sequence[int] | None = None,
    ):
        self.periods = tuple(range(n_periods)) if periods is None else tuple(periods)
        shape = (n_variables, len(self.periods))
        self.seed = seed
        self.count = 0
        self.mean = np.zeros(shape)
        self.m2 = np.zeros(shape)
        self.m3 = np.zeros(shape)
        self.m4 = np.zeros(shape)
        self.minimum = np.full(shape, np.inf)
        self.maximum = np.full(shape, -np.inf)
        self.negatives = np.zeros(shape, dtype=np.int64)
        self.reservoir = TrialReservoir(capacity)
        self._rng: np.random.Generator | None = None

    def _stream(self, first_scenario: int) -> np.random.Generator:
        if self._rng is None:
            seq = np.random.SeedSequence(self.seed, spawn_key=(RESERVOIR_STREAM, first_scenario))
            self._rng = np.random.default_rng(seq)
        return self._rng

    def update(self, paths: np.ndarray, first_scenario: int):
        values = paths[:, :, self.periods] if len(self.periods) != paths.shape[2] else paths
        n = values.shape[0]
        batch_mean = values.mean(axis=0)
        centred = values - batch_mean
        sq = centred**2
        self._combine_moments(n, batch_mean, sq.sum(axis=0), (sq * centred).sum(axis=0), (sq * sq).sum(axis=0))
        self.minimum = np.minimum(self.minimum, values.min(axis=0))
        self.maximum = np.maximum(self.maximum, values.max(axis=0))
        self.negatives += (values < 0).sum(axis=0)
        self.reservoir.add(values, self._stream(first_scenario))

    def merge(self, other: "StatisticsAccumulator"):
        if other.count == 0:
            return
        self._combine_moments(other.count, other.mean, other.m2, other.m3, other.m4)
        self.minimum = np.minimum(self.minimum, other.minimum)
        self.maximum = np.maximum(self.maximum, other.maximum)
        self.negatives += other.negatives
        rng = self._rng if self._rng is not None else other._rng
        self.reservoir.merge(other.reservoir, rng)

    def _combine_moments(self, n_b: int, mean_b: np.ndarray, m2_b: np.ndarray, m3_b: np.ndarray, m4_b: np.ndarray):
        n_a = self.count
        total = n_a + n_b
        delta = mean_b - self.mean
        m2_a, m3_a = self.m2, self.m3
        self.m4 = (
            self.m4
            + m4_b
            + delta**4 * n_a * n_b * (n_a * n_a - n_a * n_b + n_b * n_b) / total**3
            + 6 * delta**2 * (n_a * n_a * m2_b + n_b * n_b * m2_a) / total**2
            + 4 * delta * (n_a * m3_b - n_b * m3_a) / total
        )
        self.m3 = (
            m3_a
            + m3_b
            + delta**3 * n_a * n_b * (n_a - n_b) / total**2
            + 3 * delta * (n_a * m2_b - n_b * m2_a) / total
        )
        self.m2 = m2_a + m2_b + delta**2 * (n_a * n_b / total)
        self.mean = self.mean + delta * (n_b / total)
        self.count = total

    def shape_statistics(self) -> tuple[np.ndarray, np.ndarray]:
        """Bias-adjusted sample skewness and excess kurtosis; 0 where undefined."""
        n = self.count
        skew = np.zeros_like(self.m2)
        kurt = np.zeros_like(self.m2)
        # Floating-point noise around a constant column is not spread.
        scale = np.maximum(np.abs(self.mean), np.finfo(float).tiny)
        spread = np.sqrt(self.m2 / max(n, 1)) > SPREAD_EPS * scale
        if n >= 3:
            m2 = np.where(spread, self.m2, 1.0)
            g1 = np.sqrt(n) * self.m3 / m2**1.5
            skew = np.where(spread, g1 * np.sqrt(n * (n - 1)) / (n - 2), 0.0)
        if n >= 4:
            g2 = n * self.m4 / m2**2 - 3.0
            kurt = np.where(spread, (n - 1) / ((n - 2) * (n - 3)) * ((n + 1) * g2 + 6.0), 0.0)
        return skew, kurt

    def finalize(self, variables: Sequence[VariableConfig]) -> list[PeriodStatistics]:
        n = self.count
        std = np.sqrt(self.m2 / (n - 1)) if n > 1 else np.zeros_like(self.m2)
        sample = np.sort(self.reservoir.values(), axis=0)
        pct = np.percentile(sample, PERCENTILE_RANKS, axis=0, method="linear")
        rank = {p: i for i, p in enumerate(PERCENTILE_RANKS)}
        cvar_90 = _tail_mean(sample, pct[rank[10]])
        cvar_95 = _tail_mean(sample, pct[rank[5]])
        cvar_99 = _tail_mean(sample, pct[rank[1]])
        prob_negative = self.negatives / n
        skew, kurt = self.shape_statistics()

        logger.debug(
            "Finalising statistics: %d scenarios, %d reservoir rows", n, len(self.reservoir)
        )
        results = []
        for v, var in enumerate(variables):
            for j, period in enumerate(self.periods):
                q = pct[:, v, j]
                results.append(
                    PeriodStatistics(
                        variable_id=var.id,
                        variable_code=var.code,
                        period=period,
                        mean=float(self.mean[v, j]),
                        median=float(q[rank[50]]),
                        std=float(std[v, j]),
                        p01=float(q[rank[1]]),
                        p05=float(q[rank[5]]),
                        p10=float(q[rank[10]]),
                        p25=float(q[rank[25]]),
                        p50=float(q[rank[50]]),
                        p75=float(q[rank[75]]),
                        p90=float(q[rank[90]]),
                        p95=float(q[rank[95]]),
                        p99=float(q[rank[99]]),
                        min=float(self.minimum[v, j]),
                        max=float(self.maximum[v, j]),
                        prob_negative=float(prob_negative[v, j]),
                        skewness=float(skew[v, j]),
                        kurtosis=float(kurt[v, j]),
                        var_95=float(q[rank[5]]),
                        var_99=float(q[rank[1]]),
                        cvar_90=float(cvar_90[v, j]),
                        cvar_95=float(cvar_95[v, j]),
                        cvar_99=float(cvar_99[v, j]),
                    )
                )
        return results


def _tail_mean(sample: np.ndarray, threshold: np.ndarray) -> np.ndarray:
    mask = sample <= threshold[None]
    counts = np.maximum(mask.sum(axis=0), 1)
    return np.where(mask, sample, 0.0).sum(axis=0) / counts


class CovenantTally:
    """Breach counts and breach magnitudes per covenant and period.

    Args:
        covenants: Each covenant paired with the index of the variable it watches.
        n_periods: Periods per path including period 0.
    """

    def __init__(self, covenants: Sequence[tuple[CovenantConfig, int]], n_periods: int):
        self.covenants = tuple(covenants)
        self.count = 0
        self.breaches = np.zeros((len(self.covenants), n_periods), dtype=np.int64)
        self.magnitude = np.zeros((len(self.covenants), n_periods))

    def update(self, paths: np.ndarray, first_scenario: int):
        self.count += paths.shape[0]
        for c, (covenant, index) in enumerate(self.covenants):
            values = paths[:, index, :]
            breached = covenant.comparator.apply(values, covenant.threshold)
            self.breaches[c] += breached.sum(axis=0)
            self.magnitude[c] += np.where(breached, np.abs(values - covenant.threshold), 0.0).sum(axis=0)

    def merge(self, other: "CovenantTally"):
        self.count += other.count
        self.breaches += other.breaches
        self.magnitude += other.magnitude

    def finalize(self) -> list[CovenantPeriodResult]:
        results = []
        for c, (covenant, _) in enumerate(self.covenants):
            for period in range(self.breaches.shape[1]):
                hits = int(self.breaches[c, period])
                results.append(
                    CovenantPeriodResult(
                        covenant_id=covenant.id,
                        name=covenant.name,
                        period=period,
                        breach_probability=hits / self.count if self.count else 0.0,
                        breach_scenarios=hits,
                        avg_breach_magnitude=float(self.magnitude[c, period] / hits) if hits else None,
                    )
                )
        return results


def statistics_frame(stats: Sequence[PeriodStatistics]) -> pd.DataFrame:
    """Tabulate period statistics, one row per (variable, period)."""
    frame = pd.DataFrame([s.model_dump() for s in stats])
    if frame.empty:
        return frame
    return frame.sort_values(["variable_id", "period"], kind="stable").reset_index(drop=True)
