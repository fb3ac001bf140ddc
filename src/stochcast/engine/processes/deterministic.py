"""Deterministic best-estimate path; shocks are ignored."""

import numpy as np

from stochcast.schemas import DeterministicParams


def step_deterministic(level: np.ndarray, period: int, params: DeterministicParams) -> np.ndarray:
    return np.full_like(level, params.value_at(period), dtype=float)
