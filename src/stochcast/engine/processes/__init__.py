"""Stochastic process simulators.

One module per model family, each advancing a whole batch of trials by a
single time step:
- GBM: geometric Brownian motion (log-Euler, or arithmetic Milstein)
- ORNSTEIN_UHLENBECK: mean reversion (Euler or exact transition)
- HESTON: Heston stochastic volatility (full truncation)
- MERTON_JUMP: Merton jump-diffusion
- DETERMINISTIC: fixed value or time-indexed path
"""

from enum import Enum

PRICE_FLOOR = 1e-10


class ProcessKind(str, Enum):
    GBM = "gbm"
    ORNSTEIN_UHLENBECK = "ornstein_uhlenbeck"
    HESTON = "heston"
    MERTON_JUMP = "merton_jump"
    DETERMINISTIC = "deterministic"


__all__ = ["ProcessKind", "PRICE_FLOOR"]
