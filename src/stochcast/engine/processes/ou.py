"""Ornstein-Uhlenbeck mean-reverting step.

  dX = θ(μ − X)dt + σ·dW

The diffusion term does not depend on the state, so Milstein coincides with
Euler. The exact scheme samples the Gaussian transition density directly.
"""

import numpy as np

from stochcast.schemas import Discretization, OUParams


def step_ou(
    level: np.ndarray,
    dt: float,
    shock: np.ndarray,
    params: OUParams,
    scheme: Discretization = Discretization.EULER,
) -> np.ndarray:
    theta, mu, sigma = params.theta, params.mu, params.sigma
    if scheme == Discretization.EXACT and theta > 0:
        decay = np.exp(-theta * dt)
        std = sigma * np.sqrt(-np.expm1(-2 * theta * dt) / (2 * theta))
        return mu + (level - mu) * decay + std * shock
    # theta == 0 is a Brownian motion, for which Euler is already exact
    return level + theta * (mu - level) * dt + sigma * np.sqrt(dt) * shock
