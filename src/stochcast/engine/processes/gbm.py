"""Geometric Brownian Motion step.

  dS = μ·S·dt + σ·S·dW

The log-Euler step is the exact transition. Milstein works on the
arithmetic level and adds the Itô correction ½σ²S(dW² − dt).
"""

import numpy as np

from stochcast.schemas import Discretization, GBMParams

from . import PRICE_FLOOR


def log_euler_step(
    level: np.ndarray, dt: float, shock: np.ndarray, drift: float, volatility: float
) -> np.ndarray:
    return level * np.exp((drift - 0.5 * volatility**2) * dt + volatility * np.sqrt(dt) * shock)


def milstein_step(
    level: np.ndarray, dt: float, shock: np.ndarray, drift: float, volatility: float
) -> np.ndarray:
    d_w = np.sqrt(dt) * shock
    correction = 0.5 * volatility**2 * level * (d_w**2 - dt)
    nxt = level + drift * level * dt + volatility * level * d_w + correction
    return np.maximum(nxt, PRICE_FLOOR)


def diffusion_step(
    level: np.ndarray,
    dt: float,
    shock: np.ndarray,
    drift: float,
    volatility: float,
    scheme: Discretization,
) -> np.ndarray:
    """Advance a GBM level by one step under the given scheme."""
    if scheme == Discretization.MILSTEIN:
        return milstein_step(level, dt, shock, drift, volatility)
    return log_euler_step(level, dt, shock, drift, volatility)


def step_gbm(
    level: np.ndarray,
    dt: float,
    shock: np.ndarray,
    params: GBMParams,
    scheme: Discretization = Discretization.EULER,
) -> np.ndarray:
    """Advance a batch of GBM levels by one step.

    Args:
        level: Current level per trial, shape (batch,).
        dt: Step length in years.
        shock: Standard normal draw per trial (already correlated).
        params: Drift and volatility, annualised.
        scheme: EULER and EXACT take the log step; MILSTEIN the arithmetic one.

    Returns:
        Next level per trial, strictly positive.
    """
    return diffusion_step(level, dt, shock, params.drift, params.volatility, scheme)
