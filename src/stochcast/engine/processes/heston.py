"""Heston stochastic volatility step.

Two coupled SDEs:
  dS = μ·S·dt + √V·S·dW₁
  dV = κ(θ − V)dt + ξ√V·dW₂
  corr(W₁, W₂) = ρ

Full truncation: the variance is floored at zero before it enters any
square root or drift term, but the unfloored value is carried forward.
"""

import logging
from typing import NamedTuple

import numpy as np

from stochcast.schemas import Discretization, HestonParams

logger = logging.getLogger(__name__)


class HestonState(NamedTuple):
    level: np.ndarray
    variance: np.ndarray


def initial_heston_state(params: HestonParams, batch_size: int) -> HestonState:
    return HestonState(
        level=np.full(batch_size, params.initial_value, dtype=float),
        variance=np.full(batch_size, params.initial_variance, dtype=float),
    )


def feller_warning(params: HestonParams, variable_id: str) -> str | None:
    """Log and return a warning when 2κθ ≤ ξ²; None if the condition holds."""
    if params.satisfies_feller:
        return None
    logger.warning(
        "Heston %s: Feller condition violated (2κθ=%.4f ≤ ξ²=%.4f). "
        "Variance may hit zero; full truncation will handle it.",
        variable_id, 2 * params.kappa * params.theta, params.xi**2,
    )
    return (
        f"Heston variable {variable_id!r} violates the Feller condition "
        f"(2κθ={2 * params.kappa * params.theta:.4g} <= ξ²={params.xi**2:.4g})"
    )


def step_heston(
    state: HestonState,
    dt: float,
    shock: np.ndarray,
    aux_shock: np.ndarray,
    params: HestonParams,
    scheme: Discretization = Discretization.EULER,
) -> HestonState:
    """Advance level and variance by one step.

    Args:
        state: Current (level, variance) per trial.
        dt: Step length in years.
        shock: Correlated level shock z.
        aux_shock: Independent per-trial normal used to build the variance shock.
        params: Heston parameters, annualised.
        scheme: MILSTEIN adds ¼ξ²dt(z_v² − 1) to the variance step.
    """
    rho = params.rho
    z_v = rho * shock + np.sqrt(1 - rho**2) * aux_shock

    v_pos = np.maximum(state.variance, 0.0)
    sqrt_v = np.sqrt(v_pos)
    sqrt_dt = np.sqrt(dt)

    level = state.level * np.exp((params.drift - 0.5 * v_pos) * dt + sqrt_v * sqrt_dt * shock)

    variance = state.variance + params.kappa * (params.theta - v_pos) * dt + params.xi * sqrt_v * sqrt_dt * z_v
    if scheme == Discretization.MILSTEIN:
        variance = variance + 0.25 * params.xi**2 * dt * (z_v**2 - 1)

    return HestonState(level=level, variance=variance)
