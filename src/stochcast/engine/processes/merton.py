"""Merton jump-diffusion step.

GBM diffusion multiplied by a compound Poisson jump:
  S(t+dt) = S_diffusion(t+dt) · exp(J)
  N ~ Poisson(λ·dt),  J | N ~ Normal(N·μ_J, N·σ_J²)

With drift compensation the diffusion drift becomes μ − λ·k where
k = E[e^Y] − 1 = exp(μ_J + ½σ_J²) − 1, so jumps do not move the expected level.
"""

import numpy as np

from stochcast.schemas import Discretization, MertonJumpParams

from .gbm import diffusion_step


def jump_compensator(params: MertonJumpParams) -> float:
    return float(np.exp(params.jump_mean + 0.5 * params.jump_std**2) - 1)


def effective_drift(params: MertonJumpParams) -> float:
    if params.compensate_drift:
        return params.drift - params.jump_intensity * jump_compensator(params)
    return params.drift


def step_merton(
    level: np.ndarray,
    dt: float,
    shock: np.ndarray,
    n_jumps: np.ndarray,
    jump_shock: np.ndarray,
    params: MertonJumpParams,
    scheme: Discretization = Discretization.EULER,
) -> np.ndarray:
    """Advance a batch of jump-diffusion levels by one step.

    Args:
        level: Current level per trial.
        dt: Step length in years.
        shock: Correlated diffusion shock.
        n_jumps: Poisson jump counts for this step.
        jump_shock: Standard normal per trial for the aggregate jump size.
        params: Merton parameters, annualised.
        scheme: Passed through to the diffusion step.
    """
    diffused = diffusion_step(level, dt, shock, effective_drift(params), params.volatility, scheme)
    jump = n_jumps * params.jump_mean + np.sqrt(n_jumps) * params.jump_std * jump_shock
    return diffused * np.exp(jump)
