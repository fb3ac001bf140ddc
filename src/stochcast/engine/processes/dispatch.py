"""Route a variable's process configuration to its state and step functions.

The runner treats a variable's state as opaque: a level array for the
single-factor models, a HestonState for Heston. Per-trial auxiliary draws
(Heston's independent variance normal, Merton's jump counts and sizes) are
drawn here so their order within a trial's stream is fixed.
"""

import numpy as np

from stochcast.errors import UnsupportedProcessError
from stochcast.schemas import Discretization

from . import ProcessKind
from .deterministic import step_deterministic
from .gbm import step_gbm
from .heston import HestonState, initial_heston_state, step_heston
from .merton import step_merton
from .ou import step_ou


def process_kind(params) -> ProcessKind:
    try:
        return ProcessKind(params.type)
    except ValueError:
        raise UnsupportedProcessError(str(params.type)) from None


def initial_state(params, batch_size: int):
    kind = process_kind(params)
    if kind == ProcessKind.HESTON:
        return initial_heston_state(params, batch_size)
    if kind == ProcessKind.DETERMINISTIC:
        return np.full(batch_size, params.value_at(0), dtype=float)
    if kind in (ProcessKind.GBM, ProcessKind.ORNSTEIN_UHLENBECK, ProcessKind.MERTON_JUMP):
        return np.full(batch_size, params.initial_value, dtype=float)
    raise UnsupportedProcessError(kind.value)


def auxiliary_shape(params, n_periods: int) -> tuple[int, ...] | None:
    """Shape of one trial's auxiliary draws, or None if the model needs none."""
    kind = process_kind(params)
    if kind == ProcessKind.HESTON:
        return (n_periods,)
    if kind == ProcessKind.MERTON_JUMP:
        return (2, n_periods)
    return None


def draw_auxiliary(params, rng: np.random.Generator, n_periods: int, dt: float) -> np.ndarray | None:
    kind = process_kind(params)
    if kind == ProcessKind.HESTON:
        return rng.standard_normal(n_periods)
    if kind == ProcessKind.MERTON_JUMP:
        counts = rng.poisson(params.jump_intensity * dt, n_periods).astype(float)
        sizes = rng.standard_normal(n_periods)
        return np.stack([counts, sizes])
    return None


def advance(
    params,
    state,
    dt: float,
    shock: np.ndarray,
    aux: np.ndarray | None,
    period: int,
    scheme: Discretization,
):
    """One step for a batch; ``aux`` is this step's slice of the auxiliary draws."""
    kind = process_kind(params)
    if kind == ProcessKind.GBM:
        return step_gbm(state, dt, shock, params, scheme)
    if kind == ProcessKind.ORNSTEIN_UHLENBECK:
        return step_ou(state, dt, shock, params, scheme)
    if kind == ProcessKind.HESTON:
        return step_heston(state, dt, shock, aux, params, scheme)
    if kind == ProcessKind.MERTON_JUMP:
        return step_merton(state, dt, shock, aux[:, 0], aux[:, 1], params, scheme)
    if kind == ProcessKind.DETERMINISTIC:
        return step_deterministic(state, period, params)
    raise UnsupportedProcessError(kind.value)


def level_of(state) -> np.ndarray:
    if isinstance(state, HestonState):
        return state.level
    return state
