"""Scenario runner: per-trial random streams, batching and the worker pool.

Trial ``i`` always draws from ``SeedSequence(master_seed, spawn_key=(i,))``
in the same order (base shocks, then each variable's auxiliary draws), so a
run's output does not depend on batch size or worker count.
"""

import logging
import threading
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence

import numpy as np

from stochcast.config import Settings
from stochcast.errors import NumericalInstabilityError, SimulationCancelledError, ValidationError
from stochcast.schemas import (
    CopulaSpec,
    CorrelationMethod,
    Discretization,
    HestonParams,
    SimulationInputs,
    VariableConfig,
)

from .copulas import sample_copula, uniforms_to_normal
from .correlation import cholesky_factor, correlate, equicorrelation, prepare_correlation
from .processes.dispatch import advance, auxiliary_shape, draw_auxiliary, initial_state, level_of, process_kind
from .processes.heston import feller_warning

logger = logging.getLogger(__name__)

SEED_BITS = 63


class Accumulator(Protocol):
    def update(self, paths: np.ndarray, first_scenario: int) -> None: ...

    def merge(self, other) -> None: ...


ProgressCallback = Callable[[int, int], None]


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SimulationPlan:
    """Validated, fully resolved description of one run; picklable."""

    variables: tuple[VariableConfig, ...]
    n_simulations: int
    horizon_periods: int
    dt: float
    seed: int
    scheme: Discretization
    method: CorrelationMethod
    factor: np.ndarray | None
    copula: CopulaSpec | None
    uniform_clip: float = 1e-12
    warnings: tuple[str, ...] = ()

    @property
    def n_variables(self) -> int:
        return len(self.variables)

    @property
    def n_periods(self) -> int:
        """Path length including period 0."""
        return self.horizon_periods + 1

    @property
    def index(self) -> dict[str, int]:
        """Variable id and code to path column."""
        mapping = {}
        for i, var in enumerate(self.variables):
            mapping[var.id] = i
            mapping[var.code] = i
        return mapping

    def index_of(self, ref: str) -> int:
        try:
            return self.index[ref]
        except KeyError:
            raise ValidationError(f"Unknown variable reference {ref!r}") from None


def resolve_seed(seed: int | None) -> int:
    if seed is not None:
        return seed
    return int(np.random.SeedSequence().entropy % (1 << SEED_BITS))


def build_plan(inputs: SimulationInputs, settings: Settings) -> SimulationPlan:
    """Validate cross-field constraints and resolve everything a run needs.

    Raises:
        ValidationError: missing correlation data, unusable matrices or rotations.
        UnsupportedProcessError: a variable names an unknown process.
    """
    config = inputs.config
    variables = inputs.variables
    n_vars = len(variables)
    method = config.correlation_method
    notes: list[str] = []

    for var in variables:
        process_kind(var.process)
        if isinstance(var.process, HestonParams):
            note = feller_warning(var.process, var.id)
            if note:
                notes.append(note)

    factor = None
    copula = inputs.copula
    if method == CorrelationMethod.CHOLESKY:
        if inputs.correlation is None:
            raise ValidationError("correlation_method 'cholesky' requires a correlation matrix")
        matrix, found = prepare_correlation(inputs.correlation, n_vars, settings.psd_tolerance)
        notes.extend(found)
        factor = cholesky_factor(matrix)
    elif method == CorrelationMethod.COPULA:
        if copula is None:
            raise ValidationError("correlation_method 'copula' requires a copula specification")
        if copula.rotation in (90, 270) and n_vars != 2:
            raise ValidationError(f"copula rotation {copula.rotation} is only defined for two variables")
        if copula.family.is_elliptical:
            if inputs.correlation is not None:
                source = inputs.correlation
            elif copula.rho is not None:
                source = equicorrelation(n_vars, copula.rho)
            else:
                raise ValidationError(
                    f"{copula.family.value} copula needs a correlation matrix or 'rho'"
                )
            matrix, found = prepare_correlation(source, n_vars, settings.psd_tolerance)
            notes.extend(found)
            factor = cholesky_factor(matrix)
    elif inputs.correlation is not None:
        logger.debug("correlation_method 'none': supplied correlation matrix is ignored")

    seed = resolve_seed(config.random_seed)
    if config.random_seed is None:
        logger.info("No random seed supplied; drew master seed %d", seed)

    return SimulationPlan(
        variables=variables,
        n_simulations=config.n_simulations,
        horizon_periods=config.horizon_periods,
        dt=config.time_step.years,
        seed=seed,
        scheme=config.discretization,
        method=method,
        factor=factor,
        copula=copula if method == CorrelationMethod.COPULA else None,
        uniform_clip=settings.uniform_clip,
        warnings=tuple(notes),
    )


# ---------------------------------------------------------------------------
# Batch simulation
# ---------------------------------------------------------------------------


def trial_rng(seed: int, trial_index: int) -> np.random.Generator:
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(trial_index,)))


def _draw_shocks(plan: SimulationPlan, rng: np.random.Generator) -> np.ndarray:
    """One trial's shock matrix, shape (periods, variables)."""
    if plan.method == CorrelationMethod.COPULA:
        u = sample_copula(plan.copula, rng, plan.horizon_periods, plan.n_variables, plan.factor)
        return uniforms_to_normal(u, plan.uniform_clip)
    # Drawn variable-major so variable 0's stream matches a single-variable run.
    return rng.standard_normal((plan.n_variables, plan.horizon_periods)).T


def simulate_batch(plan: SimulationPlan, start: int, stop: int) -> np.ndarray:
    """Simulate trials [start, stop); returns paths of shape (batch, variables, periods).

    Raises:
        NumericalInstabilityError: any level becomes NaN or infinite.
    """
    size = stop - start
    n_steps = plan.horizon_periods
    shocks = np.empty((size, n_steps, plan.n_variables))
    aux = []
    for var in plan.variables:
        shape = auxiliary_shape(var.process, n_steps)
        aux.append(None if shape is None else np.empty((size, *shape)))

    for row, trial in enumerate(range(start, stop)):
        rng = trial_rng(plan.seed, trial)
        shocks[row] = _draw_shocks(plan, rng)
        for j, var in enumerate(plan.variables):
            extra = draw_auxiliary(var.process, rng, n_steps, plan.dt)
            if extra is not None:
                aux[j][row] = extra

    if plan.method == CorrelationMethod.CHOLESKY:
        shocks = correlate(shocks, plan.factor)

    paths = np.empty((size, plan.n_variables, plan.n_periods))
    states = [initial_state(var.process, size) for var in plan.variables]
    for j, state in enumerate(states):
        paths[:, j, 0] = level_of(state)

    with np.errstate(over="ignore", invalid="ignore", divide="ignore"):
        for t in range(n_steps):
            period = t + 1
            for j, var in enumerate(plan.variables):
                step_aux = None if aux[j] is None else aux[j][..., t]
                states[j] = advance(var.process, states[j], plan.dt, shocks[:, t, j], step_aux, period, plan.scheme)
                level = level_of(states[j])
                bad = ~np.isfinite(level)
                if bad.any():
                    row = int(np.flatnonzero(bad)[0])
                    raise NumericalInstabilityError(
                        variable_id=var.id,
                        scenario_index=start + row,
                        period=period,
                        value=float(level[row]),
                    )
                paths[:, j, period] = level
    return paths


def _run_batch(
    plan: SimulationPlan,
    start: int,
    stop: int,
    factories: Sequence[Callable[[], Accumulator]],
) -> list[Accumulator]:
    """Picklable worker: simulate one batch and fold it into fresh accumulators."""
    paths = simulate_batch(plan, start, stop)
    partials = [factory() for factory in factories]
    for acc in partials:
        acc.update(paths, start)
    return partials


def _merge(merged: list[Accumulator] | None, partials: list[Accumulator]) -> list[Accumulator]:
    if merged is None:
        return partials
    for acc, part in zip(merged, partials):
        acc.merge(part)
    return merged


def batch_bounds(n_simulations: int, batch_size: int) -> list[tuple[int, int]]:
    return [(s, min(s + batch_size, n_simulations)) for s in range(0, n_simulations, batch_size)]


# ---------------------------------------------------------------------------
# Orchestration
# ---------------------------------------------------------------------------


def run_scenarios(
    plan: SimulationPlan,
    factories: Sequence[Callable[[], Accumulator]],
    batch_size: int = 1000,
    max_workers: int = 1,
    cancel_event: threading.Event | None = None,
    progress_callback: ProgressCallback | None = None,
) -> list[Accumulator]:
    """Run every trial of ``plan`` and return the merged accumulators.

    Args:
        plan: Resolved run description.
        factories: Zero-argument callables building one empty accumulator each;
            must be picklable when ``max_workers`` > 1.
        batch_size: Trials per batch.
        max_workers: Worker processes; 1 runs in-process.
        cancel_event: Checked between batches.
        progress_callback: Called with (completed_batches, total_batches).

    Raises:
        SimulationCancelledError: ``cancel_event`` was set.
    """
    bounds = batch_bounds(plan.n_simulations, max(1, batch_size))
    total = len(bounds)
    workers = min(max_workers, total)
    logger.info(
        "Simulating %d scenarios x %d periods x %d variables in %d batches (%d workers)",
        plan.n_simulations, plan.horizon_periods, plan.n_variables, total, max(workers, 1),
    )

    merged = None
    if workers <= 1:
        for i, (start, stop) in enumerate(bounds):
            if cancel_event is not None and cancel_event.is_set():
                raise SimulationCancelledError(i, total)
            merged = _merge(merged, _run_batch(plan, start, stop, factories))
            logger.debug("Batch %d/%d done (trials %d-%d)", i + 1, total, start, stop - 1)
            if progress_callback is not None:
                progress_callback(i + 1, total)
        return merged

    pending: dict[int, list[Accumulator]] = {}
    next_index = 0
    executor = ProcessPoolExecutor(max_workers=workers)
    try:
        futures = {
            executor.submit(_run_batch, plan, start, stop, factories): i
            for i, (start, stop) in enumerate(bounds)
        }
        for future in as_completed(futures):
            if cancel_event is not None and cancel_event.is_set():
                raise SimulationCancelledError(next_index, total)
            pending[futures[future]] = future.result()
            # Merge strictly in batch order so results do not depend on scheduling.
            while next_index in pending:
                merged = _merge(merged, pending.pop(next_index))
                next_index += 1
                logger.debug("Batch %d/%d merged", next_index, total)
                if progress_callback is not None:
                    progress_callback(next_index, total)
    except BaseException:
        executor.shutdown(wait=False, cancel_futures=True)
        raise
    executor.shutdown(wait=True)
    return merged
