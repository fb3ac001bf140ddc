"""Model comparison and parameter sweeps.

Both are higher-order: they take a run callable and re-invoke it on modified
inputs with the master seed pinned, so every difference in the output comes
from the configuration change and not from sampling noise.
"""

import logging
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

import numpy as np

from stochcast.errors import ValidationError
from stochcast.schemas import (
    CopulaFamily,
    CopulaSpec,
    CorrelationMethod,
    Discretization,
    ModelComparison,
    SimulationInputs,
    VariantOutcome,
)

from .copulas import copula_tau, fit_copula_from_tau, rho_from_tau

logger = logging.getLogger(__name__)

COMPARISON_FAMILIES = (
    CopulaFamily.GAUSSIAN,
    CopulaFamily.STUDENT_T,
    CopulaFamily.CLAYTON,
    CopulaFamily.GUMBEL,
)
MAX_ABS_TAU = 0.999


@dataclass(frozen=True)
class Variant:
    name: str
    axis: str
    apply: Callable[[SimulationInputs], SimulationInputs]


def _with_config(inputs: SimulationInputs, **changes) -> SimulationInputs:
    return inputs.model_copy(update={"config": inputs.config.model_copy(update=changes)})


def default_variants(inputs: SimulationInputs) -> list[Variant]:
    """One-axis alternatives to the configured run."""
    config = inputs.config
    variants = []

    alternate = Discretization.EULER if config.discretization == Discretization.MILSTEIN else Discretization.MILSTEIN
    variants.append(
        Variant(
            name=f"discretization:{alternate.value}",
            axis="discretization",
            apply=lambda base, scheme=alternate: _with_config(base, discretization=scheme),
        )
    )

    if config.correlation_method != CorrelationMethod.NONE:
        variants.append(
            Variant(
                name="correlation:none",
                axis="correlation",
                apply=lambda base: _with_config(base, correlation_method=CorrelationMethod.NONE),
            )
        )
    elif inputs.correlation is not None:
        variants.append(
            Variant(
                name="correlation:cholesky",
                axis="correlation",
                apply=lambda base: _with_config(base, correlation_method=CorrelationMethod.CHOLESKY),
            )
        )

    if config.correlation_method == CorrelationMethod.COPULA and inputs.copula is not None:
        current = inputs.copula
        tau = _dependence_tau(inputs)
        for family in COMPARISON_FAMILIES:
            if family == current.family:
                continue
            spec = _matched_copula(family, current, tau, has_matrix=inputs.correlation is not None)
            variants.append(
                Variant(
                    name=f"copula:{family.value}",
                    axis="copula",
                    apply=lambda base, spec=spec: base.model_copy(update={"copula": spec}),
                )
            )
    return variants


def _dependence_tau(inputs: SimulationInputs) -> float:
    """Kendall's tau of the configured copula; a matrix contributes its mean off-diagonal entry."""
    current = inputs.copula
    rho = current.rho
    if current.family.is_elliptical and rho is None:
        if inputs.correlation is None or len(inputs.correlation) < 2:
            return 0.0
        matrix = np.asarray(inputs.correlation, dtype=float)
        rho = float(matrix[~np.eye(len(matrix), dtype=bool)].mean())
    # Exact ±1 has no Archimedean counterpart.
    return float(np.clip(copula_tau(current, rho), -MAX_ABS_TAU, MAX_ABS_TAU))


def _matched_copula(family: CopulaFamily, current: CopulaSpec, tau: float, has_matrix: bool) -> CopulaSpec:
    """Copula of ``family`` with the same Kendall's tau as the current one."""
    if family.is_elliptical:
        if current.family.is_elliptical:
            return CopulaSpec(family=family, nu=current.nu, rho=current.rho)
        # A matrix already describes the pairwise structure; otherwise match tau.
        rho = None if has_matrix else rho_from_tau(tau)
        return CopulaSpec(family=family, nu=current.nu, rho=rho)
    return fit_copula_from_tau(family, tau, nu=current.nu)


def compare_models(
    run: Callable[[SimulationInputs], object],
    inputs: SimulationInputs,
    variants: Sequence[Variant],
    metric: Callable[[object], Mapping[str, float]],
    tolerance: Mapping[str, float],
    base_result: object | None = None,
) -> ModelComparison:
    """Re-run ``run`` once per variant and report metric deltas against the base.

    Args:
        run: Callable producing a result from validated inputs.
        inputs: Base inputs; must carry an explicit random seed.
        variants: One-axis modifications to try.
        metric: Extracts named scalar metrics from a result.
        tolerance: Absolute delta per metric above which a variant is flagged sensitive.
        base_result: Already computed result for ``inputs``, reused if given.
    """
    if inputs.config.random_seed is None:
        raise ValidationError("Model comparison needs a pinned random seed")

    base = dict(metric(base_result if base_result is not None else run(inputs)))
    outcomes = []
    for variant in variants:
        logger.info("Model comparison: running variant %s", variant.name)
        metrics = dict(metric(run(variant.apply(inputs))))
        deltas = {key: metrics[key] - base[key] for key in base}
        flagged = any(abs(delta) > tolerance.get(key, 0.0) for key, delta in deltas.items())
        outcomes.append(
            VariantOutcome(name=variant.name, axis=variant.axis, metrics=metrics, deltas=deltas, sensitive=flagged)
        )

    max_delta = max((abs(d) for o in outcomes for d in o.deltas.values()), default=0.0)
    return ModelComparison(
        base=base,
        variants=outcomes,
        max_abs_delta=float(max_delta),
        sensitive=any(o.sensitive for o in outcomes),
    )


def map_level(process, fn: Callable[[float], float]):
    """Apply ``fn`` to a process's starting level (every path entry for a scheduled path)."""
    if hasattr(process, "initial_value"):
        return process.model_copy(update={"initial_value": fn(process.initial_value)})
    if process.path is not None:
        return process.model_copy(update={"path": tuple(fn(x) for x in process.path)})
    return process.model_copy(update={"value": fn(process.value)})


def update_process(inputs: SimulationInputs, variable: str, change: Callable) -> SimulationInputs:
    """Copy of ``inputs`` with ``change`` applied to one variable's process config."""
    variables = []
    found = False
    for var in inputs.variables:
        if variable in (var.id, var.code):
            found = True
            var = var.model_copy(update={"process": change(var.process)})
        variables.append(var)
    if not found:
        raise ValidationError(f"Unknown variable reference {variable!r}")
    return inputs.model_copy(update={"variables": tuple(variables)})


def scale_initial_value(inputs: SimulationInputs, variable: str, multiplier: float) -> SimulationInputs:
    """Copy of ``inputs`` with one variable's starting level multiplied."""
    return update_process(inputs, variable, lambda process: map_level(process, lambda x: x * multiplier))


def sweep_parameter(
    run: Callable[[SimulationInputs], object],
    inputs: SimulationInputs,
    variable: str,
    multipliers: Sequence[float],
    metric: Callable[[object], object],
) -> list:
    """Evaluate ``metric`` over runs with the variable's initial value scaled."""
    results = []
    for m in multipliers:
        logger.info("Sensitivity: %s x %.3f", variable, m)
        results.append(metric(run(scale_initial_value(inputs, variable, m))))
    return results


def midpoint_elasticity(inputs: Sequence[float], outputs: Sequence[float]) -> float | None:
    """Arc elasticity around the middle of a sweep; None when undefined."""
    n = len(inputs)
    if n < 3:
        return None
    mid = n // 2
    x0, x1 = inputs[mid - 1], inputs[mid + 1]
    y0, y1, y_mid = outputs[mid - 1], outputs[mid + 1], outputs[mid]
    if y_mid == 0 or inputs[mid] == 0 or x1 == x0:
        return None
    return float(((y1 - y0) / y_mid) / ((x1 - x0) / inputs[mid]))


def multiplier_grid(lower: float, upper: float, steps: int) -> list[float]:
    if steps < 2 or not 0 < lower < upper:
        raise ValidationError("sensitivity range needs 0 < lower < upper and at least 2 steps")
    return [float(m) for m in np.linspace(lower, upper, steps)]
