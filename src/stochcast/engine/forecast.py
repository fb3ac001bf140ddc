"""Simulation entry points.

run_forecast           per-period statistics for every variable (+ covenants)
run_event_probability  probability of a structured event over the paths
run_sensitivity        output response to scaling one variable's start level
run_stress_test        horizon statistics under shocked levels and drifts

Each call validates its inputs, resolves a SimulationPlan, streams batches
through the runner into accumulators and finalises a pydantic result.
"""

import logging
import math
import threading
import time
from functools import partial
from typing import Any, Mapping, Sequence

from pydantic import ValidationError as PydanticValidationError

from stochcast.config import Settings
from stochcast.errors import UnsupportedProcessError, ValidationError
from stochcast.schemas import (
    EVENT_NODE_TYPES,
    EventProbabilityResult,
    ForecastResult,
    PeriodStatistics,
    SensitivityPoint,
    SensitivityResult,
    SimulationInputs,
    StressTestResult,
    TerminalPercentiles,
    event_adapter,
)

from .aggregator import CovenantTally, StatisticsAccumulator
from .comparator import (
    compare_models as compare_variants,
    default_variants,
    midpoint_elasticity,
    multiplier_grid,
    sweep_parameter,
)
from .copulas import tail_dependence
from .evaluator import EventTally, iter_thresholds, validate_event
from .processes import ProcessKind
from .runner import ProgressCallback, SimulationPlan, build_plan, run_scenarios
from .stress import apply_stress, resolve_scenario

logger = logging.getLogger(__name__)

# Relative change in a statistic that counts as model-sensitive. The scale is
# the larger of the statistic and the horizon std, so statistics near zero are
# judged against the spread instead of a vanishing tolerance.
RELATIVE_SENSITIVITY = 0.05
ABSOLUTE_SENSITIVITY_FLOOR = 1e-9
HORIZON_METRICS = ("mean", "p05", "p95")


# ---------------------------------------------------------------------------
# Input coercion
# ---------------------------------------------------------------------------


def _check_process_tags(variables: Sequence[Any]):
    known = {kind.value for kind in ProcessKind}
    for raw in variables:
        if not isinstance(raw, Mapping):
            continue
        process = raw.get("process")
        tag = process.get("type") if isinstance(process, Mapping) else None
        if tag is not None and tag not in known:
            raise UnsupportedProcessError(str(tag), variable_id=raw.get("id"))


def coerce_inputs(
    config,
    variables,
    correlation=None,
    copula=None,
    covenants=None,
) -> SimulationInputs:
    """Build validated SimulationInputs from models or plain dicts.

    Raises:
        UnsupportedProcessError: a variable's process tag is not recognised.
        ValidationError: anything else pydantic rejects.
    """
    _check_process_tags(variables)
    if hasattr(correlation, "tolist"):
        correlation = correlation.tolist()
    try:
        return SimulationInputs.model_validate(
            {
                "config": config,
                "variables": list(variables),
                "correlation": correlation,
                "copula": copula,
                "covenants": list(covenants or ()),
            }
        )
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "simulation inputs") from exc


def coerce_event(event):
    if isinstance(event, EVENT_NODE_TYPES):
        return event
    try:
        return event_adapter.validate_python(event)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "event definition") from exc


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


# ---------------------------------------------------------------------------
# Forecast
# ---------------------------------------------------------------------------


def _covenant_targets(inputs: SimulationInputs, plan: SimulationPlan):
    return [(covenant, plan.index_of(covenant.variable)) for covenant in inputs.covenants]


def _forecast(
    inputs: SimulationInputs,
    settings: Settings,
    cancel_event: threading.Event | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ForecastResult:
    started = time.perf_counter()
    plan = build_plan(inputs, settings)
    covenants = _covenant_targets(inputs, plan)

    factories = [
        partial(StatisticsAccumulator, plan.n_variables, plan.n_periods, settings.reservoir_capacity, plan.seed)
    ]
    if covenants:
        factories.append(partial(CovenantTally, covenants, plan.n_periods))

    accumulators = run_scenarios(
        plan,
        factories,
        batch_size=settings.simulation_batch_size,
        max_workers=settings.simulation_max_workers,
        cancel_event=cancel_event,
        progress_callback=progress_callback,
    )
    stats = accumulators[0].finalize(plan.variables)
    covenant_results = accumulators[1].finalize() if covenants else []

    result = ForecastResult(
        period_statistics=stats,
        covenant_results=covenant_results,
        scenario_count=plan.n_simulations,
        compute_time_ms=_elapsed_ms(started),
        seed=plan.seed,
        warnings=list(plan.warnings),
    )
    logger.info(
        "Forecast done: %d scenarios, %d statistics rows in %.1f ms (seed %d)",
        result.scenario_count, len(stats), result.compute_time_ms, plan.seed,
    )
    return result


def _horizon_by_code(result: ForecastResult) -> dict[str, PeriodStatistics]:
    horizon = max(s.period for s in result.period_statistics)
    return {s.variable_code: s for s in result.period_statistics if s.period == horizon}


def _horizon_metrics(result: ForecastResult) -> dict[str, float]:
    metrics = {}
    for code, s in _horizon_by_code(result).items():
        for name in HORIZON_METRICS:
            metrics[f"{code}.{name}"] = getattr(s, name)
    return metrics


def _horizon_tolerance(result: ForecastResult) -> dict[str, float]:
    tolerance = {}
    for code, s in _horizon_by_code(result).items():
        for name in HORIZON_METRICS:
            scale = max(abs(getattr(s, name)), s.std)
            tolerance[f"{code}.{name}"] = max(RELATIVE_SENSITIVITY * scale, ABSOLUTE_SENSITIVITY_FLOOR)
    return tolerance


def run_forecast(
    config,
    variables,
    correlation=None,
    *,
    copula=None,
    covenants=None,
    compare_models: bool = False,
    settings: Settings | None = None,
    cancel_event: threading.Event | None = None,
    progress_callback: ProgressCallback | None = None,
) -> ForecastResult:
    """Simulate all variables and summarise every (variable, period).

    Args:
        config: SimulationConfig or equivalent dict.
        variables: VariableConfig models or dicts.
        correlation: Optional square correlation matrix (list of lists).
        copula: CopulaSpec for ``correlation_method='copula'``.
        covenants: Optional covenant checks tallied per period.
        compare_models: Also re-run along the default comparison axes.
        settings: Execution settings; defaults to environment-driven Settings().
        cancel_event: Set to stop between batches.
        progress_callback: Called with (completed_batches, total_batches).

    Returns:
        ForecastResult with statistics ordered by variable, then period.
    """
    settings = settings or Settings()
    inputs = coerce_inputs(config, variables, correlation, copula, covenants)
    result = _forecast(inputs, settings, cancel_event, progress_callback)

    if compare_models:
        pinned = inputs.with_seed(result.seed)
        comparison = compare_variants(
            partial(_forecast, settings=settings, cancel_event=cancel_event),
            pinned,
            default_variants(pinned),
            _horizon_metrics,
            tolerance=_horizon_tolerance(result),
            base_result=result,
        )
        result = result.model_copy(update={"model_comparison": comparison})
    return result


# ---------------------------------------------------------------------------
# Event probability
# ---------------------------------------------------------------------------


def _event_variables(event, plan: SimulationPlan) -> list[int]:
    seen = []
    for leaf in iter_thresholds(event):
        idx = plan.index_of(leaf.variable)
        if idx not in seen:
            seen.append(idx)
    return seen


def _event_probability(
    inputs: SimulationInputs,
    event,
    settings: Settings,
    cancel_event: threading.Event | None = None,
    progress_callback: ProgressCallback | None = None,
) -> EventProbabilityResult:
    started = time.perf_counter()
    plan = build_plan(inputs, settings)
    validate_event(event, plan.index, plan.horizon_periods)
    notes = list(plan.warnings)

    factories = [
        partial(EventTally, event, plan.index),
        partial(
            StatisticsAccumulator,
            plan.n_variables,
            plan.n_periods,
            settings.reservoir_capacity,
            plan.seed,
            periods=(plan.horizon_periods,),
        ),
    ]
    tally, terminal = run_scenarios(
        plan,
        factories,
        batch_size=settings.simulation_batch_size,
        max_workers=settings.simulation_max_workers,
        cancel_event=cancel_event,
        progress_callback=progress_callback,
    )

    if tally.denominator == 0:
        message = "Conditioning event never occurred; probability reported as 0 with interval [0, 1]"
        logger.warning(message)
        notes.append(message)

    tails = None
    if plan.copula is not None:
        rho = float(plan.factor[1, 0]) if plan.factor is not None and plan.n_variables > 1 else 0.0
        tails = tail_dependence(plan.copula, rho)

    stats = terminal.finalize(plan.variables)
    wanted = _event_variables(event, plan)
    percentiles = {}
    for idx in wanted:
        s = stats[idx]
        percentiles[s.variable_code] = TerminalPercentiles(p5=s.p05, p25=s.p25, p50=s.p50, p75=s.p75, p95=s.p95)

    result = EventProbabilityResult(
        probability=tally.estimate(),
        scenario_count=plan.n_simulations,
        effective_scenarios=tally.denominator,
        decomposition=tally.decomposition(tails),
        percentiles=percentiles,
        compute_time_ms=_elapsed_ms(started),
        seed=plan.seed,
        warnings=notes,
    )
    logger.info(
        "Event probability %.4f (%d/%d scenarios) in %.1f ms (seed %d)",
        result.probability.mean, tally.hits, tally.denominator, result.compute_time_ms, plan.seed,
    )
    return result


def _probability_metric(result: EventProbabilityResult) -> dict[str, float]:
    return {"probability": result.probability.mean}


def run_event_probability(
    event,
    variables,
    config,
    correlation=None,
    *,
    copula=None,
    compare_models: bool = False,
    settings: Settings | None = None,
    cancel_event: threading.Event | None = None,
    progress_callback: ProgressCallback | None = None,
) -> EventProbabilityResult:
    """Estimate the probability that ``event`` occurs within the simulated paths.

    With ``compare_models`` the run is repeated along the default comparison
    axes; a variant is flagged sensitive when it moves the probability by
    more than the base 90% interval half-width.
    """
    settings = settings or Settings()
    inputs = coerce_inputs(config, variables, correlation, copula)
    event = coerce_event(event)
    result = _event_probability(inputs, event, settings, cancel_event, progress_callback)

    if compare_models:
        low, high = result.probability.ci90
        pinned = inputs.with_seed(result.seed)
        comparison = compare_variants(
            partial(_event_probability, event=event, settings=settings, cancel_event=cancel_event),
            pinned,
            default_variants(pinned),
            _probability_metric,
            tolerance={"probability": (high - low) / 2},
            base_result=result,
        )
        result = result.model_copy(update={"model_comparison": comparison})
    return result


# ---------------------------------------------------------------------------
# Sensitivity
# ---------------------------------------------------------------------------


def run_sensitivity(
    config,
    variables,
    *,
    variable: str,
    output_variable: str,
    lower: float = 0.8,
    upper: float = 1.2,
    steps: int = 5,
    correlation=None,
    copula=None,
    settings: Settings | None = None,
    cancel_event: threading.Event | None = None,
) -> SensitivityResult:
    """Scale one variable's initial value across [lower, upper] and track another at the horizon.

    Every step reuses the same master seed, so the response curve is free of
    sampling noise between steps.
    """
    started = time.perf_counter()
    settings = settings or Settings()
    inputs = coerce_inputs(config, variables, correlation, copula)
    multipliers = multiplier_grid(lower, upper, steps)

    plan = build_plan(inputs, settings)
    plan.index_of(variable)
    plan.index_of(output_variable)
    pinned = inputs.with_seed(plan.seed)
    horizon = plan.horizon_periods
    base_input = _input_level(pinned, variable)

    run = partial(_forecast, settings=settings, cancel_event=cancel_event)
    outputs = sweep_parameter(
        run, pinned, variable, multipliers, lambda result: result.statistics_for(output_variable, horizon)
    )
    points = [
        SensitivityPoint(
            multiplier=m,
            input_value=base_input * m,
            output_mean=stats.mean,
            output_p10=stats.p10,
            output_p90=stats.p90,
        )
        for m, stats in zip(multipliers, outputs)
    ]

    means = [p.output_mean for p in points]
    centre = next((p.output_mean for p in points if math.isclose(p.multiplier, 1.0)), None)
    if centre is None:
        centre = run(pinned).statistics_for(output_variable, horizon).mean
    return SensitivityResult(
        input_variable=variable,
        output_variable=output_variable,
        period=horizon,
        points=points,
        elasticity=midpoint_elasticity(multipliers, means),
        tornado_low=means[0] - centre,
        tornado_high=means[-1] - centre,
        seed=plan.seed,
        compute_time_ms=_elapsed_ms(started),
    )


def run_stress_test(
    config,
    variables,
    scenario,
    *,
    correlation=None,
    copula=None,
    settings: Settings | None = None,
    cancel_event: threading.Event | None = None,
) -> StressTestResult:
    """Run the base case and a shocked case with one seed and compare them at the horizon.

    Args:
        scenario: StressScenario, its dict form, or a predefined scenario key
            (``recession``, ``interest_rate_shock``, ``customer_loss``).
    """
    started = time.perf_counter()
    settings = settings or Settings()
    scenario = resolve_scenario(scenario)
    inputs = coerce_inputs(config, variables, correlation, copula)
    stressed_inputs, applied, skipped = apply_stress(inputs, scenario)

    baseline = _forecast(inputs, settings, cancel_event)
    stressed = _forecast(stressed_inputs.with_seed(baseline.seed), settings, cancel_event)
    before = _horizon_by_code(baseline)
    after = _horizon_by_code(stressed)

    notes = list(stressed.warnings)
    notes.extend(f"Stress shock for unknown variable {target!r} skipped" for target in skipped)
    logger.info("Stress test %r: shocked %s (seed %d)", scenario.name, applied or "nothing", baseline.seed)
    return StressTestResult(
        scenario_name=scenario.name,
        description=scenario.description,
        shock_type=scenario.shock_type,
        period=inputs.config.horizon_periods,
        stressed=after,
        baseline=before,
        mean_change={code: after[code].mean - before[code].mean for code in after},
        applied=applied,
        seed=baseline.seed,
        compute_time_ms=_elapsed_ms(started),
        warnings=notes,
    )


def _input_level(inputs: SimulationInputs, variable: str) -> float:
    for var in inputs.variables:
        if variable in (var.id, var.code):
            process = var.process
            if hasattr(process, "initial_value"):
                return process.initial_value
            return process.value_at(0)
    raise ValidationError(f"Unknown variable reference {variable!r}")


# ---------------------------------------------------------------------------
# Dry validation
# ---------------------------------------------------------------------------


def validate_request(payload: Mapping[str, Any], settings: Settings | None = None) -> list[str]:
    """Run every pre-simulation check on a request payload without simulating.

    Returns:
        Non-fatal warnings (PSD projection, Feller violations).
    """
    settings = settings or Settings()
    if "config" not in payload or "variables" not in payload:
        raise ValidationError("Request must contain 'config' and 'variables'")
    inputs = coerce_inputs(
        payload["config"],
        payload["variables"],
        payload.get("correlation"),
        payload.get("copula"),
        payload.get("covenants"),
    )
    plan = build_plan(inputs, settings)
    _covenant_targets(inputs, plan)
    if payload.get("event") is not None:
        validate_event(coerce_event(payload["event"]), plan.index, plan.horizon_periods)
    return list(plan.warnings)
