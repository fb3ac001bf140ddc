"""Stress scenarios: shocked starting levels and drifts.

A shock moves a variable's starting level (every entry of a scheduled
deterministic path) and its drift. For OU processes the drift is the
long-run mean ``mu``; Heston variance parameters and jump terms stay as
configured.
"""

import logging

from pydantic import ValidationError as PydanticValidationError

from stochcast.errors import ValidationError
from stochcast.schemas import SimulationInputs, StressScenario

from .comparator import map_level, update_process

logger = logging.getLogger(__name__)

DRIFT_FIELDS = ("drift", "mu")

PREDEFINED_STRESS_SCENARIOS = {
    "recession": StressScenario(
        name="Recession",
        description="Economic recession with revenue decline and margin compression",
        shocks={"REVENUE_GROWTH": -0.15, "GROSS_MARGIN": -0.05, "INTEREST_RATE": 0.02},
        shock_type="additive",
    ),
    "interest_rate_shock": StressScenario(
        name="Interest Rate Shock",
        description="Sharp increase in interest rates",
        shocks={"INTEREST_RATE": 0.03, "REVENUE_GROWTH": -0.03},
        shock_type="additive",
    ),
    "customer_loss": StressScenario(
        name="Customer Loss",
        description="Loss of a major customer (20% revenue impact)",
        shocks={"REVENUE_GROWTH": 0.8, "GROSS_MARGIN": 0.95},
        shock_type="multiplicative",
    ),
}


def resolve_scenario(scenario) -> StressScenario:
    """Accept a StressScenario, its dict form, or the key of a predefined scenario."""
    if isinstance(scenario, StressScenario):
        return scenario
    if isinstance(scenario, str):
        key = scenario.lower().replace(" ", "_").replace("-", "_")
        if key not in PREDEFINED_STRESS_SCENARIOS:
            known = ", ".join(sorted(PREDEFINED_STRESS_SCENARIOS))
            raise ValidationError(f"Unknown stress scenario {scenario!r}; predefined: {known}")
        return PREDEFINED_STRESS_SCENARIOS[key]
    try:
        return StressScenario.model_validate(scenario)
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, "stress scenario") from exc


def _shock(value: float, shock: float, shock_type: str) -> float:
    return value * shock if shock_type == "multiplicative" else value + shock


def shock_process(process, shock: float, shock_type: str):
    """Copy of a process config with its level and drift shocked."""
    process = map_level(process, lambda x: _shock(x, shock, shock_type))
    for name in DRIFT_FIELDS:
        if name in type(process).model_fields:
            process = process.model_copy(update={name: _shock(getattr(process, name), shock, shock_type)})
    return process


def apply_stress(inputs: SimulationInputs, scenario: StressScenario) -> tuple[SimulationInputs, list[str], list[str]]:
    """Apply every shock whose target exists.

    Returns:
        (stressed inputs, codes that were shocked, targets that matched no variable)
    """
    references = {ref: var.code for var in inputs.variables for ref in (var.id, var.code)}
    applied, skipped = [], []
    for target, shock in scenario.shocks.items():
        if target not in references:
            skipped.append(target)
            continue
        inputs = update_process(inputs, target, lambda p, s=shock: shock_process(p, s, scenario.shock_type))
        applied.append(references[target])
    for target in skipped:
        logger.warning("Stress scenario %r: no variable %r, shock skipped", scenario.name, target)
    try:
        # Shocks can push a parameter out of its domain, e.g. a GBM level below zero.
        inputs = SimulationInputs.model_validate(inputs.model_dump())
    except PydanticValidationError as exc:
        raise ValidationError.from_pydantic(exc, f"inputs stressed by {scenario.name!r}") from exc
    return inputs, applied, skipped
