"""Pydantic data model for simulation inputs and results."""

from enum import Enum
from typing import Annotated, Any, Literal, Union

import numpy as np
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

MIN_SIMULATIONS = 1_000
MAX_SIMULATIONS = 100_000
EQUALITY_TOLERANCE = 1e-10


class _Input(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid", allow_inf_nan=False)


# --- Enumerations ---


class TimeStep(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def years(self) -> float:
        """Length of one step as a fraction of a year."""
        return _STEP_YEARS[self]


_STEP_YEARS = {
    TimeStep.DAILY: 1 / 252,
    TimeStep.WEEKLY: 1 / 52,
    TimeStep.MONTHLY: 1 / 12,
    TimeStep.QUARTERLY: 1 / 4,
    TimeStep.YEARLY: 1.0,
}


class CorrelationMethod(str, Enum):
    NONE = "none"
    CHOLESKY = "cholesky"
    COPULA = "copula"


class Discretization(str, Enum):
    EULER = "euler"
    MILSTEIN = "milstein"
    EXACT = "exact"


class CopulaFamily(str, Enum):
    GAUSSIAN = "gaussian"
    STUDENT_T = "student_t"
    CLAYTON = "clayton"
    GUMBEL = "gumbel"
    FRANK = "frank"

    @property
    def is_elliptical(self) -> bool:
        return self in (CopulaFamily.GAUSSIAN, CopulaFamily.STUDENT_T)


class Comparator(str, Enum):
    GT = ">"
    LT = "<"
    GE = ">="
    LE = "<="
    EQ = "=="
    NE = "!="

    def apply(self, values: np.ndarray, bound: float) -> np.ndarray:
        """Elementwise comparison; equality uses an absolute tolerance."""
        if self is Comparator.GT:
            return values > bound
        if self is Comparator.LT:
            return values < bound
        if self is Comparator.GE:
            return values >= bound
        if self is Comparator.LE:
            return values <= bound
        if self is Comparator.EQ:
            return np.abs(values - bound) <= EQUALITY_TOLERANCE
        return np.abs(values - bound) > EQUALITY_TOLERANCE


# --- Simulation configuration ---


class SimulationConfig(_Input):
    n_simulations: int = Field(
        10_000, ge=MIN_SIMULATIONS, le=MAX_SIMULATIONS, description="Number of scenarios"
    )
    horizon_periods: int = Field(ge=1, description="Number of time steps after period 0")
    time_step: TimeStep = TimeStep.MONTHLY
    random_seed: int | None = Field(None, ge=0, description="Master seed; drawn from OS entropy if omitted")
    correlation_method: CorrelationMethod = CorrelationMethod.NONE
    discretization: Discretization = Discretization.EULER


# --- Process parameters ---


class GBMParams(_Input):
    type: Literal["gbm"] = "gbm"
    drift: float
    volatility: float = Field(ge=0)
    initial_value: float = Field(gt=0)


class OUParams(_Input):
    type: Literal["ornstein_uhlenbeck"] = "ornstein_uhlenbeck"
    theta: float = Field(ge=0, description="Mean-reversion speed")
    mu: float = Field(description="Long-run mean")
    sigma: float = Field(ge=0)
    initial_value: float


class HestonParams(_Input):
    type: Literal["heston"] = "heston"
    drift: float
    kappa: float = Field(ge=0, description="Variance mean-reversion speed")
    theta: float = Field(ge=0, description="Long-run variance")
    xi: float = Field(ge=0, description="Volatility of variance")
    rho: float = Field(ge=-1, le=1, description="Level/variance shock correlation")
    initial_value: float = Field(gt=0)
    initial_variance: float = Field(ge=0)

    @property
    def satisfies_feller(self) -> bool:
        return 2 * self.kappa * self.theta > self.xi**2


class MertonJumpParams(_Input):
    type: Literal["merton_jump"] = "merton_jump"
    drift: float
    volatility: float = Field(ge=0)
    jump_intensity: float = Field(ge=0, description="Expected jumps per year")
    jump_mean: float = Field(description="Mean log jump size")
    jump_std: float = Field(ge=0, description="Std of log jump size")
    initial_value: float = Field(gt=0)
    compensate_drift: bool = False


class DeterministicParams(_Input):
    type: Literal["deterministic"] = "deterministic"
    value: float | None = None
    path: Annotated[tuple[float, ...], Field(min_length=1)] | None = Field(
        None, description="Value per period from 0"
    )

    @model_validator(mode="after")
    def _exactly_one_source(self):
        if (self.value is None) == (self.path is None):
            raise ValueError("deterministic process needs exactly one of 'value' or 'path'")
        return self

    def value_at(self, period: int) -> float:
        if self.path is None:
            return self.value
        return self.path[min(period, len(self.path) - 1)]


ProcessConfig = Annotated[
    Union[GBMParams, OUParams, HestonParams, MertonJumpParams, DeterministicParams],
    Field(discriminator="type"),
]


class VariableConfig(_Input):
    id: str = Field(min_length=1)
    code: str = Field(min_length=1, description="Short display code, also usable in event references")
    process: ProcessConfig


# --- Dependence ---


DEFAULT_THETA = {
    CopulaFamily.CLAYTON: 2.0,
    CopulaFamily.GUMBEL: 2.0,
    CopulaFamily.FRANK: 5.0,
}


class CopulaSpec(_Input):
    family: CopulaFamily
    theta: float | None = Field(None, description="Archimedean dependence strength")
    nu: float = Field(4.0, gt=0, description="Student-t degrees of freedom")
    rho: float | None = Field(None, ge=-1, le=1, description="Equicorrelation when no matrix is supplied")
    rotation: Literal[0, 90, 180, 270] = 0

    @model_validator(mode="before")
    @classmethod
    def _default_theta(cls, data: Any) -> Any:
        if isinstance(data, dict) and data.get("theta") is None:
            try:
                family = CopulaFamily(data.get("family"))
            except ValueError:
                return data
            if family in DEFAULT_THETA:
                data = {**data, "theta": DEFAULT_THETA[family]}
        return data

    @model_validator(mode="after")
    def _check_strength(self):
        if self.family is CopulaFamily.CLAYTON and not self.theta > 0:
            raise ValueError("clayton theta must be > 0")
        if self.family is CopulaFamily.GUMBEL and not self.theta >= 1:
            raise ValueError("gumbel theta must be >= 1")
        if self.family is CopulaFamily.FRANK and not self.theta > 0:
            raise ValueError("frank theta must be > 0")
        if self.family.is_elliptical and self.rotation != 0:
            raise ValueError(f"{self.family.value} copula is radially symmetric; rotation must be 0")
        return self


class CovenantConfig(_Input):
    id: str
    name: str
    variable: str = Field(description="Variable id or code")
    comparator: Comparator
    threshold: float


class StressScenario(_Input):
    """Shocks applied to starting levels and drifts before a stressed run.

    Each shock targets a variable by id or code. ``additive`` shocks add to
    the level and drift, ``multiplicative`` shocks scale them.
    """

    name: str = Field(min_length=1)
    description: str = ""
    shocks: dict[str, float] = Field(min_length=1)
    shock_type: Literal["additive", "multiplicative"] = "additive"


# --- Event definitions ---


class ThresholdBreach(_Input):
    type: Literal["threshold_breach"] = "threshold_breach"
    variable: str = Field(description="Variable id or code")
    comparator: Comparator
    bound: float
    by_period: int = Field(ge=0)
    window: Literal["by", "at"] = "by"
    label: str | None = None

    @property
    def period_bound(self) -> int:
        return self.by_period


class CompoundEvent(_Input):
    type: Literal["compound"] = "compound"
    operator: Literal["AND", "OR"]
    children: tuple["EventDefinition", ...] = Field(min_length=1)
    label: str | None = None

    @property
    def period_bound(self) -> int:
        return max(child.period_bound for child in self.children)


class ConditionalEvent(_Input):
    type: Literal["conditional"] = "conditional"
    consequent: "EventDefinition"
    antecedent: "EventDefinition"
    label: str | None = None

    @property
    def period_bound(self) -> int:
        return self.consequent.period_bound


class SequenceEvent(_Input):
    type: Literal["sequence"] = "sequence"
    children: tuple["EventDefinition", ...] = Field(min_length=2)
    max_gap: int | None = Field(None, ge=0, description="Max periods between consecutive triggers")
    label: str | None = None

    @model_validator(mode="after")
    def _bounds_increase(self):
        bounds = [child.period_bound for child in self.children]
        if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
            raise ValueError(f"sequence period bounds must be strictly increasing, got {bounds}")
        return self

    @property
    def period_bound(self) -> int:
        return max(child.period_bound for child in self.children)


class AtLeastKEvent(_Input):
    type: Literal["at_least_k"] = "at_least_k"
    k: int = Field(ge=1)
    children: tuple["EventDefinition", ...] = Field(min_length=1)
    label: str | None = None

    @model_validator(mode="after")
    def _k_within_children(self):
        if self.k > len(self.children):
            raise ValueError(f"k={self.k} exceeds the number of children ({len(self.children)})")
        return self

    @property
    def period_bound(self) -> int:
        return max(child.period_bound for child in self.children)


EventDefinition = Annotated[
    Union[ThresholdBreach, CompoundEvent, ConditionalEvent, SequenceEvent, AtLeastKEvent],
    Field(discriminator="type"),
]

for _node in (CompoundEvent, ConditionalEvent, SequenceEvent, AtLeastKEvent):
    _node.model_rebuild()

EVENT_NODE_TYPES = (ThresholdBreach, CompoundEvent, ConditionalEvent, SequenceEvent, AtLeastKEvent)
event_adapter = TypeAdapter(EventDefinition)


# --- Validated invocation inputs ---


class SimulationInputs(_Input):
    """Everything one invocation needs, validated together."""

    config: SimulationConfig
    variables: tuple[VariableConfig, ...] = Field(min_length=1)
    correlation: tuple[tuple[float, ...], ...] | None = None
    copula: CopulaSpec | None = None
    covenants: tuple[CovenantConfig, ...] = ()

    @model_validator(mode="after")
    def _unique_references(self):
        ids = [v.id for v in self.variables]
        codes = [v.code for v in self.variables]
        if len(set(ids)) != len(ids):
            raise ValueError(f"variable ids must be unique, got {ids}")
        if len(set(codes)) != len(codes):
            raise ValueError(f"variable codes must be unique, got {codes}")
        for var in self.variables:
            clash = [other.id for other in self.variables if other is not var and other.code == var.id]
            if clash:
                raise ValueError(f"variable id {var.id!r} is also the code of {clash[0]!r}")
        return self

    def with_seed(self, seed: int) -> "SimulationInputs":
        return self.model_copy(update={"config": self.config.model_copy(update={"random_seed": seed})})


# --- Results ---


class PeriodStatistics(BaseModel):
    variable_id: str
    variable_code: str
    period: int
    mean: float
    median: float
    std: float = Field(description="Sample standard deviation (ddof=1)")
    p01: float
    p05: float
    p10: float
    p25: float
    p50: float
    p75: float
    p90: float
    p95: float
    p99: float
    min: float
    max: float
    prob_negative: float
    skewness: float = Field(0.0, description="Adjusted Fisher-Pearson sample skewness")
    kurtosis: float = Field(0.0, description="Sample excess kurtosis")
    var_95: float = Field(description="Value exceeded by 95% of scenarios (p05)")
    var_99: float = Field(description="Value exceeded by 99% of scenarios (p01)")
    cvar_90: float = Field(description="Mean of values at or below p10")
    cvar_95: float = Field(description="Mean of values at or below p05")
    cvar_99: float = Field(description="Mean of values at or below p01")


class CovenantPeriodResult(BaseModel):
    covenant_id: str
    name: str
    period: int
    breach_probability: float
    breach_scenarios: int
    avg_breach_magnitude: float | None = None


class VariantOutcome(BaseModel):
    name: str
    axis: str
    metrics: dict[str, float]
    deltas: dict[str, float]
    sensitive: bool


class ModelComparison(BaseModel):
    base: dict[str, float]
    variants: list[VariantOutcome]
    max_abs_delta: float
    sensitive: bool = Field(description="Whether any variant moved a metric beyond tolerance")


class ForecastResult(BaseModel):
    period_statistics: list[PeriodStatistics]
    covenant_results: list[CovenantPeriodResult] = Field(default_factory=list)
    scenario_count: int
    compute_time_ms: float
    seed: int
    warnings: list[str] = Field(default_factory=list)
    model_comparison: ModelComparison | None = None

    def statistics_for(self, variable: str, period: int) -> PeriodStatistics:
        for stats in self.period_statistics:
            if stats.period == period and variable in (stats.variable_id, stats.variable_code):
                return stats
        raise KeyError(f"no statistics for {variable!r} at period {period}")


class ProbabilityEstimate(BaseModel):
    mean: float
    ci90: tuple[float, float]
    ci95: tuple[float, float]


class EventDecomposition(BaseModel):
    per_variable: dict[str, float] = Field(description="Marginal probability of each variable's first threshold")
    joint: float
    joint_independent: float = Field(description="Product of per-variable probabilities")
    risk_multiplier: float | None = Field(None, description="joint / joint_independent")
    tail_dependence: dict[str, float] | None = None


class TerminalPercentiles(BaseModel):
    p5: float
    p25: float
    p50: float
    p75: float
    p95: float


class EventProbabilityResult(BaseModel):
    probability: ProbabilityEstimate
    scenario_count: int
    effective_scenarios: int = Field(description="Scenarios in the denominator after conditioning")
    decomposition: EventDecomposition
    percentiles: dict[str, TerminalPercentiles] = Field(default_factory=dict)
    model_comparison: ModelComparison | None = None
    compute_time_ms: float
    seed: int
    warnings: list[str] = Field(default_factory=list)


class SensitivityPoint(BaseModel):
    multiplier: float
    input_value: float
    output_mean: float
    output_p10: float
    output_p90: float


class SensitivityResult(BaseModel):
    input_variable: str
    output_variable: str
    period: int
    points: list[SensitivityPoint]
    elasticity: float | None = Field(None, description="d ln(output mean) / d ln(input) at the midpoint")
    tornado_low: float = Field(description="Output mean change at the lowest multiplier")
    tornado_high: float = Field(description="Output mean change at the highest multiplier")
    seed: int
    compute_time_ms: float


class StressTestResult(BaseModel):
    scenario_name: str
    description: str = ""
    shock_type: str
    period: int
    stressed: dict[str, PeriodStatistics] = Field(description="Horizon statistics per variable code under the shocks")
    baseline: dict[str, PeriodStatistics] = Field(description="Horizon statistics per variable code without shocks")
    mean_change: dict[str, float] = Field(description="Stressed minus baseline horizon mean")
    applied: list[str] = Field(default_factory=list, description="Variable codes that received a shock")
    seed: int
    compute_time_ms: float
    warnings: list[str] = Field(default_factory=list)


# --- Parameter estimation ---


class NormalityTest(BaseModel):
    statistic: float
    p_value: float
    is_normal: bool


class GBMEstimate(BaseModel):
    drift: float
    drift_std_error: float
    drift_ci95: tuple[float, float]
    volatility: float
    volatility_std_error: float
    volatility_ci95: tuple[float, float]
    n_observations: int
    last_value: float
    normality: NormalityTest

    def to_process(self, initial_value: float | None = None) -> GBMParams:
        return GBMParams(
            drift=self.drift,
            volatility=self.volatility,
            initial_value=self.last_value if initial_value is None else initial_value,
        )


class OUEstimate(BaseModel):
    theta: float = Field(description="Mean-reversion speed per year")
    theta_std_error: float
    mu: float
    mu_std_error: float
    sigma: float
    sigma_std_error: float
    half_life_years: float
    n_observations: int
    last_value: float
    is_mean_reverting: bool
    warning: str | None = None

    def to_process(self, initial_value: float | None = None) -> OUParams:
        return OUParams(
            theta=self.theta,
            mu=self.mu,
            sigma=self.sigma,
            initial_value=self.last_value if initial_value is None else initial_value,
        )


class ProcessRecommendation(BaseModel):
    recommended: Literal["gbm", "ornstein_uhlenbeck", "deterministic"]
    confidence: float
    reasoning: str
    warnings: list[str] = Field(default_factory=list)
