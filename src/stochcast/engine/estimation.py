"""Process parameter estimation from historical series.

GBM parameters come from log returns (with the Itô correction on the drift),
OU parameters from the AR(1) regression x_t = a + b·x_{t−1} + e, whose exact
discretisation gives θ = −ln(b)/dt, μ = a/(1 − b) and
σ = sd(e)·√(−2 ln b / (dt(1 − b²))).
"""

import logging
from typing import Literal, Sequence

import numpy as np
from scipy import stats

from stochcast.errors import ValidationError
from stochcast.schemas import GBMEstimate, NormalityTest, OUEstimate, ProcessRecommendation

logger = logging.getLogger(__name__)

Z_95 = 1.96
MIN_GBM_POINTS = 4
MIN_OU_POINTS = 6
MIN_NORMALITY_SAMPLE = 8
NORMALITY_LEVEL = 0.05

# Substitutes when the AR(1) slope leaves (0, 1).
NON_REVERTING_THETA = 0.001
FAST_REVERTING_THETA = 10.0

STABLE_CV = 0.03
MEAN_REVERTING_HINTS = ("margin", "roe", "roa", "ratio", "rate", "yield", "spread")
GROWTH_HINTS = ("revenue", "price", "sales", "volume", "income")


def _series(values: Sequence[float], minimum: int, what: str) -> np.ndarray:
    data = np.asarray(values, dtype=float)
    if data.ndim != 1 or len(data) < minimum:
        raise ValidationError(f"{what} needs at least {minimum} observations, got {len(data)}")
    if not np.all(np.isfinite(data)):
        raise ValidationError(f"{what} received non-finite observations")
    return data


def normality_test(sample: np.ndarray) -> NormalityTest:
    """Jarque-Bera test; small or constant samples are reported as normal."""
    if len(sample) < MIN_NORMALITY_SAMPLE or np.ptp(sample) == 0:
        return NormalityTest(statistic=0.0, p_value=1.0, is_normal=True)
    result = stats.jarque_bera(sample)
    p_value = float(result.pvalue)
    return NormalityTest(statistic=float(result.statistic), p_value=p_value, is_normal=p_value >= NORMALITY_LEVEL)


def estimate_gbm_params(prices: Sequence[float], dt: float) -> GBMEstimate:
    """Fit drift and volatility (per year) to a positive price/value series.

    Args:
        prices: Observations in time order, equally spaced.
        dt: Spacing between observations in years.
    """
    data = _series(prices, MIN_GBM_POINTS, "GBM estimation")
    if np.any(data <= 0):
        raise ValidationError("GBM estimation needs strictly positive observations")
    if dt <= 0:
        raise ValidationError("dt must be positive")

    log_returns = np.diff(np.log(data))
    n = len(log_returns)
    sigma = float(log_returns.std(ddof=1) / np.sqrt(dt))
    mu = float(log_returns.mean() / dt + 0.5 * sigma**2)
    mu_se = sigma / np.sqrt(n * dt)
    sigma_se = sigma / np.sqrt(2 * n)

    logger.debug("GBM fit on %d returns: drift=%.4f volatility=%.4f", n, mu, sigma)
    return GBMEstimate(
        drift=mu,
        drift_std_error=float(mu_se),
        drift_ci95=(mu - Z_95 * mu_se, mu + Z_95 * mu_se),
        volatility=sigma,
        volatility_std_error=float(sigma_se),
        volatility_ci95=(max(0.0, sigma - Z_95 * sigma_se), sigma + Z_95 * sigma_se),
        n_observations=n,
        last_value=float(data[-1]),
        normality=normality_test(log_returns),
    )


def estimate_ou_params(values: Sequence[float], dt: float) -> OUEstimate:
    """Fit an Ornstein-Uhlenbeck process through its exact AR(1) form.

    Slopes outside (0, 1) have no OU counterpart; they fall back to a nearly
    flat (b ≥ 1) or very fast (b ≤ 0) reversion around the sample mean and
    carry a warning.
    """
    data = _series(values, MIN_OU_POINTS, "OU estimation")
    if dt <= 0:
        raise ValidationError("dt must be positive")

    x, y = data[:-1], data[1:]
    n = len(x)
    sxx = float(((x - x.mean()) ** 2).sum())
    if sxx == 0:
        raise ValidationError("OU estimation needs a non-constant series")
    beta = float(((x - x.mean()) * (y - y.mean())).sum() / sxx)
    alpha = float(y.mean() - beta * x.mean())
    residuals = y - alpha - beta * x
    residual_sd = float(residuals.std(ddof=1))

    warning = None
    mean_reverting = True
    if beta >= 1:
        mean_reverting = False
        theta = NON_REVERTING_THETA
        mu = float(data.mean())
        sigma = float(data.std(ddof=1) / np.sqrt(dt))
        warning = "No evidence of mean reversion: AR(1) slope >= 1 suggests a unit root or explosive series"
    elif beta <= 0:
        theta = FAST_REVERTING_THETA
        mu = float(data.mean())
        sigma = float(data.std(ddof=1))
        warning = "Very fast mean reversion (AR(1) slope <= 0); check the data for oscillation or errors"
    else:
        theta = -np.log(beta) / dt
        mu = alpha / (1 - beta)
        sigma = residual_sd * np.sqrt(-2 * np.log(beta) / (dt * (1 - beta**2)))
    if warning:
        logger.warning("OU estimation: %s", warning)

    beta_se = residual_sd / np.sqrt(sxx)
    theta_se = abs(beta_se / (beta * dt)) if beta != 0 else float("inf")
    return OUEstimate(
        theta=float(theta),
        theta_std_error=float(theta_se),
        mu=float(mu),
        mu_std_error=float(data.std(ddof=1) / np.sqrt(n)),
        sigma=float(sigma),
        sigma_std_error=float(sigma / np.sqrt(2 * n)),
        half_life_years=float(np.log(2) / theta),
        n_observations=n,
        last_value=float(data[-1]),
        is_mean_reverting=mean_reverting,
        warning=warning,
    )


def recommend_process(
    values: Sequence[float],
    name: str = "",
    kind: Literal["monetary", "percentage", "ratio", "count"] = "monetary",
) -> ProcessRecommendation:
    """Suggest a process family from the data's shape, the variable's kind and its name."""
    data = _series(values, 2, "Process recommendation")
    lowered = name.lower()
    has_non_positive = bool(np.any(data <= 0))
    mean = float(data.mean())
    cv = float(data.std(ddof=1) / abs(mean)) if mean != 0 else float("inf")

    if cv < STABLE_CV and len(data) >= 5:
        return ProcessRecommendation(
            recommended="deterministic",
            confidence=0.9,
            reasoning="Coefficient of variation below 3%: the series is stable enough to hold fixed.",
        )
    if kind in ("percentage", "ratio") or any(hint in lowered for hint in MEAN_REVERTING_HINTS):
        return ProcessRecommendation(
            recommended="ornstein_uhlenbeck",
            confidence=0.8,
            reasoning="Ratios and percentages tend to revert to a long-run level.",
        )
    if (kind == "monetary" and not has_non_positive) or any(hint in lowered for hint in GROWTH_HINTS):
        warnings = ["Series contains zero or negative values; GBM keeps levels positive"] if has_non_positive else []
        return ProcessRecommendation(
            recommended="gbm",
            confidence=0.8,
            reasoning="Positive monetary levels compound, which geometric Brownian motion captures.",
            warnings=warnings,
        )
    if has_non_positive:
        return ProcessRecommendation(
            recommended="ornstein_uhlenbeck",
            confidence=0.6,
            reasoning="Non-positive observations rule out GBM; an OU process allows any real value.",
            warnings=["Check that mean reversion is economically justified"],
        )
    return ProcessRecommendation(
        recommended="gbm",
        confidence=0.5,
        reasoning="Positive data with no stronger signal; defaulting to GBM.",
        warnings=["Low confidence: confirm the process choice from domain knowledge"],
    )
