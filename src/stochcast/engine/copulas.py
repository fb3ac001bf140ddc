"""Copula samplers for dependent uniform draws.

Elliptical families (Gaussian, Student-t) transform correlated normals.
Archimedean families use Marshall–Olkin frailty sampling: draw a shared
latent V from the generator's Laplace-transform distribution, then
U_i = ψ(E_i / V) with E_i ~ Exp(1) independent.

  Clayton  ψ(t) = (1 + t)^(−1/θ)                      V ~ Gamma(1/θ)
  Gumbel   ψ(t) = exp(−t^(1/θ))                        V ~ positive 1/θ-stable
  Frank    ψ(t) = −log(1 − (1 − e^(−θ))e^(−t)) / θ     V ~ Logarithmic(1 − e^(−θ))

Families are calibrated to data through Kendall's tau, which has a closed
(or, for Frank, one-dimensional) relation to each family's parameter.
"""

import logging

import numpy as np
from scipy import integrate, optimize, special, stats

from stochcast.errors import ValidationError
from stochcast.schemas import CopulaFamily, CopulaSpec

logger = logging.getLogger(__name__)

LOGSERIES_MAX_P = 1 - 1e-12


def sample_gaussian(rng: np.random.Generator, factor: np.ndarray, size: int) -> np.ndarray:
    z = rng.standard_normal((size, factor.shape[0])) @ factor.T
    return special.ndtr(z)


def sample_student_t(rng: np.random.Generator, factor: np.ndarray, nu: float, size: int) -> np.ndarray:
    z = rng.standard_normal((size, factor.shape[0])) @ factor.T
    w = rng.chisquare(nu, size)
    x = z * np.sqrt(nu / w)[:, None]
    return special.stdtr(nu, x)


def sample_clayton(rng: np.random.Generator, theta: float, dim: int, size: int) -> np.ndarray:
    v = rng.gamma(1.0 / theta, 1.0, size)
    e = rng.exponential(1.0, (size, dim))
    return (1.0 + e / v[:, None]) ** (-1.0 / theta)


def positive_stable(rng: np.random.Generator, alpha: float, size: int) -> np.ndarray:
    """Kanter's representation of a positive stable variable with E[e^(−tS)] = e^(−t^α)."""
    u = rng.uniform(0.0, np.pi, size)
    w = rng.exponential(1.0, size)
    if alpha == 1.0:
        return np.ones(size)
    return (np.sin(alpha * u) / np.sin(u) ** (1.0 / alpha)) * (
        np.sin((1.0 - alpha) * u) / w
    ) ** ((1.0 - alpha) / alpha)


def sample_gumbel(rng: np.random.Generator, theta: float, dim: int, size: int) -> np.ndarray:
    alpha = 1.0 / theta
    s = positive_stable(rng, alpha, size)
    e = rng.exponential(1.0, (size, dim))
    return np.exp(-((e / s[:, None]) ** alpha))


def frank_logseries_p(theta: float) -> tuple[float, float]:
    """Logarithmic-series parameter for Frank(θ) and the strength it encodes.

    Above θ ≈ 27.6 the parameter 1 − e^(−θ) rounds to 1, so it is capped and
    the sample follows the strongest Frank copula the logseries can represent.
    """
    p = min(-np.expm1(-theta), LOGSERIES_MAX_P)
    return p, float(-np.log1p(-p))


def sample_frank(rng: np.random.Generator, theta: float, dim: int, size: int) -> np.ndarray:
    p, theta_eff = frank_logseries_p(theta)
    v = rng.logseries(p, size).astype(float)
    e = rng.exponential(1.0, (size, dim))
    # The generator inverse must use the same strength as the frailty.
    return -np.log1p(-p * np.exp(-e / v[:, None])) / theta_eff


def rotate(u: np.ndarray, rotation: int) -> np.ndarray:
    """Rotate a copula sample; 180 gives the survival copula, 90/270 are bivariate."""
    if rotation == 0:
        return u
    if rotation == 180:
        return 1.0 - u
    if rotation == 90:
        return np.column_stack([1.0 - u[:, 1], u[:, 0]])
    if rotation == 270:
        return np.column_stack([u[:, 1], 1.0 - u[:, 0]])
    raise ValueError(f"unsupported rotation {rotation}")


def sample_copula(
    spec: CopulaSpec,
    rng: np.random.Generator,
    size: int,
    dim: int,
    factor: np.ndarray | None = None,
) -> np.ndarray:
    """Draw ``size`` rows of ``dim`` dependent uniforms.

    Args:
        spec: Family and parameters.
        rng: Generator for this trial.
        size: Number of rows (one per time step).
        dim: Number of variables.
        factor: Cholesky factor of the correlation matrix; elliptical families only.
    """
    family = spec.family
    if family == CopulaFamily.GAUSSIAN:
        u = sample_gaussian(rng, factor, size)
    elif family == CopulaFamily.STUDENT_T:
        u = sample_student_t(rng, factor, spec.nu, size)
    elif family == CopulaFamily.CLAYTON:
        u = sample_clayton(rng, spec.theta, dim, size)
    elif family == CopulaFamily.GUMBEL:
        u = sample_gumbel(rng, spec.theta, dim, size)
    elif family == CopulaFamily.FRANK:
        u = sample_frank(rng, spec.theta, dim, size)
    else:
        raise ValueError(f"unknown copula family {family!r}")
    return rotate(u, spec.rotation)


def uniforms_to_normal(u: np.ndarray, clip: float = 1e-12) -> np.ndarray:
    return special.ndtri(np.clip(u, clip, 1.0 - clip))


def tail_dependence(spec: CopulaSpec, rho: float = 0.0) -> dict[str, float]:
    """Lower and upper tail-dependence coefficients of a (rotated) copula."""
    family = spec.family
    lower = upper = 0.0
    if family == CopulaFamily.CLAYTON:
        lower = 2.0 ** (-1.0 / spec.theta)
    elif family == CopulaFamily.GUMBEL:
        upper = 2.0 - 2.0 ** (1.0 / spec.theta)
    elif family == CopulaFamily.STUDENT_T:
        if rho >= 1.0:
            lower = upper = 1.0
        else:
            arg = -np.sqrt((spec.nu + 1) * (1 - rho) / (1 + rho))
            lower = upper = float(2 * special.stdtr(spec.nu + 1, arg))
    if spec.rotation == 180:
        lower, upper = upper, lower
    elif spec.rotation in (90, 270):
        # Rotated by a quarter turn the dependence sits in the off-diagonal corners.
        lower = upper = 0.0
    return {"lower": float(lower), "upper": float(upper)}


# ---------------------------------------------------------------------------
# Calibration from Kendall's tau
# ---------------------------------------------------------------------------

MIN_CLAYTON_THETA = 0.01
MIN_FRANK_THETA = 0.01
MAX_FRANK_THETA = 700.0


def kendalls_tau(x, y) -> float:
    """Sample Kendall's tau (tau-b) between two equally long series."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.shape != y.shape or x.ndim != 1 or len(x) < 2:
        raise ValidationError("Kendall's tau needs two 1-d series of the same length (>= 2)")
    tau = stats.kendalltau(x, y)[0]
    if not np.isfinite(tau):
        raise ValidationError("Kendall's tau is undefined for a constant series")
    return float(tau)


def _check_tau(tau: float):
    if not -1.0 < tau < 1.0:
        raise ValidationError(f"Kendall's tau must lie in (-1, 1), got {tau}")


def debye_1(theta: float) -> float:
    """First Debye function D1(θ) = (1/θ)∫₀^θ t/(e^t − 1) dt."""
    if theta == 0:
        return 1.0
    value, _ = integrate.quad(lambda t: t / np.expm1(t) if t != 0 else 1.0, 0.0, theta)
    return value / theta


def frank_tau(theta: float) -> float:
    return 1.0 - 4.0 / theta * (1.0 - debye_1(theta))


def fit_clayton_from_tau(tau: float) -> float:
    """τ = θ / (θ + 2)."""
    _check_tau(tau)
    theta = 2.0 * tau / (1.0 - tau)
    if tau < 0:
        logger.warning("Clayton only models positive dependence; tau %.3f clamped to theta %.2f", tau, MIN_CLAYTON_THETA)
    return max(MIN_CLAYTON_THETA, theta)


def fit_gumbel_from_tau(tau: float) -> float:
    """τ = 1 − 1/θ."""
    _check_tau(tau)
    if tau < 0:
        logger.warning("Gumbel only models positive dependence; tau %.3f clamped to independence", tau)
    return max(1.0, 1.0 / (1.0 - tau))


def fit_frank_from_tau(tau: float) -> float:
    """Invert τ = 1 − (4/θ)(1 − D1(θ)) numerically."""
    _check_tau(tau)
    if tau <= frank_tau(MIN_FRANK_THETA):
        if tau < 0:
            logger.warning("Frank sampling needs theta > 0; tau %.3f clamped to theta %.2f", tau, MIN_FRANK_THETA)
        return MIN_FRANK_THETA
    if tau >= frank_tau(MAX_FRANK_THETA):
        return MAX_FRANK_THETA
    return float(optimize.brentq(lambda th: frank_tau(th) - tau, MIN_FRANK_THETA, MAX_FRANK_THETA, xtol=1e-10))


def rho_from_tau(tau: float) -> float:
    """Correlation of an elliptical copula with Kendall's tau ``tau``."""
    _check_tau(tau)
    return float(np.sin(np.pi * tau / 2.0))


def copula_tau(spec: CopulaSpec, rho: float | None = None) -> float:
    """Kendall's tau implied by a copula; elliptical families need ``rho``."""
    family = spec.family
    if family.is_elliptical:
        rho = spec.rho if rho is None else rho
        if rho is None:
            raise ValidationError(f"{family.value} copula needs rho to imply Kendall's tau")
        tau = 2.0 / np.pi * np.arcsin(rho)
    elif family == CopulaFamily.CLAYTON:
        tau = spec.theta / (spec.theta + 2.0)
    elif family == CopulaFamily.GUMBEL:
        tau = 1.0 - 1.0 / spec.theta
    else:
        tau = frank_tau(frank_logseries_p(spec.theta)[1])
    if spec.rotation in (90, 270):
        tau = -tau
    return float(tau)


def fit_copula_from_tau(family: CopulaFamily | str, tau: float, nu: float = 4.0) -> CopulaSpec:
    """Copula of ``family`` whose Kendall's tau matches ``tau``."""
    family = CopulaFamily(family)
    if family.is_elliptical:
        return CopulaSpec(family=family, rho=rho_from_tau(tau), nu=nu)
    fit = {
        CopulaFamily.CLAYTON: fit_clayton_from_tau,
        CopulaFamily.GUMBEL: fit_gumbel_from_tau,
        CopulaFamily.FRANK: fit_frank_from_tau,
    }[family]
    return CopulaSpec(family=family, theta=fit(tau), nu=nu)


def fit_copula(family: CopulaFamily | str, x, y, nu: float = 4.0) -> CopulaSpec:
    """Calibrate a bivariate copula to paired observations by Kendall's tau."""
    tau = kendalls_tau(x, y)
    logger.info("Fitting %s copula to %d observations (tau %.4f)", CopulaFamily(family).value, len(x), tau)
    return fit_copula_from_tau(family, tau, nu)
