"""Tests for copula samplers: uniform marginals and dependence direction."""

import numpy as np
import pytest
from scipy import stats

from stochcast.engine.copulas import (
    copula_tau,
    fit_clayton_from_tau,
    fit_copula,
    fit_copula_from_tau,
    fit_frank_from_tau,
    fit_gumbel_from_tau,
    frank_logseries_p,
    frank_tau,
    kendalls_tau,
    positive_stable,
    rho_from_tau,
    sample_copula,
    tail_dependence,
    uniforms_to_normal,
)
from stochcast.engine.correlation import cholesky_factor
from stochcast.errors import ValidationError
from stochcast.schemas import CopulaFamily, CopulaSpec

NUM_DRAWS = 50_000
FACTOR = cholesky_factor(np.array([[1.0, 0.6], [0.6, 1.0]]))


@pytest.fixture
def rng():
    return np.random.default_rng(2024)


def _kendall(u):
    return stats.kendalltau(u[:, 0], u[:, 1])[0]


class TestMarginals:
    @pytest.mark.parametrize("family", ["gaussian", "student_t", "clayton", "gumbel", "frank"])
    def test_marginals_are_uniform(self, family, rng):
        spec = CopulaSpec(family=family)
        u = sample_copula(spec, rng, NUM_DRAWS, 2, FACTOR)
        assert u.shape == (NUM_DRAWS, 2)
        assert np.all((u >= 0) & (u <= 1))
        for col in range(2):
            assert stats.kstest(u[:, col], "uniform").statistic < 0.01

    @pytest.mark.parametrize("theta", [27.0, 30.0, 40.0, 200.0])
    def test_strong_frank_keeps_uniform_marginals(self, theta, rng):
        u = sample_copula(CopulaSpec(family="frank", theta=theta), rng, NUM_DRAWS, 2)
        for col in range(2):
            assert u[:, col].mean() == pytest.approx(0.5, abs=0.01)
            assert stats.kstest(u[:, col], "uniform").statistic < 0.01
        assert _kendall(u) > 0.8

    def test_frank_strength_is_capped_consistently(self):
        p, theta_eff = frank_logseries_p(5.0)
        assert theta_eff == pytest.approx(5.0)
        p, theta_eff = frank_logseries_p(40.0)
        assert p < 1.0 and 27.0 < theta_eff < 28.0


class TestDependence:
    def test_gaussian_kendall_tau(self, rng):
        u = sample_copula(CopulaSpec(family="gaussian"), rng, NUM_DRAWS, 2, FACTOR)
        assert _kendall(u) == pytest.approx(2 / np.pi * np.arcsin(0.6), abs=0.02)

    def test_clayton_kendall_tau(self, rng):
        u = sample_copula(CopulaSpec(family="clayton", theta=2.0), rng, NUM_DRAWS, 2)
        assert _kendall(u) == pytest.approx(2.0 / (2.0 + 2.0), abs=0.02)

    def test_gumbel_kendall_tau(self, rng):
        u = sample_copula(CopulaSpec(family="gumbel", theta=2.0), rng, NUM_DRAWS, 2)
        assert _kendall(u) == pytest.approx(1 - 1 / 2.0, abs=0.02)

    def test_frank_is_positively_dependent(self, rng):
        u = sample_copula(CopulaSpec(family="frank", theta=5.0), rng, NUM_DRAWS, 2)
        assert 0.35 < _kendall(u) < 0.55

    def test_gumbel_theta_one_is_independent(self, rng):
        u = sample_copula(CopulaSpec(family="gumbel", theta=1.0), rng, NUM_DRAWS, 2)
        assert abs(_kendall(u)) < 0.02

    def test_clayton_lower_tail_heavier_than_upper(self, rng):
        u = sample_copula(CopulaSpec(family="clayton", theta=3.0), rng, NUM_DRAWS, 2)
        lower = np.mean((u[:, 0] < 0.05) & (u[:, 1] < 0.05))
        upper = np.mean((u[:, 0] > 0.95) & (u[:, 1] > 0.95))
        assert lower > 2 * upper

    def test_survival_rotation_flips_tail(self, rng):
        u = sample_copula(CopulaSpec(family="clayton", theta=3.0, rotation=180), rng, NUM_DRAWS, 2)
        lower = np.mean((u[:, 0] < 0.05) & (u[:, 1] < 0.05))
        upper = np.mean((u[:, 0] > 0.95) & (u[:, 1] > 0.95))
        assert upper > 2 * lower

    def test_quarter_rotation_gives_negative_dependence(self, rng):
        u = sample_copula(CopulaSpec(family="clayton", theta=2.0, rotation=90), rng, NUM_DRAWS, 2)
        assert _kendall(u) < -0.3

    def test_positive_stable_alpha_one(self, rng):
        np.testing.assert_array_equal(positive_stable(rng, 1.0, 5), np.ones(5))


class TestTransforms:
    def test_uniforms_to_normal_is_finite_at_edges(self):
        z = uniforms_to_normal(np.array([0.0, 0.5, 1.0]))
        assert np.all(np.isfinite(z))
        assert z[1] == 0.0 and z[0] < -7 and z[2] > 7

    def test_tail_dependence_coefficients(self):
        assert tail_dependence(CopulaSpec(family="clayton", theta=2.0)) == {"lower": pytest.approx(2 ** -0.5), "upper": 0.0}
        gumbel = tail_dependence(CopulaSpec(family="gumbel", theta=2.0))
        assert gumbel["upper"] == pytest.approx(2 - 2**0.5) and gumbel["lower"] == 0.0
        rotated = tail_dependence(CopulaSpec(family="gumbel", theta=2.0, rotation=180))
        assert rotated["lower"] == pytest.approx(2 - 2**0.5)
        t = tail_dependence(CopulaSpec(family="student_t", nu=4), rho=0.5)
        assert 0 < t["lower"] == t["upper"] < 1
        assert tail_dependence(CopulaSpec(family="gaussian"), rho=0.9) == {"lower": 0.0, "upper": 0.0}


class TestSpecValidation:
    def test_defaults_fill_theta(self):
        assert CopulaSpec(family="clayton").theta == 2.0
        assert CopulaSpec(family="frank").theta == 5.0
        assert CopulaSpec(family="gaussian").theta is None

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"family": "clayton", "theta": -1.0},
            {"family": "gumbel", "theta": 0.5},
            {"family": "frank", "theta": 0.0},
            {"family": "gaussian", "rotation": 180},
            {"family": "clayton", "rotation": 45},
        ],
    )
    def test_invalid_specs(self, kwargs):
        with pytest.raises(ValueError):
            CopulaSpec(**kwargs)


class TestCalibration:
    def test_kendalls_tau(self):
        assert kendalls_tau([1, 2, 3, 4], [10, 20, 30, 40]) == pytest.approx(1.0)
        assert kendalls_tau([1, 2, 3, 4], [4, 3, 2, 1]) == pytest.approx(-1.0)
        with pytest.raises(ValidationError):
            kendalls_tau([1, 1, 1], [1, 2, 3])
        with pytest.raises(ValidationError):
            kendalls_tau([1, 2], [1, 2, 3])

    def test_closed_form_fits(self):
        assert fit_clayton_from_tau(0.5) == pytest.approx(2.0)
        assert fit_gumbel_from_tau(0.5) == pytest.approx(2.0)
        assert fit_clayton_from_tau(-0.3) == 0.01
        assert fit_gumbel_from_tau(-0.3) == 1.0
        with pytest.raises(ValidationError):
            fit_gumbel_from_tau(1.0)

    def test_frank_fit_inverts_tau(self):
        # Frank(5) has tau ≈ 0.4567
        assert frank_tau(5.0) == pytest.approx(0.4567, abs=1e-3)
        assert fit_frank_from_tau(frank_tau(5.0)) == pytest.approx(5.0, rel=1e-6)
        assert fit_frank_from_tau(-0.2) == 0.01

    @pytest.mark.parametrize(
        "spec",
        [
            CopulaSpec(family="clayton", theta=3.0),
            CopulaSpec(family="gumbel", theta=1.5),
            CopulaSpec(family="frank", theta=8.0),
            CopulaSpec(family="gaussian", rho=0.4),
        ],
    )
    def test_round_trip_through_tau(self, spec):
        refit = fit_copula_from_tau(spec.family, copula_tau(spec))
        assert copula_tau(refit) == pytest.approx(copula_tau(spec), abs=1e-8)

    def test_elliptical_tau_needs_rho(self):
        assert copula_tau(CopulaSpec(family="student_t"), rho=0.5) == pytest.approx(1 / 3)
        assert rho_from_tau(1 / 3) == pytest.approx(0.5)
        with pytest.raises(ValidationError):
            copula_tau(CopulaSpec(family="gaussian"))

    def test_quarter_rotation_negates_tau(self):
        assert copula_tau(CopulaSpec(family="clayton", theta=2.0, rotation=90)) == pytest.approx(-0.5)
        assert copula_tau(CopulaSpec(family="clayton", theta=2.0, rotation=180)) == pytest.approx(0.5)

    def test_fit_copula_recovers_sampled_dependence(self, rng):
        u = sample_copula(CopulaSpec(family="gumbel", theta=2.0), rng, 3000, 2)
        spec = fit_copula(CopulaFamily.GUMBEL, u[:, 0], u[:, 1])
        assert spec.family == CopulaFamily.GUMBEL
        assert spec.theta == pytest.approx(2.0, abs=0.15)
