"""Tests for model comparison and parameter sweeps."""

import numpy as np
import pytest

from stochcast import run_event_probability, run_forecast
from stochcast.errors import ValidationError
from stochcast.engine.comparator import (
    Variant,
    compare_models,
    default_variants,
    midpoint_elasticity,
    multiplier_grid,
    scale_initial_value,
    sweep_parameter,
)
from stochcast.engine.forecast import coerce_inputs
from stochcast.schemas import CopulaFamily, CorrelationMethod, Discretization


def names(variants):
    return [v.name for v in variants]


class TestDefaultVariants:
    def test_independent_run(self, base_config, two_variables):
        inputs = coerce_inputs(base_config, two_variables)
        assert names(default_variants(inputs)) == ["discretization:milstein"]

    def test_milstein_run_flips_to_euler(self, base_config, two_variables):
        inputs = coerce_inputs({**base_config, "discretization": "milstein"}, two_variables)
        variant = default_variants(inputs)[0]
        assert variant.apply(inputs).config.discretization == Discretization.EULER

    def test_matrix_without_method_offers_cholesky(self, base_config, two_variables):
        inputs = coerce_inputs(base_config, two_variables, [[1, 0.5], [0.5, 1]])
        assert "correlation:cholesky" in names(default_variants(inputs))

    def test_copula_run_offers_other_families(self, base_config, two_variables):
        inputs = coerce_inputs(
            {**base_config, "correlation_method": "copula"}, two_variables, copula={"family": "clayton"}
        )
        variants = default_variants(inputs)
        assert names(variants) == [
            "discretization:milstein",
            "correlation:none",
            "copula:gaussian",
            "copula:student_t",
            "copula:gumbel",
        ]
        gaussian = variants[2].apply(inputs)
        assert gaussian.copula.family == CopulaFamily.GAUSSIAN
        # Clayton(2) has Kendall's tau 0.5
        assert gaussian.copula.rho == pytest.approx(np.sin(np.pi / 4))
        assert variants[4].apply(inputs).copula.theta == pytest.approx(2.0)
        assert variants[1].apply(inputs).config.correlation_method == CorrelationMethod.NONE
        assert inputs.copula.family == CopulaFamily.CLAYTON

    def test_archimedean_variants_match_kendalls_tau(self, base_config, two_variables):
        inputs = coerce_inputs(
            {**base_config, "correlation_method": "copula"}, two_variables, copula={"family": "gaussian", "rho": 0.6}
        )
        tau = 2 / np.pi * np.arcsin(0.6)
        by_name = {v.name: v.apply(inputs).copula for v in default_variants(inputs)[2:]}
        assert by_name["copula:student_t"].rho == 0.6
        assert by_name["copula:clayton"].theta == pytest.approx(2 * tau / (1 - tau))
        assert by_name["copula:gumbel"].theta == pytest.approx(1 / (1 - tau))

    def test_matrix_sets_tau_for_elliptical_copula(self, base_config, two_variables):
        inputs = coerce_inputs(
            {**base_config, "correlation_method": "copula"}, two_variables,
            [[1, 0.3], [0.3, 1]], copula={"family": "student_t"},
        )
        clayton = next(v for v in default_variants(inputs) if v.name == "copula:clayton").apply(inputs).copula
        tau = 2 / np.pi * np.arcsin(0.3)
        assert clayton.theta == pytest.approx(2 * tau / (1 - tau))

    def test_archimedean_to_elliptical_keeps_matrix(self, base_config, two_variables):
        inputs = coerce_inputs(
            {**base_config, "correlation_method": "copula"}, two_variables,
            [[1, 0.3], [0.3, 1]], copula={"family": "gumbel", "theta": 3.0},
        )
        gaussian = next(v for v in default_variants(inputs) if v.name == "copula:gaussian").apply(inputs).copula
        assert gaussian.rho is None

    def test_negative_dependence_clamps_archimedean_variants(self, base_config, two_variables):
        inputs = coerce_inputs(
            {**base_config, "correlation_method": "copula"}, two_variables, copula={"family": "gaussian", "rho": -0.5}
        )
        by_name = {v.name: v.apply(inputs).copula for v in default_variants(inputs)[2:]}
        assert by_name["copula:clayton"].theta == pytest.approx(0.01)
        assert by_name["copula:gumbel"].theta == 1.0


class TestCompareModels:
    def test_requires_pinned_seed(self, base_config, gbm_variable):
        config = {k: v for k, v in base_config.items() if k != "random_seed"}
        inputs = coerce_inputs(config, [gbm_variable])
        with pytest.raises(ValidationError):
            compare_models(lambda i: i, inputs, [], lambda r: {}, tolerance={})

    def test_deltas_and_flags(self, base_config, gbm_variable):
        inputs = coerce_inputs(base_config, [gbm_variable])
        shift = Variant(name="double", axis="scale", apply=lambda i: scale_initial_value(i, "REV", 2.0))
        same = Variant(name="same", axis="none", apply=lambda i: i)

        def run(i):
            return i.variables[0].process.initial_value

        comparison = compare_models(run, inputs, [shift, same], lambda r: {"level": r}, tolerance={"level": 1.0})
        assert comparison.base == {"level": 100.0}
        assert comparison.variants[0].deltas == {"level": 100.0}
        assert comparison.variants[0].sensitive and not comparison.variants[1].sensitive
        assert comparison.max_abs_delta == 100.0 and comparison.sensitive

    def test_forecast_comparison(self, base_config, two_variables, fast_settings):
        result = run_forecast(base_config, two_variables, compare_models=True, settings=fast_settings)
        comparison = result.model_comparison
        assert comparison is not None
        assert [v.name for v in comparison.variants] == ["discretization:milstein"]
        assert set(comparison.base) == {"REV.mean", "REV.p05", "REV.p95", "MRG.mean", "MRG.p05", "MRG.p95"}
        # OU is unaffected by Milstein, so its metrics are reproduced exactly
        assert comparison.variants[0].deltas["MRG.mean"] == 0.0

    def test_event_comparison_with_copula(self, base_config, two_variables, fast_settings):
        event = {
            "type": "compound",
            "operator": "AND",
            "children": [
                {"type": "threshold_breach", "variable": "REV", "comparator": "<", "bound": 90, "by_period": 12},
                {"type": "threshold_breach", "variable": "MRG", "comparator": "<", "bound": 0.12, "by_period": 12},
            ],
        }
        result = run_event_probability(
            event, two_variables, {**base_config, "correlation_method": "copula"},
            copula={"family": "gaussian", "rho": 0.6}, compare_models=True, settings=fast_settings,
        )
        comparison = result.model_comparison
        assert [v.axis for v in comparison.variants] == ["discretization", "correlation", "copula", "copula", "copula"]
        for variant in comparison.variants:
            assert variant.deltas["probability"] == pytest.approx(
                variant.metrics["probability"] - result.probability.mean
            )
        assert comparison.max_abs_delta == max(abs(v.deltas["probability"]) for v in comparison.variants)


class TestSweep:
    def test_scale_initial_value(self, base_config, two_variables):
        inputs = coerce_inputs(base_config, two_variables)
        scaled = scale_initial_value(inputs, "margin", 2.0)
        assert scaled.variables[1].process.initial_value == pytest.approx(0.24)
        assert scaled.variables[0] == inputs.variables[0]
        with pytest.raises(ValidationError):
            scale_initial_value(inputs, "capex", 2.0)

    def test_scale_deterministic_path(self, base_config):
        inputs = coerce_inputs(base_config, [{"id": "t", "code": "T", "process": {"type": "deterministic", "path": [1.0, 2.0]}}])
        assert scale_initial_value(inputs, "T", 3.0).variables[0].process.path == (3.0, 6.0)

    def test_sweep_parameter(self, base_config, gbm_variable):
        inputs = coerce_inputs(base_config, [gbm_variable])
        values = sweep_parameter(lambda i: i, inputs, "REV", [0.5, 1.0], lambda i: i.variables[0].process.initial_value)
        assert values == [50.0, 100.0]

    def test_elasticity(self):
        assert midpoint_elasticity([0.9, 1.0, 1.1], [9.0, 10.0, 11.0]) == pytest.approx(1.0)
        assert midpoint_elasticity([0.9, 1.0, 1.1], [8.1, 10.0, 12.1]) == pytest.approx(2.0)
        assert midpoint_elasticity([1.0, 2.0], [1.0, 2.0]) is None
        assert midpoint_elasticity([0.9, 1.0, 1.1], [1.0, 0.0, -1.0]) is None

    def test_multiplier_grid(self):
        assert multiplier_grid(0.5, 1.5, 3) == [0.5, 1.0, 1.5]
        with pytest.raises(ValidationError):
            multiplier_grid(0.0, 1.0, 3)
        with pytest.raises(ValidationError):
            multiplier_grid(0.8, 1.2, 1)
