"""Tests for stress scenarios and the stressed-versus-baseline run."""

import numpy as np
import pytest

from stochcast.engine.forecast import coerce_inputs, run_stress_test
from stochcast.engine.stress import PREDEFINED_STRESS_SCENARIOS, apply_stress, resolve_scenario
from stochcast.errors import ValidationError
from stochcast.schemas import StressScenario


@pytest.fixture
def growth_variables():
    return [
        {
            "id": "growth",
            "code": "REVENUE_GROWTH",
            "process": {"type": "ornstein_uhlenbeck", "theta": 1.0, "mu": 0.05, "sigma": 0.02, "initial_value": 0.04},
        },
        {
            "id": "margin",
            "code": "GROSS_MARGIN",
            "process": {"type": "ornstein_uhlenbeck", "theta": 2.0, "mu": 0.4, "sigma": 0.03, "initial_value": 0.38},
        },
    ]


class TestResolveScenario:
    def test_predefined_keys(self):
        assert resolve_scenario("recession") is PREDEFINED_STRESS_SCENARIOS["recession"]
        assert resolve_scenario("Interest-Rate Shock").name == "Interest Rate Shock"
        assert resolve_scenario("customer_loss").shock_type == "multiplicative"

    def test_unknown_key(self):
        with pytest.raises(ValidationError, match="recession"):
            resolve_scenario("meteor_strike")

    def test_dict_form(self):
        scenario = resolve_scenario({"name": "Haircut", "shocks": {"REV": 0.9}, "shock_type": "multiplicative"})
        assert isinstance(scenario, StressScenario)
        assert scenario.shocks == {"REV": 0.9}

    def test_dict_without_shocks(self):
        with pytest.raises(ValidationError):
            resolve_scenario({"name": "Empty", "shocks": {}})


class TestApplyStress:
    def test_recession_shifts_levels_and_means(self, base_config, growth_variables):
        inputs = coerce_inputs(base_config, growth_variables)
        stressed, applied, skipped = apply_stress(inputs, resolve_scenario("recession"))
        growth, margin = (var.process for var in stressed.variables)
        assert growth.initial_value == pytest.approx(0.04 - 0.15)
        assert growth.mu == pytest.approx(0.05 - 0.15)
        assert margin.initial_value == pytest.approx(0.38 - 0.05)
        assert margin.mu == pytest.approx(0.4 - 0.05)
        assert growth.theta == 1.0 and growth.sigma == 0.02
        assert applied == ["REVENUE_GROWTH", "GROSS_MARGIN"]
        assert skipped == ["INTEREST_RATE"]

    def test_original_inputs_untouched(self, base_config, growth_variables):
        inputs = coerce_inputs(base_config, growth_variables)
        apply_stress(inputs, resolve_scenario("recession"))
        assert inputs.variables[0].process.initial_value == 0.04

    def test_gbm_level_and_drift_scaled_by_id(self, base_config, gbm_variable):
        inputs = coerce_inputs(base_config, [gbm_variable])
        scenario = StressScenario(name="Haircut", shocks={"revenue": 0.5}, shock_type="multiplicative")
        stressed, applied, _ = apply_stress(inputs, scenario)
        process = stressed.variables[0].process
        assert process.initial_value == pytest.approx(50.0)
        assert process.drift == pytest.approx(0.04)
        assert process.volatility == 0.25
        assert applied == ["REV"]

    def test_deterministic_value_shifted(self, base_config):
        rent = {"id": "rent", "code": "RENT", "process": {"type": "deterministic", "value": 10.0}}
        inputs = coerce_inputs(base_config, [rent])
        stressed, _, _ = apply_stress(inputs, StressScenario(name="Rent hike", shocks={"RENT": 2.0}))
        assert stressed.variables[0].process.value == pytest.approx(12.0)

    def test_shock_out_of_domain_raises(self, base_config, gbm_variable):
        inputs = coerce_inputs(base_config, [gbm_variable])
        with pytest.raises(ValidationError):
            apply_stress(inputs, StressScenario(name="Wipeout", shocks={"REV": -150.0}))


class TestRunStressTest:
    def test_multiplicative_shock_scales_gbm_paths(self, base_config, gbm_variable, fast_settings):
        scenario = {"name": "Haircut", "shocks": {"REV": 0.8}, "shock_type": "multiplicative"}
        result = run_stress_test(base_config, [gbm_variable], scenario, settings=fast_settings)
        before, after = result.baseline["REV"], result.stressed["REV"]
        # Same seed, same shocks: the log step scales every path by 0.8·e^((0.064 − 0.08)·1).
        factor = 0.8 * np.exp(-0.016)
        assert after.mean == pytest.approx(before.mean * factor, rel=1e-9)
        assert result.mean_change["REV"] == pytest.approx(after.mean - before.mean)
        assert result.mean_change["REV"] < 0
        assert result.period == 12 and result.seed == 7
        assert result.applied == ["REV"]

    def test_unknown_targets_are_reported(self, base_config, two_variables, fast_settings):
        result = run_stress_test(base_config, two_variables, "recession", settings=fast_settings)
        assert result.applied == []
        assert result.mean_change == {"REV": 0.0, "MRG": 0.0}
        assert any("REVENUE_GROWTH" in w for w in result.warnings)
        assert result.scenario_name == "Recession"

    def test_seed_is_shared_without_config_seed(self, base_config, gbm_variable, fast_settings):
        config = {**base_config, "random_seed": None}
        scenario = {"name": "Flat", "shocks": {"REV": 1.0}, "shock_type": "multiplicative"}
        result = run_stress_test(config, [gbm_variable], scenario, settings=fast_settings)
        assert result.stressed["REV"].mean == result.baseline["REV"].mean
