"""Pytest configuration and shared fixtures."""

import pytest

from stochcast.config import Settings


@pytest.fixture
def fast_settings():
    """In-process execution with small batches so merging is exercised."""
    return Settings(simulation_max_workers=1, simulation_batch_size=250)


@pytest.fixture
def base_config():
    """Minimum-size monthly run with a fixed seed."""
    return {
        "n_simulations": 1000,
        "horizon_periods": 12,
        "time_step": "monthly",
        "random_seed": 7,
    }


@pytest.fixture
def gbm_variable():
    """Revenue-like GBM variable."""
    return {
        "id": "revenue",
        "code": "REV",
        "process": {"type": "gbm", "drift": 0.08, "volatility": 0.25, "initial_value": 100.0},
    }


@pytest.fixture
def ou_variable():
    """Margin-like mean-reverting variable."""
    return {
        "id": "margin",
        "code": "MRG",
        "process": {"type": "ornstein_uhlenbeck", "theta": 2.0, "mu": 0.15, "sigma": 0.05, "initial_value": 0.12},
    }


@pytest.fixture
def two_variables(gbm_variable, ou_variable):
    return [gbm_variable, ou_variable]
