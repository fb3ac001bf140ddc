"""Monte Carlo stochastic forecasting engine."""

from stochcast.engine.forecast import run_event_probability, run_forecast, run_sensitivity, run_stress_test

__version__ = "0.1.0"

__all__ = ["run_forecast", "run_event_probability", "run_sensitivity", "run_stress_test", "__version__"]
