"""Typed failures reported by the simulation engine.

Every error carries a machine-readable ``code`` and serialises to the same
``{"code", "message", "detail"}`` shape so the calling layer can forward it
without knowing the concrete type.
"""

from typing import Any


class SimulationError(Exception):
    """Base class for all engine failures."""

    code = "simulation_error"

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "detail": self.detail}

    def __reduce__(self):
        # Keyword-only constructors do not survive the default exception
        # pickling used by ProcessPoolExecutor.
        return _rebuild_error, (self.__class__, self.message, self.detail)


def _rebuild_error(cls: type, message: str, detail: dict[str, Any]) -> SimulationError:
    err = cls.__new__(cls)
    Exception.__init__(err, message)
    err.message = message
    err.detail = detail
    for key, value in detail.items():
        setattr(err, key, value)
    return err


class ValidationError(SimulationError, ValueError):
    """Input rejected before any simulation work begins."""

    code = "validation_error"

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None):
        super().__init__(message, errors=errors or [])
        self.errors = errors or []

    @classmethod
    def from_pydantic(cls, exc, what: str) -> "ValidationError":
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        for err in errors:
            err["loc"] = [str(part) for part in err.get("loc", ())]
        first = errors[0]["msg"] if errors else str(exc)
        return cls(f"Invalid {what}: {first}", errors=errors)


class UnsupportedProcessError(SimulationError):
    """A variable names a process type the engine does not implement."""

    code = "unsupported_process"

    def __init__(self, process_type: str, variable_id: str | None = None):
        target = f" for variable {variable_id!r}" if variable_id else ""
        super().__init__(
            f"Unsupported process type {process_type!r}{target}",
            process_type=process_type,
            variable_id=variable_id,
        )
        self.process_type = process_type
        self.variable_id = variable_id


class NumericalInstabilityError(SimulationError, ArithmeticError):
    """A simulation step produced NaN or infinity."""

    code = "numerical_instability"

    def __init__(self, variable_id: str, scenario_index: int, period: int, value: float):
        super().__init__(
            f"Non-finite value {value!r} for variable {variable_id!r} "
            f"in scenario {scenario_index} at period {period}",
            variable_id=variable_id,
            scenario_index=scenario_index,
            period=period,
            value=str(value),
        )
        self.variable_id = variable_id
        self.scenario_index = scenario_index
        self.period = period
        self.value = str(value)


class SimulationCancelledError(SimulationError):
    """The caller's cancellation flag was observed between batches."""

    code = "cancelled"

    def __init__(self, completed_batches: int, total_batches: int):
        super().__init__(
            f"Simulation cancelled after {completed_batches}/{total_batches} batches",
            completed_batches=completed_batches,
            total_batches=total_batches,
        )
        self.completed_batches = completed_batches
        self.total_batches = total_batches


class ConfigWarning(UserWarning):
    """Non-fatal data-quality issue; the result is still computed but flagged."""
