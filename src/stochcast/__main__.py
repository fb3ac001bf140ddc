import json
import logging
import sys

import click

from stochcast.config import Settings
from stochcast.errors import SimulationError
from stochcast.logging_config import setup_logging
from stochcast.schemas import TimeStep

logger = logging.getLogger(__name__)


def _load_request(path: str) -> dict:
    with open(path, encoding="utf-8") as fh:
        try:
            payload = json.load(fh)
        except json.JSONDecodeError as e:
            raise click.BadParameter(f"{path} is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise click.BadParameter(f"{path} must contain a JSON object")
    return payload


def _emit(result, output: str | None):
    text = result.model_dump_json(indent=2)
    if output:
        with open(output, "w", encoding="utf-8") as fh:
            fh.write(text)
        click.echo(f"Wrote {output}")
    else:
        click.echo(text)


def _fail(exc: SimulationError):
    logger.error("%s: %s", exc.code, exc.message)
    click.echo(json.dumps({"error": exc.to_dict()}, default=str), err=True)
    sys.exit(1)


def _settings(workers: int | None) -> Settings:
    settings = Settings()
    if workers is not None:
        settings = settings.model_copy(update={"simulation_max_workers": workers})
    return settings


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
def cli(verbose: bool):
    """stochcast - Monte Carlo stochastic forecasting engine"""
    settings = Settings()
    setup_logging(settings.log_dir, "DEBUG" if verbose else settings.log_level)
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write result JSON here")
@click.option("--csv", "csv_path", type=click.Path(dir_okay=False), default=None,
              help="Also export period statistics as CSV")
@click.option("--workers", "-w", type=int, default=None, help="Worker processes (default: settings)")
@click.option("--compare", is_flag=True, help="Re-run along the model comparison axes")
def forecast(input_file: str, output: str | None, csv_path: str | None, workers: int | None, compare: bool):
    """Run a forecast and print per-period statistics as JSON."""
    from stochcast.engine.aggregator import statistics_frame
    from stochcast.engine.forecast import run_forecast

    payload = _load_request(input_file)
    try:
        result = run_forecast(
            payload.get("config"),
            payload.get("variables", []),
            payload.get("correlation"),
            copula=payload.get("copula"),
            covenants=payload.get("covenants"),
            compare_models=compare,
            settings=_settings(workers),
        )
    except SimulationError as e:
        _fail(e)

    _emit(result, output)
    if csv_path:
        statistics_frame(result.period_statistics).to_csv(csv_path, index=False)
        click.echo(f"Wrote {csv_path}")
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write result JSON here")
@click.option("--workers", "-w", type=int, default=None, help="Worker processes (default: settings)")
@click.option("--compare", is_flag=True, help="Re-run along the model comparison axes")
def event(input_file: str, output: str | None, workers: int | None, compare: bool):
    """Estimate the probability of the request's event."""
    from stochcast.engine.forecast import run_event_probability

    payload = _load_request(input_file)
    if "event" not in payload:
        raise click.BadParameter(f"{input_file} has no 'event' definition")
    try:
        result = run_event_probability(
            payload["event"],
            payload.get("variables", []),
            payload.get("config"),
            payload.get("correlation"),
            copula=payload.get("copula"),
            compare_models=compare,
            settings=_settings(workers),
        )
    except SimulationError as e:
        _fail(e)

    _emit(result, output)
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--scenario", "-s", default=None,
              help="Predefined scenario key (default: the request's 'stress_scenario')")
@click.option("--output", "-o", type=click.Path(dir_okay=False), default=None, help="Write result JSON here")
@click.option("--workers", "-w", type=int, default=None, help="Worker processes (default: settings)")
def stress(input_file: str, scenario: str | None, output: str | None, workers: int | None):
    """Compare horizon statistics with and without a stress scenario."""
    from stochcast.engine.forecast import run_stress_test

    payload = _load_request(input_file)
    scenario = scenario or payload.get("stress_scenario")
    if scenario is None:
        raise click.BadParameter("pass --scenario or add 'stress_scenario' to the request")
    try:
        result = run_stress_test(
            payload.get("config"),
            payload.get("variables", []),
            scenario,
            correlation=payload.get("correlation"),
            copula=payload.get("copula"),
            settings=_settings(workers),
        )
    except SimulationError as e:
        _fail(e)

    _emit(result, output)
    for warning in result.warnings:
        click.echo(f"warning: {warning}", err=True)


@cli.command()
@click.argument("series_file", type=click.Path(exists=True, dir_okay=False))
@click.option("--column", "-c", required=True, help="CSV column holding the observations")
@click.option("--process", "-p", type=click.Choice(["gbm", "ou", "auto"]), default="auto", show_default=True)
@click.option("--time-step", "-t", type=click.Choice([s.value for s in TimeStep]), default="monthly",
              show_default=True, help="Spacing between observations")
def estimate(series_file: str, column: str, process: str, time_step: str):
    """Fit process parameters to a historical series in a CSV file."""
    import pandas as pd

    from stochcast.engine.estimation import estimate_gbm_params, estimate_ou_params, recommend_process

    frame = pd.read_csv(series_file)
    if column not in frame.columns:
        raise click.BadParameter(f"{series_file} has no column {column!r}")
    values = frame[column].dropna().to_numpy(dtype=float)
    dt = TimeStep(time_step).years
    try:
        if process == "auto":
            recommendation = recommend_process(values, name=column)
            click.echo(recommendation.model_dump_json(indent=2))
            process = {"gbm": "gbm", "ornstein_uhlenbeck": "ou"}.get(recommendation.recommended)
            if process is None:
                return
        fit = estimate_gbm_params(values, dt) if process == "gbm" else estimate_ou_params(values, dt)
    except SimulationError as e:
        _fail(e)

    click.echo(fit.model_dump_json(indent=2))


@cli.command()
@click.argument("input_file", type=click.Path(exists=True, dir_okay=False))
def validate(input_file: str):
    """Check a request without simulating it."""
    from stochcast.engine.forecast import validate_request

    payload = _load_request(input_file)
    try:
        notes = validate_request(payload)
    except SimulationError as e:
        _fail(e)

    click.echo("OK")
    for note in notes:
        click.echo(f"warning: {note}")


if __name__ == "__main__":
    cli()
