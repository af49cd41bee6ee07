"""
Command line interface for the cost ingestion pipeline.

The pipeline itself is embedded by a host application; the CLI exposes the
offline pieces (provider registry, forecasting and configuration) for
operators and for checking exported daily series.
"""

import json
import logging
import sys
from datetime import date

import click

from .config.settings import get_config, reload_config
from .forecasting.enhancer import ForecastEnhancer
from .models import DailyCostPoint
from .providers import ProviderFactory

# Set up logging
logging.basicConfig(
    level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity settings."""
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
    else:
        # Default behavior: suppress all logs except errors
        logging.getLogger().setLevel(logging.ERROR)

    # Configure cloud provider loggers to reduce noise
    cloud_loggers = [
        "azure.core.pipeline.policies.http_logging_policy",
        "azure.identity",
        "boto3",
        "botocore",
        "urllib3",
        "google.auth",
        "google.cloud",
        "httpx",
    ]

    for logger_name in cloud_loggers:
        if verbose:
            logging.getLogger(logger_name).setLevel(logging.INFO)
        else:
            logging.getLogger(logger_name).setLevel(logging.ERROR)


def load_daily_points(path: str) -> list[DailyCostPoint]:
    """Read a JSON list of {"date": ..., "cost": ...} objects, oldest first."""
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, list):
        raise click.BadParameter("expected a JSON list of daily points", param_hint="FILE")
    points = [DailyCostPoint.model_validate(item) for item in data]
    return sorted(points, key=lambda point: point.date)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging and debug output")
@click.pass_context
def cli(ctx, verbose):
    """costsync - multi-provider cost ingestion and forecasting."""
    setup_logging(verbose)

    ctx.ensure_object(dict)
    ctx.obj["config"] = get_config()
    ctx.obj["verbose"] = verbose


@cli.command()
def providers():
    """List the registered billing adapters."""
    for name in ProviderFactory.get_available_providers():
        adapter_class = ProviderFactory.get_provider_class(name)
        aliases = ", ".join(adapter_class.aliases) or "-"
        click.echo(
            f"{name:<14} {adapter_class.display_name:<18} "
            f"{adapter_class.granularity.value:<8} aliases: {aliases}"
        )


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--as-of",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    help="Day the forecast is made on (default: last date in FILE)",
)
@click.pass_context
def forecast(ctx, file, as_of):
    """Forecast the month-end total from a JSON file of daily costs."""
    points = load_daily_points(file)
    if not points:
        click.echo("❌ No daily points in input", err=True)
        sys.exit(1)

    as_of_day: date = as_of.date() if as_of else points[-1].date
    month_start = as_of_day.replace(day=1)
    current_month = sum(p.cost for p in points if month_start <= p.date <= as_of_day)

    enhancer = ForecastEnhancer.from_config(ctx.obj["config"].forecast)
    result = enhancer.calculate_forecast(
        [p for p in points if p.date <= as_of_day], current_month, as_of_day
    )

    click.echo(f"As of:         {as_of_day.isoformat()}")
    click.echo(f"Current month: ${current_month:,.2f}")
    click.echo(f"Forecast:      ${result.forecast:,.2f}")
    click.echo(f"Confidence:    {result.confidence}%")


@cli.command()
@click.argument("file", type=click.Path(exists=True, dir_okay=False))
@click.option("--months", "-m", type=click.IntRange(1, 24), default=6, help="Months to project (default: 6)")
@click.option("--json", "as_json", is_flag=True, help="Print the projection as JSON")
@click.pass_context
def project(ctx, file, months, as_json):
    """Project monthly totals from a JSON file of daily costs."""
    points = load_daily_points(file)
    enhancer = ForecastEnhancer.from_config(ctx.obj["config"].forecast)
    projections = enhancer.project_months(points, months=months)

    if not projections:
        click.echo("❌ At least 14 daily points are needed for a projection", err=True)
        sys.exit(1)

    if as_json:
        click.echo(json.dumps([p.model_dump() for p in projections], indent=2))
        return

    click.echo(f"{'Month':<9} {'Forecast':>12} {'Low':>12} {'High':>12}")
    for p in projections:
        click.echo(
            f"{p.month:<9} {p.forecast:>12,.2f} {p.confidence_low:>12,.2f} {p.confidence_high:>12,.2f}"
        )


@cli.command()
@click.pass_context
def config_info(ctx):
    """Display current configuration information."""
    config = ctx.obj["config"]

    click.echo("costsync Configuration")
    click.echo("=" * 40)

    resilience = config.resilience
    retry = resilience["retry"]
    breaker = resilience["circuit_breaker"]
    click.echo("\nRetry:")
    click.echo(f"  Max attempts: {retry['max_attempts']}")
    click.echo(f"  Base delay: {retry['base_delay']}s (max {retry['max_delay']}s)")
    click.echo(f"  Call timeout: {retry['timeout']}s")
    click.echo("\nCircuit breaker:")
    click.echo(f"  Failure threshold: {breaker['failure_threshold']}")
    click.echo(f"  Reset timeout: {breaker['reset_timeout']}s")

    sync = config.sync
    click.echo("\nSync:")
    click.echo(f"  Max workers: {sync['max_workers']}")
    click.echo(f"  Account timeout: {sync['account_timeout']}s")
    click.echo(f"  Lookback: {sync['lookback_days']} days")

    cache_config = config.cache
    if cache_config.get("enabled", True):
        click.echo("\nCache: Enabled")
        click.echo(f"  TTL: {cache_config.get('ttl', 3600)} seconds")
        click.echo(f"  Type: {cache_config.get('type', 'memory')}")
    else:
        click.echo("\nCache: Disabled")

    click.echo(f"\nAnomaly threshold: {config.anomaly['variance_threshold']}%")


@cli.command()
@click.confirmation_option(prompt="Are you sure you want to reload configuration?")
@click.pass_context
def reload(ctx):
    """Reload configuration from files."""
    try:
        config = reload_config()
        ctx.obj["config"] = config
        click.echo("✅ Configuration reloaded successfully")
    except Exception as e:
        click.echo(f"❌ Failed to reload configuration: {e}", err=True)
        sys.exit(1)


if __name__ == "__main__":
    cli()
