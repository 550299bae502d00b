"""Command-line interface for tariffscope.

Each command runs against local JSON files: a product list and, optionally,
a rate table.  ``analyze`` and ``compare`` go through an in-process job
scheduler, so they exercise exactly the code path API jobs take.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import click

from tariffscope.config import get_settings
from tariffscope.errors import TariffScopeError
from tariffscope.jobs.handlers import build_services
from tariffscope.jobs.models import JobStatus
from tariffscope.jobs.scheduler import JobScheduler
from tariffscope.scenarios.catalog import InMemoryProductCatalog
from tariffscope.scenarios.models import ProductProfile, ScenarioConfiguration
from tariffscope.scenarios.providers import StaticRateProvider, TimeoutRateProvider, build_rate_provider


def _load_json(path: str) -> Any:
    try:
        return json.loads(Path(path).read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"{path} is not valid JSON: {exc}") from exc


def _load_products(path: str) -> List[ProductProfile]:
    data = _load_json(path)
    if isinstance(data, dict):
        data = data.get("products", [data])
    return [ProductProfile.model_validate(item) for item in data]


def _load_configuration(path: Optional[str]) -> ScenarioConfiguration:
    if not path:
        return ScenarioConfiguration()
    return ScenarioConfiguration.model_validate(_load_json(path))


def _scheduler(rates_path: Optional[str], products: List[ProductProfile]) -> JobScheduler:
    settings = get_settings()
    if rates_path:
        provider = TimeoutRateProvider(StaticRateProvider.from_json_file(rates_path), settings.rate_timeout_seconds)
    else:
        provider = build_rate_provider(settings)
    services = build_services(settings, rate_provider=provider, catalog=InMemoryProductCatalog(products))
    return JobScheduler(services=services, settings=settings)


def _run(scheduler: JobScheduler, job_type: str, parameters: Dict[str, Any]) -> Dict[str, Any]:
    try:
        job = scheduler.submit(job_type, parameters)
    except TariffScopeError as exc:
        raise click.ClickException(f"{exc.code}: {exc.message}") from exc
    scheduler.run_until_idle()
    job = scheduler.get_job(job.job_id)
    if job.status is not JobStatus.COMPLETED:
        raise click.ClickException(f"Job {job.job_id} ended {job.status.value}: {job.error}")
    return job.result or {}


def _echo(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
def cli() -> None:
    """Landed-cost scenario analysis."""


@cli.command("landed-cost")
@click.argument("products_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--rates", "rates_path", type=click.Path(exists=True, dir_okay=False), help="JSON rate table.")
@click.option("--shipping-method", default=None, help="Override the product's shipping method.")
@click.option("--claim-agreement/--no-claim-agreement", default=False, show_default=True)
def landed_cost(
    products_path: str,
    rates_path: Optional[str],
    shipping_method: Optional[str],
    claim_agreement: bool,
) -> None:
    """Print the per-unit landed cost of every product in PRODUCTS_PATH."""

    products = _load_products(products_path)
    engine = _scheduler(rates_path, products).services.engine
    rows = []
    for product in products:
        try:
            cost = engine.landed_cost(product, shipping_method, claim_trade_agreement=claim_agreement)
        except TariffScopeError as exc:
            rows.append({"product_id": product.product_id, "error": exc.to_dict()})
            continue
        rows.append({"product_id": product.product_id, **cost.model_dump(mode="json")})
    _echo(rows)


@cli.command()
@click.argument("products_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--rates", "rates_path", type=click.Path(exists=True, dir_okay=False), help="JSON rate table.")
@click.option("--config", "config_path", type=click.Path(exists=True, dir_okay=False), help="Scenario configuration JSON.")
@click.option("--recommendations/--no-recommendations", default=False, show_default=True)
def analyze(
    products_path: str,
    rates_path: Optional[str],
    config_path: Optional[str],
    recommendations: bool,
) -> None:
    """Run a savings analysis over PRODUCTS_PATH and print the batch result."""

    products = _load_products(products_path)
    scheduler = _scheduler(rates_path, products)
    result = _run(
        scheduler,
        "scenario_analysis",
        {
            "product_ids": [p.product_id for p in products],
            "configuration": _load_configuration(config_path).model_dump(mode="json"),
            "generate_recommendations": recommendations,
        },
    )
    if recommendations:
        result["recommendations"] = [
            rec.model_dump(mode="json") for rec in scheduler.services.recommendations.list()
        ]
    _echo(result)


def _parse_named_config(value: str) -> Tuple[str, str]:
    label, sep, path = value.partition("=")
    if not sep or not label or not path:
        raise click.BadParameter(f"expected LABEL=PATH, got {value!r}")
    return label, path


@cli.command()
@click.argument("products_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--config",
    "configs",
    multiple=True,
    required=True,
    help="LABEL=PATH of a scenario configuration; repeat for each configuration.",
)
@click.option("--rates", "rates_path", type=click.Path(exists=True, dir_okay=False), help="JSON rate table.")
@click.option("--name", default=None, help="Comparison name.")
def compare(products_path: str, configs: Tuple[str, ...], rates_path: Optional[str], name: Optional[str]) -> None:
    """Analyze PRODUCTS_PATH under each configuration and rank all scenarios."""

    products = _load_products(products_path)
    configurations = []
    for value in configs:
        label, path = _parse_named_config(value)
        configurations.append(
            {"label": label, "configuration": _load_configuration(path).model_dump(mode="json")}
        )
    result = _run(
        _scheduler(rates_path, products),
        "scenario_comparison",
        {
            "product_ids": [p.product_id for p in products],
            "configurations": configurations,
            "name": name,
        },
    )
    _echo(result["comparison"])


if __name__ == "__main__":
    cli()
