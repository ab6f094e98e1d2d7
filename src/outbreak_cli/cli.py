from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import click
import requests

from outbreak_web.config import AppConfig, ConfigError, load_config
from outbreak_web.executor import set_max_workers
from outbreak_web.genomics.queries import WORLDWIDE
from outbreak_web.genomics.reports import (
    compare_lineages,
    get_location_report_data,
    get_report_data,
    get_sequencing_gaps,
)
from outbreak_web.models import Outcome, to_jsonable
from outbreak_web.resources import get_resources
from outbreak_web.similarity import ADMIN_LEVELS, find_similar
from outbreak_web.state import LoadingFlags

logger = logging.getLogger(__name__)

LOCATION_TYPES = ("country", "division")


@dataclass
class CliContext:
    config: AppConfig
    session: requests.Session
    flags: LoadingFlags


def _log_flag(key: str, value: bool) -> None:
    logger.debug(f"loading flag {key} -> {value}")


def _emit(outcome: Outcome[Any]) -> None:
    """Print an outcome as JSON; a failed outcome exits non-zero."""

    payload = {
        "status": outcome.status,
        "error": to_jsonable(outcome.error),
        "absorbed": to_jsonable(outcome.absorbed),
        "value": to_jsonable(outcome.value),
        "provenance": to_jsonable(outcome.provenance),
    }
    click.echo(json.dumps(payload, indent=2, ensure_ascii=False, allow_nan=False))
    if not outcome.ok:
        raise click.exceptions.Exit(1)


def _parse_locations(values: Iterable[str]) -> List[Dict[str, str]]:
    locations = []
    for value in values:
        name, sep, location_type = value.rpartition(":")
        if not sep or not name or location_type not in LOCATION_TYPES:
            raise click.BadParameter(
                f"expected NAME:TYPE with TYPE one of {', '.join(LOCATION_TYPES)}, got {value!r}",
                param_hint="--location",
            )
        locations.append({"name": name, "type": location_type})
    return locations


@click.group()
@click.option("--verbose", is_flag=True, help="Enable verbose logging.")
@click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="YAML config file (defaults to OUTBREAK_CONFIG_PATH or web/configs/outbreak.yaml).",
)
@click.pass_context
def cli(ctx: click.Context, verbose: bool, config_path: Optional[Path]) -> None:
    """Query the outbreak surveillance backends and print view-ready JSON."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO)
    try:
        config = load_config(path=config_path)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    set_max_workers(config.http.max_workers)
    ctx.obj = CliContext(config=config, session=config.http.session(), flags=LoadingFlags(_log_flag))


@cli.command("similar")
@click.argument("location_id")
@click.option("--variable", default="confirmed_rolling_per_100k", show_default=True, help="Series to chart.")
@click.option("--metric", default="confirmed_rolling_per_100k", show_default=True, help="Metric to compare on.")
@click.option(
    "--admin-level",
    "admin_levels",
    multiple=True,
    type=click.Choice(list(ADMIN_LEVELS)),
    help="Restrict peers to an administrative level (repeat for several).",
)
@click.option("--num", "num_to_return", type=click.IntRange(0, 100), default=None, help="Peers to return.")
@click.option("--linear", is_flag=True, help="Use a linear rather than logarithmic band.")
@click.pass_obj
def similar_command(
    obj: CliContext,
    location_id: str,
    variable: str,
    metric: str,
    admin_levels: Tuple[str, ...],
    num_to_return: Optional[int],
    linear: bool,
) -> None:
    """Locations whose latest METRIC is closest to LOCATION_ID's."""
    settings = obj.config.similarity
    outcome = find_similar(
        obj.config.endpoints.epi,
        location_id,
        variable,
        metric,
        admin_levels=admin_levels,
        num_to_return=settings.num_to_return if num_to_return is None else num_to_return,
        threshold=settings.threshold,
        logged=settings.logged and not linear,
        session=obj.session,
        flags=obj.flags,
    )
    _emit(outcome)


@cli.command("lineage-report")
@click.option("--lineage", default=None, help="Pango lineage, e.g. B.1.1.7.")
@click.option("--mutations", default=None, help="Comma-separated mutations, e.g. S:E484K.")
@click.option("--location", default=WORLDWIDE, show_default=True, help="Focal location name.")
@click.option("--location-type", type=click.Choice(LOCATION_TYPES), default=None)
@click.option("--compare", "compare_to", multiple=True, help="Comparison location as NAME:TYPE.")
@click.pass_obj
def lineage_report_command(
    obj: CliContext,
    lineage: Optional[str],
    mutations: Optional[str],
    location: str,
    location_type: Optional[str],
    compare_to: Tuple[str, ...],
) -> None:
    """Lineage and/or mutation report data."""
    if not lineage and not mutations:
        raise click.UsageError("Pass --lineage and/or --mutations.")
    outcome = get_report_data(
        obj.config.endpoints.genomics,
        obj.config.curated_file or "",
        _parse_locations(compare_to),
        mutations,
        lineage,
        location,
        location_type,
        session=obj.session,
        flags=obj.flags,
    )
    _emit(outcome)


@cli.command("location-report")
@click.argument("location")
@click.option("--location-type", type=click.Choice(LOCATION_TYPES), default="country", show_default=True)
@click.option("--other-threshold", type=float, default=0.05, show_default=True)
@click.option("--nday-threshold", type=int, default=5, show_default=True)
@click.option("--ndays", type=int, default=60, show_default=True)
@click.pass_obj
def location_report_command(
    obj: CliContext,
    location: str,
    location_type: str,
    other_threshold: float,
    nday_threshold: int,
    ndays: int,
) -> None:
    """Lineage prevalence over time and most recent lineage mix in LOCATION."""
    outcome = get_location_report_data(
        obj.config.endpoints.genomics,
        location,
        location_type,
        other_threshold,
        nday_threshold,
        ndays,
        session=obj.session,
        flags=obj.flags,
    )
    _emit(outcome)


@cli.command("resources")
@click.option("--query", "query_string", default=None, help="Free-text query.")
@click.option("--filter", "filter_string", default=None, help='Facet filters, e.g. "@type:Dataset;keywords:a,b".')
@click.option("--sort", default=None, help="Sort field, e.g. -date.")
@click.option("--size", type=click.IntRange(1, 1000), default=10, show_default=True)
@click.option("--page", type=click.IntRange(0), default=0, show_default=True, help="Result offset.")
@click.pass_obj
def resources_command(
    obj: CliContext,
    query_string: Optional[str],
    filter_string: Optional[str],
    sort: Optional[str],
    size: int,
    page: int,
) -> None:
    """Search the resource metadata backend."""
    outcome = get_resources(
        obj.config.endpoints.resources,
        query_string,
        filter_string,
        sort,
        size,
        page,
        session=obj.session,
        flags=obj.flags,
    )
    _emit(outcome)


@cli.command("compare-lineages")
@click.argument("lineages", nargs=-1, required=True)
@click.option("--threshold", type=click.FloatRange(0, 1), default=0.75, show_default=True)
@click.pass_obj
def compare_lineages_command(obj: CliContext, lineages: Tuple[str, ...], threshold: float) -> None:
    """Characteristic mutations of LINEAGES side by side."""
    outcome = compare_lineages(
        obj.config.endpoints.genomics,
        lineages,
        prevalence_threshold=threshold,
        session=obj.session,
        flags=obj.flags,
    )
    _emit(outcome)


@cli.command("sequencing-gaps")
@click.option("--location", "locations", multiple=True, help="Location as NAME:TYPE (repeat for several).")
@click.option("--lineage", default=None)
@click.option("--mutations", default=None)
@click.pass_obj
def sequencing_gaps_command(
    obj: CliContext,
    locations: Tuple[str, ...],
    lineage: Optional[str],
    mutations: Optional[str],
) -> None:
    """Sequence totals and collection-to-submission lag per location."""
    outcome = get_sequencing_gaps(
        obj.config.endpoints.genomics,
        _parse_locations(locations),
        lineage=lineage,
        mutations=mutations,
        session=obj.session,
        flags=obj.flags,
    )
    _emit(outcome)


def main() -> None:  # pragma: no cover
    cli()


if __name__ == "__main__":  # pragma: no cover
    main()
