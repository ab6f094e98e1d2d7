"""
Find locations whose current epidemiological metric is close to a focal
location's, and fetch their full time series for side-by-side charts.

The pipeline is:

1. most recent records of the focal location, sorted locally by date; the
   last one is the focal snapshot;
2. a tolerance band around the focal value (log scale by default);
3. every location whose most recent value lies in the band, restricted to the
   selected admin levels;
4. stable ranking by distance to the focal value and an inclusive top-K cut;
5. full series of the kept peers plus the focal location, grouped by location
   and re-ranked against the focal value.
"""

from __future__ import annotations

import logging
import math
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import requests

from outbreak_web.client import get_all
from outbreak_web.errors import QueryError, ShapeError
from outbreak_web.lucene import All, Clause, Either, Range, Term, any_of, render
from outbreak_web.models import (
    Entity,
    LocationGroup,
    Outcome,
    ProvenanceItem,
    RankedPeer,
    SimilarityBand,
    SimilarityReport,
)
from outbreak_web.normalize import display_name, parse_date, to_number
from outbreak_web.state import LoadingFlags, loading

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.05
DEFAULT_NUM_TO_RETURN = 5
LOADING_KEY = "admin.dataloading"

CONFIRMED_FIELD = "confirmed_rolling_per_100k"
DEAD_FIELD = "dead_rolling_per_100k"
USA_NAME = "United States of America"

LOCATION_FIELDS = (
    "name",
    "lat",
    "long",
    "date",
    "location_id",
    CONFIRMED_FIELD,
    DEAD_FIELD,
    "state_name",
    "country_name",
    "population",
)
_ENTITY_KEYS = {"location_id", "name", "date", "lat", "long", "state_name", "country_name"}

# Selectable admin levels, in the order their predicates are OR-ed together.
ADMIN_LEVELS: Dict[str, Clause] = {
    "countries": Term("admin_level", 0),
    "non-U.S. States/Provinces": All(
        Term("admin_level", 1), Term("country_iso3", "USA", negate=True)
    ),
    "U.S. States": All(Term("admin_level", 1), Term("country_iso3", "USA")),
    "U.S. Metro Areas": All(Term("admin_level", "1.5", quoted=True), Term("country_iso3", "USA")),
    "U.S. Counties": All(Term("admin_level", 2), Term("country_iso3", "USA")),
}


def similarity_band(
    value: float,
    threshold: float = DEFAULT_THRESHOLD,
    logged: bool = True,
) -> SimilarityBand:
    """
    Band of values considered similar to ``value``.

    Log mode scales the exponent: ``10^((1 -/+ t) * log10(v))``. For
    ``0 < v < 1`` the exponent is negative, so the two endpoints swap; they are
    always returned ordered. Non-positive values have no logarithm and fall
    back to the linear band.
    """

    use_log = logged and value > 0
    if use_log:
        exponent = math.log10(value)
        a = 10 ** ((1 - threshold) * exponent)
        b = 10 ** ((1 + threshold) * exponent)
    else:
        a = (1 - threshold) * value
        b = (1 + threshold) * value
    # min/max with value absorbs float rounding at the center.
    return SimilarityBand(
        lo=min(a, b, value),
        hi=max(a, b, value),
        center=value,
        threshold=threshold,
        logged=use_log,
    )


def admin_level_filter(levels: Iterable[str]) -> Optional[Clause]:
    """OR of the selected admin-level predicates; None applies no restriction."""

    selected = set(levels)
    unknown = selected.difference(ADMIN_LEVELS)
    if unknown:
        logger.warning(f"Ignoring unknown admin levels: {sorted(unknown)}")
    predicates = [clause for name, clause in ADMIN_LEVELS.items() if name in selected]
    if not predicates:
        return None
    return Either(*predicates)


def _value_diff(value: Optional[float], focal_value: float) -> float:
    if value is None:
        return math.inf
    return abs(value - focal_value)


def to_entity(record: Mapping[str, Any], metric: str) -> Entity:
    return Entity(
        location_id=str(record["location_id"]),
        name=record.get("name"),
        date=parse_date(record.get("date")),
        value=to_number(record.get(metric)),
        lat=to_number(record.get("lat")),
        lon=to_number(record.get("long")),
        state_name=record.get("state_name"),
        country_name=record.get("country_name"),
        extra={k: v for k, v in record.items() if k not in _ENTITY_KEYS},
    )


def sort_by_date(entities: Iterable[Entity]) -> List[Entity]:
    """Ascending by date; undated records sort first so they never become "most recent"."""

    return sorted(entities, key=lambda e: (e.date is not None, e.date or date.min))


def get_location(
    api_url: str,
    location: Union[str, Clause],
    variable: str,
    metric: str,
    most_recent: bool = False,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Entity]]:
    """
    Records of one location (an id) or several (a clause such as an OR-list
    of ids), sorted ascending by date.
    """

    location_clause = Term("location_id", location) if isinstance(location, str) else location
    q = All(location_clause, Term("mostRecent", True)) if most_recent else location_clause
    fields = list(dict.fromkeys([metric, variable, *LOCATION_FIELDS]))

    outcome = get_all(api_url, render(q), fields=fields, session=session)
    if not outcome.ok:
        logger.warning(f"Error in getting data for location {render(location_clause)}: {outcome.error}")
        return outcome

    try:
        entities = [to_entity(record, metric) for record in outcome.value]
    except (KeyError, TypeError, AttributeError) as exc:
        error = ShapeError(f"location record without location_id: {exc!r}", cause=exc)
        logger.warning(f"Error in getting data for location {render(location_clause)}: {error}")
        return Outcome.failure([], error, outcome.provenance)

    return Outcome.success(sort_by_date(entities), outcome.provenance)


def rank_peers(peers: Sequence[RankedPeer]) -> List[RankedPeer]:
    """Ascending by ``value_diff``; ties keep their query order."""

    return sorted(peers, key=lambda p: p.value_diff)


def inclusive_top(ranked: Sequence[RankedPeer], num_to_return: int) -> List[RankedPeer]:
    """
    Keep every peer at least as close as the one at index ``num_to_return``
    (or the last one when there are fewer), so ties at the cutoff all stay.
    """

    if not ranked:
        return []
    boundary = ranked[min(num_to_return, len(ranked) - 1)].value_diff
    return [p for p in ranked if p.value_diff <= boundary]


def get_similar_data(
    api_url: str,
    focal: Entity,
    metric: str,
    admin_levels: Iterable[str],
    num_to_return: int = DEFAULT_NUM_TO_RETURN,
    threshold: float = DEFAULT_THRESHOLD,
    logged: bool = True,
    session: Optional[requests.Session] = None,
) -> Outcome[List[RankedPeer]]:
    """
    Closest peers of ``focal`` by most recent ``metric`` value, followed by the
    focal location itself.
    """

    focal_value = focal.value if focal.value is not None else 0.0
    band = similarity_band(focal_value, threshold=threshold, logged=logged)
    q = All(
        admin_level_filter(admin_levels),
        Term("mostRecent", True),
        Range(metric, band.lo, band.hi),
    )

    outcome = get_all(api_url, render(q), fields=["location_id", metric], session=session)
    error: Optional[QueryError] = outcome.error
    peers: List[RankedPeer] = []
    if outcome.ok:
        try:
            for record in outcome.value:
                value = to_number(record.get(metric))
                peers.append(
                    RankedPeer(
                        location_id=str(record["location_id"]),
                        value=value,
                        value_diff=_value_diff(value, focal_value),
                    )
                )
        except (KeyError, TypeError, AttributeError) as exc:
            error = ShapeError(f"similar location record is malformed: {exc!r}", cause=exc)
            peers = []

    if error is not None:
        logger.warning(f"Error in getting similar locations: {error}")

    kept = inclusive_top(rank_peers(peers), num_to_return)
    kept.append(RankedPeer(location_id=focal.location_id, value=focal.value, value_diff=0.0))

    if error is not None:
        return Outcome.failure(kept, error, outcome.provenance)
    return Outcome.success(kept, outcome.provenance)


def group_by_location(
    entities: Sequence[Entity],
    focal_value: float,
    snapshot_diffs: Optional[Mapping[str, float]] = None,
) -> List[LocationGroup]:
    """
    Group date-sorted records by location id, in first-appearance order.

    Display fields come from each group's most recent record; ``value_diff``
    is measured against ``focal_value``.
    """

    buckets: Dict[str, List[Entity]] = {}
    for entity in entities:
        buckets.setdefault(entity.location_id, []).append(entity)

    groups: List[LocationGroup] = []
    for key, values in buckets.items():
        latest = values[-1]
        groups.append(
            LocationGroup(
                key=key,
                values=values,
                name=latest.name,
                name_formatted=display_name(latest.name, latest.state_name, latest.country_name),
                part_of_usa=latest.country_name == USA_NAME,
                lat=latest.lat,
                lon=latest.lon,
                similar_value=latest.value,
                value_diff=_value_diff(latest.value, focal_value),
                snapshot_diff=(snapshot_diffs or {}).get(key),
            )
        )
    return groups


def _max_field(entities: Iterable[Entity], field_name: str) -> Optional[float]:
    values = [v for v in (to_number(e.extra.get(field_name)) for e in entities) if v is not None]
    return max(values) if values else None


def _date_domain(entities: Iterable[Entity]) -> Optional[Tuple[date, date]]:
    dates = [e.date for e in entities if e.date is not None]
    if not dates:
        return None
    return min(dates), max(dates)


def _drifted(groups: Iterable[LocationGroup]) -> List[str]:
    drifted: List[str] = []
    for group in groups:
        if group.snapshot_diff is None:
            continue
        if math.isinf(group.snapshot_diff) and math.isinf(group.value_diff):
            continue
        if not math.isclose(group.snapshot_diff, group.value_diff, rel_tol=1e-9, abs_tol=1e-12):
            drifted.append(group.key)
    return drifted


def _find_similar(
    api_url: str,
    location_id: str,
    variable: str,
    metric: str,
    admin_levels: Sequence[str],
    num_to_return: int,
    threshold: float,
    logged: bool,
    session: Optional[requests.Session],
) -> Outcome[SimilarityReport]:
    provenance: List[ProvenanceItem] = []
    errors: List[QueryError] = []

    focal_series = get_location(api_url, location_id, variable, metric, most_recent=True, session=session)
    provenance.extend(focal_series.provenance)
    if not focal_series.value or focal_series.value[-1].value is None:
        error = focal_series.error or ShapeError(
            f"no recent '{metric}' value for location '{location_id}'"
        )
        logger.warning(f"Error in getting similarity data: {error}")
        return Outcome.failure(SimilarityReport(), error, provenance)

    focal = focal_series.value[-1]
    focal_value = float(focal.value)  # type: ignore[arg-type]
    band = similarity_band(focal_value, threshold=threshold, logged=logged)

    peers = get_similar_data(
        api_url,
        focal,
        metric,
        admin_levels,
        num_to_return=num_to_return,
        threshold=threshold,
        logged=logged,
        session=session,
    )
    provenance.extend(peers.provenance)
    if peers.error is not None:
        errors.append(peers.error)

    snapshot_diffs: Dict[str, float] = {}
    for peer in peers.value:
        snapshot_diffs.setdefault(peer.location_id, peer.value_diff)

    ids = list(dict.fromkeys(p.location_id for p in peers.value))
    series = get_location(api_url, any_of("location_id", ids), variable, metric, session=session)
    provenance.extend(series.provenance)
    if series.error is not None:
        errors.append(series.error)

    groups = group_by_location(series.value, focal_value, snapshot_diffs)
    groups.sort(key=lambda g: g.value_diff)

    report = SimilarityReport(
        location=next((g for g in groups if g.key == location_id), None),
        similar=[g for g in groups if g.key != location_id],
        x_domain=_date_domain(series.value),
        y_max_confirmed=_max_field(series.value, CONFIRMED_FIELD),
        y_max_dead=_max_field(series.value, DEAD_FIELD),
        focal_value=focal_value,
        band=band,
        drifted=_drifted(groups),
    )
    if report.drifted:
        logger.info(f"Similarity ranking drifted between passes for {report.drifted}")

    if errors:
        outcome = Outcome.failure(report, errors[0], provenance)
        outcome.absorbed = errors[1:]
        return outcome
    return Outcome.success(report, provenance)


def find_similar(
    api_url: str,
    location_id: str,
    variable: str,
    metric: str,
    admin_levels: Sequence[str] = (),
    num_to_return: int = DEFAULT_NUM_TO_RETURN,
    threshold: float = DEFAULT_THRESHOLD,
    logged: bool = True,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[SimilarityReport]:
    """
    Locations most similar to ``location_id`` by the latest value of
    ``metric``, with full series of ``variable`` for charting.

    Always resolves: failing stages contribute empty lists and the outcome is
    tagged "failure". ``flags[admin.dataloading]`` is raised for the duration
    of the call.
    """

    with loading(flags, LOADING_KEY):
        return _find_similar(
            api_url,
            location_id,
            variable,
            metric,
            admin_levels,
            num_to_return,
            threshold,
            logged,
            session,
        )


__all__ = [
    "ADMIN_LEVELS",
    "DEFAULT_THRESHOLD",
    "DEFAULT_NUM_TO_RETURN",
    "similarity_band",
    "admin_level_filter",
    "to_entity",
    "sort_by_date",
    "get_location",
    "rank_peers",
    "inclusive_top",
    "get_similar_data",
    "group_by_location",
    "find_similar",
]
