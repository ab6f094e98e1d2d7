"""
Page-level view-models for the lineage, mutation and location reports.

Each assembler raises its loading flag, fans its independent queries out
through :func:`outbreak_web.executor.aggregate`, merges the members and lowers
the flag again whether or not the members succeeded.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from outbreak_web.errors import SHAPE_ERRORS, ShapeError
from outbreak_web.executor import aggregate
from outbreak_web.genomics.queries import (
    WORLDWIDE,
    _with_location,
    build_query_params,
    get_characteristic_mutations,
    get_cum_prevalence,
    get_cum_prevalence_all_lineages,
    get_cum_prevalences,
    get_curated_list,
    get_curated_metadata,
    get_date_updated,
    get_location_prevalence,
    get_most_recent_collection,
    get_most_recent_submission,
    get_mutation_details,
    get_mutations_by_lineage,
    get_new_today_all,
    get_positive_locations,
    get_prevalence_all_lineages,
    get_sequence_count,
    get_temporal_prevalence,
    get_world_prevalence,
    nest,
)
from outbreak_web.models import (
    BasicLocationReport,
    LineageComparison,
    LineageReport,
    LocationReport,
    LocationUpdate,
    Outcome,
    ReportList,
    SequencingGap,
)
from outbreak_web.state import LoadingFlags, loading

logger = logging.getLogger(__name__)

REPORT_LOADING = "admin.reportloading"
BASIC_LOCATION_LOADING = "genomics.location_loading1"
LOCATION_REPORT_LOADING = "genomics.location_loading2"
LOCATION_TABLE_LOADING = "genomics.location_loading3"
TEMPORAL_LOADING = "genomics.location_loading4"
LOCATION_MAPS_LOADING = "genomics.location_loading5"
COMPARISON_LOADING = "genomics.comparison_loading"
SEQUENCING_LOADING = "genomics.sequencing_loading"


def add_lineages_to_curated_mutation(
    api_url: str,
    mutation_obj: Mapping[str, Any],
    prevalence_threshold: float,
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    """Attach the lineages in which a curated mutation set is common."""

    fallback = {**mutation_obj, "lineages": []} if isinstance(mutation_obj, Mapping) else {"lineages": []}
    try:
        mutations = ",".join(d["mutation"] for d in mutation_obj.get("mutations", []))
    except SHAPE_ERRORS as exc:
        error = ShapeError(f"malformed curated mutation entry: {exc!r}", cause=exc)
        logger.warning(f"Error in adding lineages to curated mutation: {error}")
        return Outcome.failure(fallback, error)

    lineages = get_mutations_by_lineage(api_url, mutations, prevalence_threshold, session=session)
    return lineages.reshape(
        lambda rows: {**mutation_obj, "lineages": [d["pangolin_lineage"] for d in rows]},
        fallback,
    )


def get_curated_list_and_char_muts(
    api_url: str,
    curated_url: str,
    prevalence_threshold: float,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    curated = get_curated_list(curated_url, session=session)
    groups = curated.value
    mutation_groups = [g for g in groups if g["key"] == "mutation"]
    if not mutation_groups:
        return curated

    members = aggregate(
        [
            lambda m=m: add_lineages_to_curated_mutation(api_url, m, prevalence_threshold, session=session)
            for m in mutation_groups[0]["values"]
        ]
    )
    enriched = [
        {"key": g["key"], "values": list(members.value)} if g is mutation_groups[0] else g
        for g in groups
    ]
    outcome = members.map(lambda _: enriched)
    outcome.provenance = curated.provenance + outcome.provenance
    return outcome


def get_report_list(
    api_url: str,
    curated_url: str,
    prevalence_threshold: float = 0.75,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[ReportList]:
    with loading(flags, REPORT_LOADING):
        combined = aggregate(
            [
                lambda: get_date_updated(api_url, session=session),
                lambda: get_curated_list_and_char_muts(
                    api_url, curated_url, prevalence_threshold, session=session
                ),
            ]
        )

        def build(values) -> ReportList:
            date_updated, md = values
            return ReportList(
                date_updated=date_updated.last_updated if date_updated else None,
                md=md,
            )

        return combined.map(build)


def _characteristic_mutations(
    md: Optional[Mapping[str, Any]],
    queried: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Curated mutations win over the computed ones when they list any mutation."""

    curated = (md or {}).get("mutations") or []
    if any(m for m in curated):
        return list(curated)
    return queried


def get_report_data(
    api_url: str,
    curated_url: str,
    locations: Sequence[Mapping[str, Any]],
    mutations: Optional[str],
    lineage: Optional[str],
    location: str,
    location_type: Optional[str],
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[LineageReport]:
    """Initial data for a lineage and/or mutation report."""

    params = build_query_params(lineage, mutations)
    with loading(flags, REPORT_LOADING):
        combined = aggregate(
            [
                lambda: get_date_updated(api_url, session=session),
                lambda: get_new_today_all(api_url, params, locations, session=session),
                lambda: get_temporal_prevalence(api_url, location, location_type, params, session=session),
                lambda: get_world_prevalence(api_url, params, session=session),
                lambda: get_cum_prevalences(api_url, params, locations, session=session),
                lambda: get_positive_locations(api_url, params, WORLDWIDE, "country", session=session),
                lambda: get_positive_locations(api_url, params, "United States", "country", session=session),
                lambda: get_location_prevalence(api_url, params, location, location_type, session=session),
                lambda: get_curated_metadata(curated_url, lineage, session=session),
                lambda: get_characteristic_mutations(api_url, lineage, session=session),
                lambda: get_mutation_details(api_url, mutations, session=session),
                lambda: get_mutations_by_lineage(api_url, mutations, session=session),
            ]
        )

        def build(values) -> LineageReport:
            (
                date_updated,
                new_today,
                longitudinal,
                global_prev,
                loc_prev,
                countries,
                states,
                by_country,
                md,
                characteristic,
                mutation_details,
                mutations_by_lineage,
            ) = values
            return LineageReport(
                date_updated=date_updated,
                new_today=new_today,
                longitudinal=longitudinal,
                global_prev=global_prev,
                loc_prev=loc_prev,
                by_country=by_country,
                countries=countries,
                states=states,
                md=md,
                mutations=_characteristic_mutations(md, characteristic),
                mutation_details=mutation_details,
                mutations_by_lineage=mutations_by_lineage,
            )

        return combined.map(build)


def update_location_data(
    api_url: str,
    mutations: Optional[str],
    lineage: Optional[str],
    locations: Sequence[Mapping[str, Any]],
    location: str,
    location_type: Optional[str],
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[LocationUpdate]:
    """Re-query only the location-dependent parts of a report."""

    params = build_query_params(lineage, mutations)
    with loading(flags, REPORT_LOADING):
        combined = aggregate(
            [
                lambda: get_temporal_prevalence(api_url, location, location_type, params, session=session),
                lambda: get_location_prevalence(api_url, params, location, location_type, session=session),
                lambda: get_cum_prevalences(api_url, params, locations, session=session),
            ]
        )
        return combined.map(
            lambda values: LocationUpdate(longitudinal=values[0], by_country=values[1], loc_prev=values[2])
        )


def curated_lineage_queries(curated: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Query descriptors for every curated lineage report."""

    groups = [g for g in curated if g.get("key") == "lineage"]
    if len(groups) != 1:
        return []
    return [
        {
            "label": d["mutation_name"],
            "query": build_query_params(lineage=d["mutation_name"]),
            "variant_type": d.get("variantType"),
            "route": {"pango": d["mutation_name"]},
        }
        for d in groups[0]["values"]
    ]


def get_basic_location_report_data(
    api_url: str,
    curated_url: str,
    location: str,
    location_type: Optional[str],
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[BasicLocationReport]:
    with loading(flags, BASIC_LOCATION_LOADING):
        combined = aggregate(
            [
                lambda: get_date_updated(api_url, session=session),
                lambda: get_curated_list(curated_url, session=session).reshape(curated_lineage_queries, []),
                lambda: get_sequence_count(api_url, location, location_type, session=session),
            ]
        )
        return combined.map(
            lambda values: BasicLocationReport(
                date_updated=values[0],
                curated=values[1],
                total=values[2],
            )
        )


def lineage_domain(
    lineages_by_day: Sequence[Mapping[str, Any]],
    most_recent_lineages: Sequence[Mapping[str, Any]],
) -> List[str]:
    """Colour domain for stacked lineage charts: "Other" first, then every lineage seen."""

    domain = ["Other"]
    if most_recent_lineages:
        domain.extend(k for k in most_recent_lineages[0] if k != "Other")
    if lineages_by_day:
        domain.extend(k for k in lineages_by_day[0] if k not in ("Other", "date_time"))
    return list(dict.fromkeys(domain))


def get_location_report_data(
    api_url: str,
    location: str,
    location_type: str,
    other_threshold: float,
    nday_threshold: int,
    ndays: int,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[LocationReport]:
    with loading(flags, LOCATION_REPORT_LOADING):
        combined = aggregate(
            [
                lambda: get_prevalence_all_lineages(
                    api_url, location, location_type, other_threshold, nday_threshold, ndays, session=session
                ),
                lambda: get_cum_prevalence_all_lineages(
                    api_url, location, location_type, other_threshold, nday_threshold, ndays, session=session
                ),
            ]
        )
        return combined.map(
            lambda values: LocationReport(
                lineages_by_day=values[0],
                most_recent_lineages=values[1],
                lineage_domain=lineage_domain(values[0], values[1]),
            )
        )


def get_all_location_prevalence(
    api_url: str,
    mutation: Mapping[str, Any],
    location: str,
    location_type: Optional[str],
    ndays: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    prevalence = get_location_prevalence(
        api_url, mutation["query"], location, location_type, ndays=ndays, session=session
    )
    return prevalence.map(
        lambda rows: {
            "key": mutation["label"],
            "variant_type": mutation.get("variant_type"),
            "route": mutation.get("route"),
            "values": rows,
        }
    )


def get_location_maps(
    api_url: str,
    location: str,
    location_type: Optional[str],
    mutations: Sequence[Mapping[str, Any]],
    ndays: Optional[int] = None,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[List[Dict[str, Any]]]:
    with loading(flags, LOCATION_MAPS_LOADING):
        combined = aggregate(
            [
                lambda m=m: get_all_location_prevalence(
                    api_url, m, location, location_type, ndays=ndays, session=session
                )
                for m in mutations
            ]
        )
        return combined.map(list)


def get_mutation_cum_prevalence(
    api_url: str,
    mutation: Mapping[str, Any],
    location: str,
    location_type: str,
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    prevalence = get_cum_prevalence(api_url, mutation["query"], location, location_type, session=session)
    return prevalence.map(lambda row: {**(row or {}), **mutation})


def _order_table(rows: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    # variant type ascending, then global prevalence descending
    by_prevalence = sorted(rows, key=lambda r: r.get("global_prevalence") or 0, reverse=True)
    return sorted((dict(r) for r in by_prevalence), key=lambda r: str(r.get("variant_type") or ""))


def get_location_table(
    api_url: str,
    location: str,
    location_type: str,
    mutations: Sequence[Mapping[str, Any]],
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """Cumulative prevalence of each curated lineage in a location, nested by variant type."""

    with loading(flags, LOCATION_TABLE_LOADING):
        combined = aggregate(
            [
                lambda m=m: get_mutation_cum_prevalence(api_url, m, location, location_type, session=session)
                for m in mutations
            ]
        )
        return combined.map(lambda rows: nest(_order_table(rows), "variant_type"))


def get_all_temporal_prevalence(
    api_url: str,
    mutation: Mapping[str, Any],
    location: str,
    location_type: Optional[str],
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    prevalence = get_temporal_prevalence(api_url, location, location_type, mutation["query"], session=session)
    return prevalence.map(lambda rows: {**mutation, "data": rows})


def get_all_temporal_prevalences(
    api_url: str,
    location: str,
    location_type: Optional[str],
    mutations: Sequence[Mapping[str, Any]],
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[List[Dict[str, Any]]]:
    with loading(flags, TEMPORAL_LOADING):
        combined = aggregate(
            [
                lambda m=m: get_all_temporal_prevalence(api_url, m, location, location_type, session=session)
                for m in mutations
            ]
        )
        return combined.map(list)


def merge_characteristic_mutations(
    lineages: Sequence[str],
    per_lineage: Sequence[Sequence[Mapping[str, Any]]],
) -> LineageComparison:
    """
    One row per mutation with its prevalence in every compared lineage
    (0 where the lineage does not carry it).
    """

    rows: Dict[str, Dict[str, Any]] = {}
    for lineage, mutations in zip(lineages, per_lineage):
        for m in mutations:
            name = m.get("mutation")
            if not name:
                continue
            row = rows.setdefault(
                name,
                {
                    "mutation": name,
                    "gene": m.get("gene"),
                    "codon_num": m.get("codon_num"),
                    "type": m.get("type"),
                    "prevalence": {other: 0 for other in lineages},
                },
            )
            row["prevalence"][lineage] = m.get("prevalence", 0)

    ordered = sorted(
        rows.values(),
        key=lambda r: (str(r["gene"] or ""), r["codon_num"] if r["codon_num"] is not None else -1),
    )
    carried = [set(m.get("mutation") for m in mutations) for mutations in per_lineage]
    shared = [r["mutation"] for r in ordered if carried and all(r["mutation"] in c for c in carried)]
    return LineageComparison(lineages=list(lineages), mutations=ordered, shared=shared)


def compare_lineages(
    api_url: str,
    lineages: Sequence[str],
    prevalence_threshold: float = 0.75,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[LineageComparison]:
    """Characteristic mutations of several lineages side by side."""

    names = list(dict.fromkeys(lineages))
    with loading(flags, COMPARISON_LOADING):
        combined = aggregate(
            [
                lambda name=name: get_characteristic_mutations(
                    api_url, name, prevalence_threshold, session=session
                )
                for name in names
            ]
        )
        return combined.map(lambda per_lineage: merge_characteristic_mutations(names, per_lineage))


def sequencing_gap(
    location: Mapping[str, Any],
    total: Optional[str],
    collected: Optional[Mapping[str, Any]],
    submitted: Optional[Mapping[str, Any]],
) -> SequencingGap:
    last_collected: Optional[date] = collected.get("date_time") if collected else None
    last_submitted: Optional[date] = submitted.get("date_time") if submitted else None
    lag = None
    if last_collected is not None and last_submitted is not None:
        lag = (last_submitted - last_collected).days
    return SequencingGap(
        name=location["name"],
        location_type=location.get("type"),
        total=total,
        last_collected=last_collected,
        last_submitted=last_submitted,
        lag_days=lag,
    )


def get_sequencing_gaps(
    api_url: str,
    locations: Sequence[Mapping[str, Any]],
    lineage: Optional[str] = None,
    mutations: Optional[str] = None,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[List[SequencingGap]]:
    """
    Per location: total sequences, most recent collection and submission
    dates, and the lag in days between them. Largest lag first; unknown lags last.
    """

    params = build_query_params(lineage, mutations)
    places = [{"name": WORLDWIDE, "type": None}] + [
        dict(loc) for loc in locations if loc.get("type") != "world"
    ]

    tasks = []
    for place in places:
        selector = _with_location(params, place["name"], place.get("type"))
        tasks.append(
            lambda p=place: get_sequence_count(
                api_url, p["name"] if p.get("type") else None, p.get("type"), session=session
            )
        )
        tasks.append(lambda s=selector: get_most_recent_collection(api_url, s, session=session))
        tasks.append(lambda s=selector: get_most_recent_submission(api_url, s, session=session))

    with loading(flags, SEQUENCING_LOADING):
        combined = aggregate(tasks)

        def build(values) -> List[SequencingGap]:
            gaps = [
                sequencing_gap(place, *values[i * 3:i * 3 + 3])
                for i, place in enumerate(places)
            ]
            return sorted(gaps, key=lambda g: (g.lag_days is None, -(g.lag_days or 0)))

        return combined.map(build)


__all__ = [
    "add_lineages_to_curated_mutation",
    "get_curated_list_and_char_muts",
    "get_report_list",
    "get_report_data",
    "update_location_data",
    "curated_lineage_queries",
    "get_basic_location_report_data",
    "lineage_domain",
    "get_location_report_data",
    "get_all_location_prevalence",
    "get_location_maps",
    "get_mutation_cum_prevalence",
    "get_location_table",
    "get_all_temporal_prevalence",
    "get_all_temporal_prevalences",
    "merge_characteristic_mutations",
    "compare_lineages",
    "sequencing_gap",
    "get_sequencing_gaps",
]
