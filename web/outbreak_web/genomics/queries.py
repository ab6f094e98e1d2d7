from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import requests

from outbreak_web.client import DAILY, HOURLY, cache_bust, fetch, pluck
from outbreak_web.errors import ShapeError
from outbreak_web.executor import aggregate
from outbreak_web.models import DateUpdated, Outcome
from outbreak_web.normalize import (
    capitalize,
    format_count,
    format_cum_proportion,
    format_date,
    format_date_short,
    format_percent,
    format_proportion,
    is_new_today,
    last_updated,
    location_key,
    parse_build_date,
    parse_date,
    title_case,
    to_number,
)

logger = logging.getLogger(__name__)

WORLDWIDE = "Worldwide"
PREVALENCE_START = date(2020, 3, 14)

Params = Dict[str, Any]


def build_query_params(lineage: Optional[str] = None, mutations: Optional[str] = None) -> Params:
    """Lineage and/or mutation selector shared by the prevalence endpoints."""

    params: Params = {}
    if lineage:
        params["pangolin_lineage"] = lineage
    if mutations:
        params["mutations"] = mutations
    return params


def _with_location(params: Mapping[str, Any], location: str, location_type: Optional[str]) -> Params:
    merged = dict(params)
    if location != WORLDWIDE and location_type:
        merged[location_type] = location
    return merged


def _results(payload: Any) -> List[Dict[str, Any]]:
    results = pluck(payload, "results")
    if not isinstance(results, list):
        raise ShapeError("'results' is not a list")
    return results


def _as_int(value: Any) -> Optional[int]:
    number = to_number(value)
    return int(number) if number is not None else None


def get_date_updated(
    api_url: str,
    now: Optional[datetime] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[DateUpdated]]:
    def transform(payload: Any) -> DateUpdated:
        updated = parse_build_date(pluck(payload, "build_date"))
        return DateUpdated(
            date_updated=format_date(updated.date()) if updated else None,
            last_updated=last_updated(updated, now=now),
        )

    return fetch(
        "getting date updated",
        api_url,
        "metadata",
        {"timestamp": cache_bust(DAILY)},
        transform,
        None,
        session=session,
    )


def get_sequence_count(
    api_url: str,
    location: Optional[str] = None,
    location_type: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[str]]:
    params: Params = {"timestamp": cache_bust(HOURLY)}
    if location and location_type:
        params[location_type] = location

    def transform(payload: Any) -> Optional[str]:
        return format_count(_results(payload)[0]["total_count"])

    return fetch(
        "getting total sequences for the location",
        api_url,
        "sequence-count",
        params,
        transform,
        None,
        session=session,
    )


def get_mutation_details(
    api_url: str,
    mutations: Optional[str],
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    if not mutations:
        return Outcome.success([])

    def transform(payload: Any) -> List[Dict[str, Any]]:
        return [{**d, "codon_num": _as_int(d.get("codon_num"))} for d in _results(payload)]

    return fetch(
        "getting mutation details",
        api_url,
        "mutation-details",
        {"mutations": mutations, "timestamp": cache_bust(HOURLY)},
        transform,
        [],
        session=session,
    )


def get_mutations_by_lineage(
    api_url: str,
    mutations: Optional[str],
    proportion_threshold: float = 0,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    if not mutations:
        return Outcome.success([])

    def transform(payload: Any) -> List[Dict[str, Any]]:
        rows = []
        for d in _results(payload):
            proportion = to_number(d.get("proportion"))
            if proportion is None or proportion < proportion_threshold:
                continue
            rows.append(
                {
                    **d,
                    "pangolin_lineage": capitalize(d.get("pangolin_lineage")),
                    "proportion_formatted": format_proportion(proportion),
                }
            )
        return rows

    return fetch(
        "getting mutations by lineage",
        api_url,
        "mutations-by-lineage",
        {"mutations": mutations, "timestamp": cache_bust(HOURLY)},
        transform,
        [],
        session=session,
    )


def get_characteristic_mutations(
    api_url: str,
    lineage: Optional[str],
    prevalence_threshold: float = 0.97,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    if not lineage:
        return Outcome.success([])

    def transform(payload: Any) -> List[Dict[str, Any]]:
        return [{**d, "codon_num": _as_int(d.get("codon_num"))} for d in _results(payload)]

    return fetch(
        f"getting characteristic mutations for {lineage}",
        api_url,
        "lineage-mutations",
        {"pangolin_lineage": lineage, "frequency": prevalence_threshold},
        transform,
        [],
        session=session,
    )


def _single_dated(payload: Any) -> Dict[str, Any]:
    results = _results(payload)
    if len(results) != 1:
        raise ShapeError(f"expected exactly one most recent record, got {len(results)}")
    record = results[0]
    parsed = parse_date(record.get("date"))
    return {**record, "date_time": parsed, "date_formatted": format_date(parsed)}


def get_most_recent_collection(
    api_url: str,
    params: Mapping[str, Any],
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    """Most recent sample collection date for a lineage/mutation/location selector."""

    return fetch(
        "getting most recent collection date",
        api_url,
        "most-recent-collection-date",
        {**params, "timestamp": cache_bust(HOURLY)},
        _single_dated,
        None,
        session=session,
    )


def get_most_recent_submission(
    api_url: str,
    params: Mapping[str, Any],
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    """Most recent sequence submission date (and that day's count) for a selector."""

    return fetch(
        "getting most recent submission date",
        api_url,
        "most-recent-submission-date",
        {**params, "timestamp": cache_bust(HOURLY)},
        _single_dated,
        None,
        session=session,
    )


def get_new_today(
    api_url: str,
    params: Mapping[str, Any],
    location: str,
    location_type: Optional[str],
    today: Optional[date] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    """
    Sequences submitted "today" for a location: the count of the most recent
    submission day when that day is less than two days old, else 0. None when
    the backend has no single most recent submission.
    """

    submission = get_most_recent_submission(
        api_url, _with_location(params, location, location_type), session=session
    )

    def to_row(latest: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        row: Dict[str, Any] = {"name": location, "date_count": None, "date_count_today": None}
        if latest is None:
            return row
        if is_new_today(latest["date_time"], today=today):
            count = latest.get("date_count")
            row.update(date_count=_as_int(count), date_count_today=format_count(count))
        else:
            row.update(date_count=0, date_count_today=0)
        return row

    return submission.map(to_row)


def get_new_today_all(
    api_url: str,
    params: Mapping[str, Any],
    locations: Sequence[Mapping[str, Any]],
    today: Optional[date] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    tasks = [lambda: get_new_today(api_url, params, WORLDWIDE, None, today=today, session=session)]
    for loc in locations:
        if loc.get("type") == "world":
            continue
        tasks.append(
            lambda loc=loc: get_new_today(
                api_url, params, loc["name"], loc.get("type"), today=today, session=session
            )
        )

    return aggregate(tasks).map(
        lambda rows: sorted(
            rows,
            key=lambda r: r["date_count"] if r["date_count"] is not None else -1,
            reverse=True,
        )
    )


def get_world_prevalence(
    api_url: str,
    params: Mapping[str, Any],
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    def transform(payload: Any) -> Dict[str, Any]:
        results = dict(pluck(payload, "results"))
        return {
            **results,
            "proportion_formatted": format_percent(results["global_prevalence"]),
            "lineage_count_formatted": format_count(results.get("lineage_count")),
            "first_detected": format_date_short(parse_date(results.get("first_detected"))),
            "last_detected": format_date_short(parse_date(results.get("last_detected"))),
        }

    return fetch(
        "getting recent global prevalence data",
        api_url,
        "global-prevalence",
        {**params, "cumulative": "true", "timestamp": cache_bust(HOURLY)},
        transform,
        None,
        session=session,
    )


def get_cum_prevalence(
    api_url: str,
    params: Mapping[str, Any],
    location: str,
    location_type: str,
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    def transform(payload: Any) -> Dict[str, Any]:
        results = dict(pluck(payload, "results"))
        return {
            **results,
            "name": location,
            "type": location_type,
            "first_detected": format_date_short(parse_date(results.get("first_detected"))),
            "last_detected": format_date_short(parse_date(results.get("last_detected"))),
            "proportion_formatted": format_cum_proportion(
                to_number(results.get("global_prevalence")), results.get("lineage_count")
            ),
            "lineage_count_formatted": format_count(results.get("lineage_count")),
        }

    return fetch(
        f"getting cumulative prevalence for {location}",
        api_url,
        "prevalence-by-location",
        {**params, location_type: location, "cumulative": "true", "timestamp": cache_bust(HOURLY)},
        transform,
        None,
        session=session,
    )


def _prevalence_key(row: Mapping[str, Any]) -> float:
    value = to_number(row.get("proportion", row.get("global_prevalence")))
    return value if value is not None else -1.0


def get_cum_prevalences(
    api_url: str,
    params: Mapping[str, Any],
    locations: Sequence[Mapping[str, Any]],
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    tasks = [
        lambda loc=loc: get_cum_prevalence(api_url, params, loc["name"], loc["type"], session=session)
        for loc in locations
        if loc.get("type") != "world"
    ]
    return aggregate(tasks).map(
        lambda rows: sorted((r for r in rows if r is not None), key=_prevalence_key, reverse=True)
    )


def get_location_prevalence(
    api_url: str,
    params: Mapping[str, Any],
    location: str,
    location_type: Optional[str],
    ndays: Optional[int] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """Most recent prevalence in every country (worldwide) or every division of a country."""

    if location_type == "division":
        return Outcome.success([])

    worldwide = location == WORLDWIDE
    query: Params = dict(params)
    if not worldwide:
        query["country"] = location
    query["timestamp"] = cache_bust(HOURLY)
    if ndays:
        query["ndays"] = ndays

    def transform(payload: Any) -> List[Dict[str, Any]]:
        rows = []
        for d in _results(payload):
            name = title_case(d.get("name"))
            row = {k: v for k, v in d.items() if k != "date"}
            row.update(
                name=name,
                proportion_formatted=format_percent(d["proportion"]),
                # "date" here is when the lineage was last detected, not the report date.
                date_last_detected=d.get("date"),
                location_id=location_key(name or "", worldwide),
            )
            rows.append(row)
        return rows

    return fetch(
        "getting recent prevalence data by location",
        api_url,
        "lineage-by-country-most-recent" if worldwide else "lineage-by-division-most-recent",
        query,
        transform,
        [],
        session=session,
    )


def get_positive_locations(
    api_url: str,
    params: Mapping[str, Any],
    location: str,
    location_type: Optional[str] = None,
    session: Optional[requests.Session] = None,
) -> Outcome[List[str]]:
    worldwide = location == WORLDWIDE
    query: Params = {**params, "detected": "true"}
    if not worldwide:
        query["country"] = location
    query["timestamp"] = cache_bust(HOURLY)

    def transform(payload: Any) -> List[str]:
        return [title_case(name) for name in pluck(payload, "results", "names")]

    return fetch(
        f"getting positive locations in {location}",
        api_url,
        "lineage-by-country-most-recent" if worldwide else "lineage-by-division-most-recent",
        query,
        transform,
        [],
        session=session,
    )


def get_temporal_prevalence(
    api_url: str,
    location: str,
    location_type: Optional[str],
    params: Mapping[str, Any],
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    worldwide = location == WORLDWIDE
    query = _with_location(params, location, location_type)
    query["timestamp"] = cache_bust(HOURLY)

    def transform(payload: Any) -> List[Dict[str, Any]]:
        return [
            {**d, "date_time": parse_date(d.get("date")), "name": title_case(d.get("name"))}
            for d in _results(payload)
        ]

    return fetch(
        f"getting temporal data for {location}",
        api_url,
        "global-prevalence" if worldwide else "prevalence-by-location",
        query,
        transform,
        [],
        session=session,
    )


def _order_curated(records: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    return sorted(
        (dict(r) for r in records),
        key=lambda r: (str(r.get("variantType") or ""), str(r.get("mutation_name") or "")),
    )


def nest(records: Sequence[Mapping[str, Any]], key: str) -> List[Dict[str, Any]]:
    """Group records as ``[{"key": k, "values": [...]}, ...]`` in first-appearance order."""

    groups: Dict[Any, List[Any]] = {}
    for record in records:
        groups.setdefault(record.get(key), []).append(record)
    return [{"key": k, "values": v} for k, v in groups.items()]


def get_curated_list(
    curated_url: str,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """Curated reports grouped by report type (``lineage``, ``mutation``)."""

    def transform(payload: Any) -> List[Dict[str, Any]]:
        if not isinstance(payload, list):
            raise ShapeError("curated list is not a JSON array")
        return nest(_order_curated(payload), "reportType")

    return fetch("getting curated data", curated_url, "", None, transform, [], session=session)


def get_curated_metadata(
    curated_url: str,
    report_id: Optional[str],
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    def transform(payload: Any) -> Optional[Dict[str, Any]]:
        if not isinstance(payload, list):
            raise ShapeError("curated list is not a JSON array")
        curated = [d for d in payload if d.get("mutation_name") == report_id]
        if len(curated) == 1:
            return dict(curated[0])
        logger.info(f"No reports or more than one report metadata found for {report_id!r}.")
        return None

    return fetch("getting curated metadata", curated_url, "", None, transform, None, session=session)


def get_lineage_resources(
    resource_url: str,
    query: str,
    size: int,
    page: int,
    sort: str = "-date",
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    params = {
        "q": query,
        "sort": sort,
        "size": size,
        "from": page,
        "fields": "@type,name,author,date,journalName",
        "timestamp": cache_bust(HOURLY),
    }

    def transform(payload: Any) -> Dict[str, Any]:
        hits = [
            {**d, "date_formatted": format_date(parse_date(d.get("date")))}
            for d in pluck(payload, "hits")
        ]
        return {"resources": hits, "total": payload.get("total")}

    return fetch(
        "getting lineage resources",
        resource_url,
        "query",
        params,
        transform,
        {"resources": [], "total": 0},
        session=session,
    )


def _find_names(
    api_url: str,
    path: str,
    query: str,
    casing,
    tag: str,
    session: Optional[requests.Session],
) -> Outcome[List[Dict[str, Any]]]:
    def transform(payload: Any) -> List[Dict[str, Any]]:
        return [{**d, "name": casing(d.get("name"))} for d in _results(payload)]

    return fetch(
        tag,
        api_url,
        path,
        {"name": f"*{query}*", "timestamp": cache_bust(DAILY)},
        transform,
        [],
        session=session,
    )


def find_country(api_url: str, query: str, session: Optional[requests.Session] = None) -> Outcome[List[Dict[str, Any]]]:
    return _find_names(api_url, "country", query, title_case, "getting country names", session)


def find_division(api_url: str, query: str, session: Optional[requests.Session] = None) -> Outcome[List[Dict[str, Any]]]:
    return _find_names(api_url, "division", query, title_case, "getting division names", session)


def find_pangolin(api_url: str, query: str, session: Optional[requests.Session] = None) -> Outcome[List[Dict[str, Any]]]:
    return _find_names(api_url, "lineage", query, capitalize, "getting Pangolin lineage names", session)


def _all_lineages_request(
    location: str,
    location_type: str,
    other_threshold: float,
    nday_threshold: int,
    ndays: int,
    cumulative: bool,
) -> Tuple[str, Params]:
    by_division = location_type == "division"
    path = "prevalence-by-division-all-lineages" if by_division else "prevalence-by-country-all-lineages"
    params: Params = {
        "division" if by_division else "country": location,
        "other_threshold": other_threshold,
        "nday_threshold": nday_threshold,
        "ndays": ndays,
    }
    if cumulative:
        params["cumulative"] = "true"
    params["timestamp"] = cache_bust(DAILY)
    return path, params


def get_cum_prevalence_all_lineages(
    api_url: str,
    location: str,
    location_type: str,
    other_threshold: float,
    nday_threshold: int,
    ndays: int,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, float]]]:
    """Cumulative prevalence of every lineage in a place, as one wide row."""

    path, params = _all_lineages_request(
        location, location_type, other_threshold, nday_threshold, ndays, cumulative=True
    )

    def transform(payload: Any) -> List[Dict[str, float]]:
        rows = sorted(_results(payload), key=lambda d: to_number(d.get("prevalence")) or 0.0, reverse=True)
        return [{capitalize(d["lineage"]): d.get("prevalence") for d in rows}]

    return fetch(
        "getting cumulative prevalence for all lineages in a place",
        api_url,
        path,
        params,
        transform,
        [],
        session=session,
    )


def get_prevalence_all_lineages(
    api_url: str,
    location: str,
    location_type: str,
    other_threshold: float,
    nday_threshold: int,
    ndays: int,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """Daily rolling prevalence of every lineage, one wide row per date after mid March 2020."""

    path, params = _all_lineages_request(
        location, location_type, other_threshold, nday_threshold, ndays, cumulative=False
    )

    def transform(payload: Any) -> List[Dict[str, Any]]:
        results = [{**d, "pangolin_lineage": capitalize(d["lineage"])} for d in _results(payload)]
        lineages = list(dict.fromkeys(d["pangolin_lineage"] for d in results))
        by_date = sorted(nest(results, "date"), key=lambda g: str(g["key"]))

        wide = []
        for group in by_date:
            day = parse_date(group["key"])
            if day is None or day <= PREVALENCE_START:
                continue
            row: Dict[str, Any] = {"date_time": day}
            for lineage in lineages:
                matches = [d for d in group["values"] if d["pangolin_lineage"] == lineage]
                row[lineage] = matches[0].get("prevalence_rolling") if len(matches) == 1 else 0
            wide.append(row)
        return wide

    return fetch(
        "getting prevalence for all lineages in a place",
        api_url,
        path,
        params,
        transform,
        [],
        session=session,
    )


__all__ = [
    "WORLDWIDE",
    "build_query_params",
    "nest",
    "get_date_updated",
    "get_sequence_count",
    "get_mutation_details",
    "get_mutations_by_lineage",
    "get_characteristic_mutations",
    "get_most_recent_collection",
    "get_most_recent_submission",
    "get_new_today",
    "get_new_today_all",
    "get_world_prevalence",
    "get_cum_prevalence",
    "get_cum_prevalences",
    "get_location_prevalence",
    "get_positive_locations",
    "get_temporal_prevalence",
    "get_curated_list",
    "get_curated_metadata",
    "get_lineage_resources",
    "find_country",
    "find_division",
    "find_pangolin",
    "get_cum_prevalence_all_lineages",
    "get_prevalence_all_lineages",
]
