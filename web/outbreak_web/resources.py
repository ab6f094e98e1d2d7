"""
Queries against the literature/resource metadata backend.

The search page combines a free-text query with facet filters written as
``key:value1,value2;key2:value3`` (the form they take in page URLs).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence

import requests

from outbreak_web import lucene
from outbreak_web.client import RESOURCE, cache_bust, fetch, pluck
from outbreak_web.errors import ShapeError
from outbreak_web.executor import aggregate
from outbreak_web.models import FilterSpec, Outcome, ResourcePage, SourceSummary
from outbreak_web.normalize import (
    format_count,
    format_day_month_year,
    parse_build_date,
    parse_utc_timestamp,
    resource_date,
    summarize_description,
)
from outbreak_web.state import LoadingFlags, loading

logger = logging.getLogger(__name__)

MATCH_ALL = "__all__"
LOADING_KEY = "admin.loading"

DEFAULT_FACETS = (
    "@type",
    "curatedBy.name",
    "keywords",
    "topicCategory",
    "funding.funder.name",
    "measurementTechnique",
    "variableMeasured",
)
FACET_ORDER = (
    "@type",
    "topicCategory",
    "curatedBy.name",
    "keywords",
    "funding.funder.name",
    "measurementTechnique",
    "variableMeasured",
)
FACET_LABELS = {
    "curatedBy.name": "source",
    "funding.funder.name": "funding",
    "measurementTechnique": "measurement technique",
    "topicCategory": "topic",
    "variableMeasured": "variable measured",
}
MOST_RECENT_FIELDS = (
    "@type",
    "name",
    "author",
    "creator",
    "datePublished",
    "dateModified",
    "dateCreated",
)
SUMMARY_FIELDS = (
    "@type",
    "name",
    "identifierSource",
    "interventions",
    "studyStatus",
    "armGroup",
    "studyLocation",
    "studyDesign",
    "datePublished",
    "journalName",
    "journalNameAbbrev",
    "author",
)
SOURCE_NAMES = {
    "ClinicalTrials.gov": "NCT",
    "WHO International Clinical Trials Registry Platform": "WHO",
}
FACETS_SHOWN = 5


def filter_string_to_list(filter_string: Optional[str]) -> List[FilterSpec]:
    if not filter_string:
        return []
    specs = []
    for part in filter_string.split(";"):
        key, _, values = part.partition(":")
        specs.append(FilterSpec(key=key, values=values.split(",")))
    return specs


def filter_list_to_string(filters: Sequence[FilterSpec]) -> str:
    return lucene.render(lucene.All(*(lucene.terms(f.key, f.values) for f in filters)))


def combine_query(query_string: Optional[str], filters: Sequence[FilterSpec]) -> str:
    """Free text AND facet filters; ``__all__`` when both are empty."""

    if not query_string and not filters:
        return MATCH_ALL
    parts: List[str] = []
    if query_string:
        parts.append(query_string)
    if filters:
        parts.append(filter_list_to_string(filters))
    return " AND ".join(parts)


def _hits(payload: Any) -> List[Dict[str, Any]]:
    hits = pluck(payload, "hits")
    if not isinstance(hits, list):
        raise ShapeError("'hits' is not a list")
    return hits


def _with_date(record: Mapping[str, Any]) -> Dict[str, Any]:
    return {**record, "date": resource_date(record)}


def describe(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Add the display date and the long/short description of one resource."""

    described = _with_date(record)
    long_description = record.get("abstract") or record.get("description")
    described["long_description"] = long_description
    if long_description:
        short, too_long = summarize_description(long_description)
        described.update(
            short_description=short,
            description_too_long=too_long,
            description_expanded=False,
        )
    return described


def get_metadata_array(
    api_url: str,
    query_string: str,
    sort: Optional[str],
    size: int,
    page: int,
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, Any]]:
    """One page of search hits, newest first."""

    params: Dict[str, Any] = {
        "q": query_string,
        "size": size,
        "from": page,
        "timestamp": cache_bust(RESOURCE),
    }
    if sort:
        params["sort"] = sort

    def transform(payload: Any) -> Dict[str, Any]:
        resources = [describe(d) for d in _hits(payload)]
        resources.sort(key=lambda d: d.get("date") or "", reverse=True)
        return {"results": resources, "total": pluck(payload, "total")}

    return fetch(
        "getting resource metadata",
        api_url,
        "query",
        params,
        transform,
        {"results": [], "total": 0},
        session=session,
    )


def get_resource_metadata(
    api_url: str,
    resource_id: str,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    if resource_id.startswith("zenodo"):
        query_string = resource_id
    else:
        query_string = lucene.render(lucene.Term("_id", resource_id, quoted=True))

    def transform(payload: Any) -> Dict[str, Any]:
        return _with_date(_hits(payload)[0])

    with loading(flags, LOADING_KEY):
        return fetch(
            f"getting resource metadata for {resource_id}",
            api_url,
            "query",
            {"q": query_string, "size": 1, "timestamp": cache_bust(RESOURCE)},
            transform,
            None,
            session=session,
        )


def facet_label(key: str) -> str:
    label = key.replace(".keyword", "").replace("@", "")
    return FACET_LABELS.get(label, label)


def _facet_rank(facet_id: str) -> int:
    # facets outside the display order sort first
    return FACET_ORDER.index(facet_id) if facet_id in FACET_ORDER else -1


def get_resource_facets(
    api_url: str,
    query_string: Optional[str],
    filters: Sequence[FilterSpec],
    facets: Sequence[str] = DEFAULT_FACETS,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """Term counts per facet, each term flagged ``checked`` when it is an active filter."""

    def transform(payload: Any) -> List[Dict[str, Any]]:
        shaped = []
        for key, facet in pluck(payload, "facets").items():
            facet_id = key.replace(".keyword", "")
            active = [f for f in filters if f.key == facet_id]
            counts = [
                {**term, "checked": len(active) == 1 and term.get("term") in active[0].values}
                for term in facet["terms"]
            ]
            shaped.append(
                {
                    "variable": facet_label(key),
                    "id": facet_id,
                    "counts": counts,
                    "filtered": [dict(c) for c in counts],
                    "total": len(counts),
                    "num_to_display": FACETS_SHOWN,
                    "expanded": True,
                }
            )
        shaped.sort(key=lambda f: _facet_rank(f["id"]))
        return shaped

    return fetch(
        "getting resource facets",
        api_url,
        "query",
        {
            "q": query_string or MATCH_ALL,
            "size": 0,
            "facet_size": 100,
            "facets": ",".join(facets),
            "timestamp": cache_bust(RESOURCE),
        },
        transform,
        [],
        session=session,
    )


def get_most_recent(
    api_url: str,
    query_string: str,
    sort: str = "-datePublished",
    num_to_return: int = 3,
    fields: Sequence[str] = MOST_RECENT_FIELDS,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    return fetch(
        "getting most recent resources",
        api_url,
        "query",
        {
            "q": query_string,
            "fields": ",".join(fields),
            "size": num_to_return,
            "sort": sort,
            "timestamp": cache_bust(RESOURCE),
        },
        lambda payload: [_with_date(d) for d in _hits(payload)],
        [],
        session=session,
    )


def get_most_recent_group(
    api_url: str,
    sort: str = "-datePublished",
    num_to_return: int = 3,
    session: Optional[requests.Session] = None,
) -> Outcome[Dict[str, List[Dict[str, Any]]]]:
    """Most recent publications, datasets and clinical trials."""

    types = {"publication": "Publication", "dataset": "Dataset", "clinicaltrial": "ClinicalTrial"}
    combined = aggregate(
        [
            lambda t=t: get_most_recent(
                api_url, lucene.render(lucene.Term("@type", t)), sort, num_to_return, session=session
            )
            for t in types.values()
        ]
    )
    return combined.map(lambda values: dict(zip(types, values)))


def get_resources(
    api_url: str,
    query_string: Optional[str],
    filter_string: Optional[str],
    sort: Optional[str],
    size: int,
    page: int,
    session: Optional[requests.Session] = None,
    flags: Optional[LoadingFlags] = None,
) -> Outcome[ResourcePage]:
    """Search results page: newest matches, one page of hits and the facet counts."""

    filters = filter_string_to_list(filter_string)
    combined_query = combine_query(query_string, filters)
    with loading(flags, LOADING_KEY):
        combined = aggregate(
            [
                lambda: get_most_recent(api_url, combined_query, session=session),
                lambda: get_metadata_array(api_url, combined_query, sort, size, page, session=session),
                lambda: get_resource_facets(api_url, combined_query, filters, session=session),
            ]
        )

        def build(values) -> ResourcePage:
            recent, hits, facets = values
            return ResourcePage(
                results=hits["results"],
                total=hits["total"],
                recent=recent,
                facets=facets,
            )

        return combined.map(build)


def phrase_query(terms: Sequence[str]) -> str:
    return lucene.render(lucene.any_of(None, terms))


def get_query_summary(
    api_url: str,
    query_string: str,
    fields: Sequence[str] = SUMMARY_FIELDS,
    facets: Sequence[str] = ("@type", "curatedBy.name"),
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[Dict[str, Any]]]:
    def transform(payload: Any) -> Dict[str, Any]:
        return {**payload, "types": pluck(payload, "facets", "@type", "terms")}

    return fetch(
        f"getting query summary for {query_string}",
        api_url,
        "query",
        {
            "q": query_string,
            "size": 1000,
            "fields": ",".join(fields),
            "facets": ",".join(facets),
            "facet_size": 25,
            "timestamp": cache_bust(RESOURCE),
        },
        transform,
        None,
        session=session,
    )


def get_query_summaries(
    api_url: str,
    queries: Sequence[Mapping[str, Any]],
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """
    Summaries for named term groups (``{"name": ..., "terms": [...]}``), with
    every ``@type`` term tagged ``x`` = group name and ``y`` = type for plotting.
    """

    keyed = [{**q, "query": phrase_query(q["terms"])} for q in queries]

    def label(values) -> List[Dict[str, Any]]:
        summaries = []
        for key, summary in zip(keyed, values):
            if summary is None:
                continue
            types = [{**t, "x": key.get("name"), "y": t.get("term")} for t in summary["types"]]
            summaries.append({**summary, "key": key, "types": types})
        return summaries

    combined = aggregate(
        [lambda q=q: get_query_summary(api_url, q["query"], session=session) for q in keyed]
    )
    return combined.map(label)


def get_trial_summary(
    api_url: str,
    term: str,
    session: Optional[requests.Session] = None,
) -> Outcome[List[Dict[str, Any]]]:
    """Arms, interventions and status of trials mentioning ``term`` by name or description."""

    query_string = lucene.render(
        lucene.Either(lucene.Term("name", term, quoted=True), lucene.Term("description", term, quoted=True))
    )
    return fetch(
        f"getting clinical trial summary for {term}",
        api_url,
        "query",
        {
            "q": query_string,
            "fields": "armGroup.name,armGroup.intervention,dateCreated,studyStatus",
            "size": 1000,
            "timestamp": cache_bust(RESOURCE),
        },
        _hits,
        [],
        session=session,
    )


def _source_children(type_bucket: Mapping[str, Any]) -> List[Dict[str, Any]]:
    curated = type_bucket["curatedBy.name"]
    children = [
        {**source, "name": SOURCE_NAMES.get(source["term"], source["term"])}
        for source in curated["terms"]
    ]
    # Zenodo records carry no curatedBy yet; the remainder is theirs.
    zenodo = type_bucket["count"] - curated["total"]
    if zenodo:
        children.append({"name": "Zenodo", "count": zenodo})
    return children


def get_source_counts(
    api_url: str,
    session: Optional[requests.Session] = None,
) -> Outcome[SourceSummary]:
    """Resource counts per type and curating source, as a two-level tree."""

    def transform(payload: Any) -> SourceSummary:
        types = pluck(payload, "facets", "@type", "terms")
        children = [{"name": d["term"], "children": _source_children(d)} for d in types]
        return SourceSummary(
            total=format_count(pluck(payload, "total")),
            sources={"name": "root", "children": children},
        )

    return fetch(
        "getting resource source counts",
        api_url,
        "query",
        {"aggs": "@type(curatedBy.name)", "facet_size": 100, "timestamp": cache_bust(RESOURCE)},
        transform,
        SourceSummary(),
        session=session,
    )


def get_resources_metadata(
    api_url: str,
    session: Optional[requests.Session] = None,
) -> Outcome[Optional[str]]:
    def transform(payload: Any) -> Optional[str]:
        build_date = pluck(payload, "build_date")
        parsed = parse_utc_timestamp(build_date) or parse_build_date(build_date)
        return format_day_month_year(parsed)

    return fetch("getting resource build date", api_url, "metadata", None, transform, None, session=session)


def get_source_summary(
    api_url: str,
    session: Optional[requests.Session] = None,
) -> Outcome[SourceSummary]:
    combined = aggregate(
        [
            lambda: get_source_counts(api_url, session=session),
            lambda: get_resources_metadata(api_url, session=session),
        ]
    )

    def build(values) -> SourceSummary:
        counts, date_modified = values
        return SourceSummary(total=counts.total, sources=counts.sources, date_modified=date_modified)

    return combined.map(build)


__all__ = [
    "MATCH_ALL",
    "filter_string_to_list",
    "filter_list_to_string",
    "combine_query",
    "describe",
    "get_metadata_array",
    "get_resource_metadata",
    "facet_label",
    "get_resource_facets",
    "get_most_recent",
    "get_most_recent_group",
    "get_resources",
    "phrase_query",
    "get_query_summary",
    "get_query_summaries",
    "get_trial_summary",
    "get_source_counts",
    "get_resources_metadata",
    "get_source_summary",
]
