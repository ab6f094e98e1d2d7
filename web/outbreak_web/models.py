from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, Generic, List, Literal, Optional, Tuple, TypeVar

from outbreak_web.errors import SHAPE_ERRORS, QueryError, ShapeError
from outbreak_web.normalize import display_name


T = TypeVar("T")
U = TypeVar("U")

Status = Literal["pending", "success", "failure"]


@dataclass
class ProvenanceItem:
    """Lightweight provenance for a single backend query."""

    source_label: str
    endpoint_url: str
    elapsed_ms: float
    row_count: int
    status: Status


@dataclass
class Outcome(Generic[T]):
    """
    Request-scoped result handed back to the UI.

    - value: the view-ready value, or the empty fallback when the call failed.
    - status: "success" or "failure" ("pending" is reserved for callers that
      publish an outcome before the request resolves).
    - error: why the call failed, if it did.
    - provenance: one record per backend query that contributed.
    - absorbed: member failures an aggregate tolerated while still succeeding.
    """

    value: T
    status: Status = "success"
    error: Optional[QueryError] = None
    provenance: List[ProvenanceItem] = field(default_factory=list)
    absorbed: List[QueryError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @property
    def degraded(self) -> bool:
        """True when the value is (partly) made of fallbacks."""

        return not self.ok or bool(self.absorbed)

    def map(self, fn: Callable[[T], U]) -> "Outcome[U]":
        """Same status, error and provenance around ``fn(value)``."""

        return Outcome(
            value=fn(self.value),
            status=self.status,
            error=self.error,
            provenance=list(self.provenance),
            absorbed=list(self.absorbed),
        )

    def reshape(self, fn: Callable[[T], U], fallback: U) -> "Outcome[U]":
        """
        Like :meth:`map`, for an ``fn`` that reads external data.

        If ``fn`` cannot use the value, the result is a ``ShapeError`` failure
        carrying ``fallback``; an earlier error moves to ``absorbed``.
        """

        try:
            return self.map(fn)
        except SHAPE_ERRORS as exc:
            error = ShapeError(f"unexpected response shape: {exc!r}", cause=exc)
            earlier = [self.error] if self.error is not None else []
            return Outcome(
                value=fallback,
                status="failure",
                error=error,
                provenance=list(self.provenance),
                absorbed=earlier + list(self.absorbed),
            )

    @classmethod
    def success(cls, value: T, provenance: Optional[List[ProvenanceItem]] = None) -> "Outcome[T]":
        return cls(value=value, status="success", provenance=list(provenance or []))

    @classmethod
    def failure(
        cls,
        value: T,
        error: QueryError,
        provenance: Optional[List[ProvenanceItem]] = None,
    ) -> "Outcome[T]":
        return cls(value=value, status="failure", error=error, provenance=list(provenance or []))


@dataclass
class Entity:
    """One dated record of one location, reduced to what the similarity view uses."""

    location_id: str
    name: Optional[str]
    date: Optional[date]
    value: Optional[float]
    lat: Optional[float] = None
    lon: Optional[float] = None
    state_name: Optional[str] = None
    country_name: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def name_formatted(self) -> Optional[str]:
        return display_name(self.name, self.state_name, self.country_name)


@dataclass(frozen=True)
class SimilarityBand:
    lo: float
    hi: float
    center: float
    threshold: float
    logged: bool

    def contains(self, value: float) -> bool:
        return self.lo <= value <= self.hi


@dataclass
class RankedPeer:
    """A peer location from the band query, annotated with its distance to the focal value."""

    location_id: str
    value: Optional[float]
    value_diff: float


@dataclass
class LocationGroup:
    """
    Full series of one location with display fields taken from its most
    recent record.
    """

    key: str
    values: List[Entity]
    name: Optional[str]
    name_formatted: Optional[str]
    part_of_usa: bool
    lat: Optional[float]
    lon: Optional[float]
    similar_value: Optional[float]
    value_diff: float
    snapshot_diff: Optional[float] = None


@dataclass
class SimilarityReport:
    location: Optional[LocationGroup] = None
    similar: List[LocationGroup] = field(default_factory=list)
    x_domain: Optional[Tuple[date, date]] = None
    y_max_confirmed: Optional[float] = None
    y_max_dead: Optional[float] = None
    focal_value: Optional[float] = None
    band: Optional[SimilarityBand] = None
    drifted: List[str] = field(default_factory=list)


@dataclass
class DateUpdated:
    date_updated: Optional[str]
    last_updated: Optional[str]


@dataclass
class ReportList:
    date_updated: Optional[str] = None
    md: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LineageReport:
    """Everything the lineage/mutation report page binds to."""

    date_updated: Optional[DateUpdated] = None
    new_today: List[Dict[str, Any]] = field(default_factory=list)
    longitudinal: List[Dict[str, Any]] = field(default_factory=list)
    global_prev: Optional[Dict[str, Any]] = None
    loc_prev: List[Dict[str, Any]] = field(default_factory=list)
    by_country: List[Dict[str, Any]] = field(default_factory=list)
    countries: List[str] = field(default_factory=list)
    states: List[str] = field(default_factory=list)
    md: Optional[Dict[str, Any]] = None
    mutations: List[Dict[str, Any]] = field(default_factory=list)
    mutation_details: List[Dict[str, Any]] = field(default_factory=list)
    mutations_by_lineage: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class LocationUpdate:
    longitudinal: List[Dict[str, Any]] = field(default_factory=list)
    by_country: List[Dict[str, Any]] = field(default_factory=list)
    loc_prev: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class BasicLocationReport:
    date_updated: Optional[DateUpdated] = None
    curated: List[Dict[str, Any]] = field(default_factory=list)
    total: Optional[str] = None


@dataclass
class LocationReport:
    lineages_by_day: List[Dict[str, Any]] = field(default_factory=list)
    most_recent_lineages: List[Dict[str, Any]] = field(default_factory=list)
    lineage_domain: List[str] = field(default_factory=list)


@dataclass
class LineageComparison:
    lineages: List[str] = field(default_factory=list)
    mutations: List[Dict[str, Any]] = field(default_factory=list)
    shared: List[str] = field(default_factory=list)


@dataclass
class SequencingGap:
    name: str
    location_type: Optional[str]
    total: Optional[str]
    last_collected: Optional[date]
    last_submitted: Optional[date]
    lag_days: Optional[int]


@dataclass
class FilterSpec:
    key: str
    values: List[str]


@dataclass
class ResourcePage:
    results: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    recent: List[Dict[str, Any]] = field(default_factory=list)
    facets: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class SourceSummary:
    total: Optional[str] = None
    sources: Dict[str, Any] = field(default_factory=dict)
    date_modified: Optional[str] = None


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, dates and errors into plain JSON-ready structures."""

    if is_dataclass(value) and not isinstance(value, type):
        data = {f.name: to_jsonable(getattr(value, f.name)) for f in fields(value)}
        if isinstance(value, Entity):
            data["name_formatted"] = value.name_formatted
        return data
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseException):
        return f"{type(value).__name__}: {value}"
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_jsonable(v) for v in value]
    return value


__all__ = [
    "Status",
    "ProvenanceItem",
    "Outcome",
    "Entity",
    "SimilarityBand",
    "RankedPeer",
    "LocationGroup",
    "SimilarityReport",
    "DateUpdated",
    "ReportList",
    "LineageReport",
    "LocationUpdate",
    "BasicLocationReport",
    "LocationReport",
    "LineageComparison",
    "SequencingGap",
    "FilterSpec",
    "ResourcePage",
    "SourceSummary",
    "to_jsonable",
]
