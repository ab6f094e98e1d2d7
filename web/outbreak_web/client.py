from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, TypeVar

import requests

from outbreak_web.errors import SHAPE_ERRORS, DecodeError, QueryError, ShapeError, TransportError
from outbreak_web.models import Outcome, ProvenanceItem

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_S = 30.0
DEFAULT_USER_AGENT = "outbreak-web/0.1"
DEFAULT_PAGE_SIZE = 1000
MAX_RESULT_WINDOW = 10_000

# Cache-busting buckets, in milliseconds.
RESOURCE = 1e5
HOURLY = 36e5
DAILY = 8.64e7

REQUEST_HEADERS = {"Content-Type": "application/json"}


@dataclass
class QueryResult:
    url: str
    payload: Any
    elapsed_ms: float
    status: str
    error: Optional[QueryError] = None

    def provenance(self, label: str, row_count: int = 0) -> ProvenanceItem:
        return ProvenanceItem(
            source_label=label,
            endpoint_url=self.url,
            elapsed_ms=self.elapsed_ms,
            row_count=row_count,
            status="success" if self.error is None else "failure",
        )


def configure_session(
    timeout: float = DEFAULT_TIMEOUT_S,
    user_agent: str = DEFAULT_USER_AGENT,
) -> requests.Session:
    session = requests.Session()
    session.headers.update({"User-Agent": user_agent})
    session.request = _wrap_with_timeout(session.request, timeout=timeout)
    return session


def _wrap_with_timeout(request_method, timeout: float):
    def request_with_timeout(method, url, **kwargs):
        kwargs.setdefault("timeout", timeout)
        return request_method(method, url, **kwargs)

    return request_with_timeout


_DEFAULT_SESSION: Optional[requests.Session] = None


def get_session() -> requests.Session:
    """Shared session used when a caller does not pass its own."""

    global _DEFAULT_SESSION
    if _DEFAULT_SESSION is None:
        _DEFAULT_SESSION = configure_session()
    return _DEFAULT_SESSION


def cache_bust(period_ms: float, now: Optional[float] = None) -> int:
    """
    Coarse ``timestamp`` query parameter: the current epoch time in ms divided
    by the bucket length, so repeat requests inside one bucket share a URL.
    """

    epoch_ms = (time.time() if now is None else now) * 1000
    return round(epoch_ms / period_ms)


def build_url(base_url: str, path: str) -> str:
    if not path:
        return base_url
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def query(
    base_url: str,
    path: str,
    params: Optional[Mapping[str, Any]] = None,
    session: Optional[requests.Session] = None,
) -> QueryResult:
    """
    Issue one GET against ``base_url``/``path`` and decode the JSON body.

    Never raises: transport and decode failures are returned on
    ``QueryResult.error``.
    """

    url = build_url(base_url, path)
    http = session or get_session()
    start = time.perf_counter()

    def _done(payload: Any, error: Optional[QueryError]) -> QueryResult:
        elapsed_ms = (time.perf_counter() - start) * 1000.0
        return QueryResult(
            url=url,
            payload=payload,
            elapsed_ms=elapsed_ms,
            status="ok" if error is None else "error",
            error=error,
        )

    try:
        resp = http.get(url, params=dict(params or {}), headers=REQUEST_HEADERS)
        resp.raise_for_status()
    except requests.RequestException as exc:
        return _done(None, TransportError(str(exc), cause=exc))

    try:
        payload = resp.json()
    except ValueError as exc:
        return _done(None, DecodeError(f"Failed to decode JSON from {url}: {exc}", cause=exc))

    return _done(payload, None)


def pluck(payload: Any, *keys: str) -> Any:
    """Walk nested mappings, raising ShapeError when a key is absent."""

    value = payload
    for key in keys:
        if not isinstance(value, Mapping) or key not in value:
            raise ShapeError(f"response is missing '{key}'")
        value = value[key]
    return value


def _row_count(value: Any) -> int:
    if isinstance(value, (list, tuple)):
        return len(value)
    return 0 if value is None else 1


def fetch(
    tag: str,
    base_url: str,
    path: str,
    params: Optional[Mapping[str, Any]],
    transform: Callable[[Any], T],
    fallback: T,
    session: Optional[requests.Session] = None,
) -> Outcome[T]:
    """
    Query one endpoint and shape its payload.

    Every failure (transport, decode, or a payload ``transform`` cannot use)
    is logged under ``tag`` and replaced by ``fallback``.
    """

    result = query(base_url, path, params, session=session)
    error = result.error
    if error is None:
        try:
            value = transform(result.payload)
        except ShapeError as exc:
            error = exc
        except SHAPE_ERRORS as exc:
            error = ShapeError(f"unexpected response shape: {exc!r}", cause=exc)
        else:
            return Outcome.success(value, [result.provenance(tag, _row_count(value))])

    logger.warning(f"Error in {tag}: {error}")
    provenance = result.provenance(tag)
    provenance.status = "failure"
    return Outcome.failure(fallback, error, [provenance])


def get_all(
    base_url: str,
    q: str,
    fields: Optional[List[str]] = None,
    session: Optional[requests.Session] = None,
    page_size: int = DEFAULT_PAGE_SIZE,
    max_window: int = MAX_RESULT_WINDOW,
    path: str = "query",
) -> Outcome[List[Dict[str, Any]]]:
    """
    Collect every hit of a search query by paging with ``size``/``from``.

    Stops on an empty page, once ``total`` hits have been read, or at the
    backend's result window. A failing page fails the whole collection.
    """

    hits: List[Dict[str, Any]] = []
    provenance: List[ProvenanceItem] = []
    offset = 0
    total: Optional[int] = None

    while offset < max_window:
        params: Dict[str, Any] = {"q": q, "size": min(page_size, max_window - offset)}
        if fields:
            params["fields"] = ",".join(fields)
        if offset:
            params["from"] = offset

        result = query(base_url, path, params, session=session)
        error = result.error
        page: List[Dict[str, Any]] = []
        if error is None:
            try:
                page = list(pluck(result.payload, "hits"))
                reported = result.payload.get("total")
                total = int(reported) if reported is not None else total
            except ShapeError as exc:
                error = exc
            except (TypeError, ValueError) as exc:
                error = ShapeError(f"unexpected response shape: {exc!r}", cause=exc)

        if error is not None:
            logger.warning(f"Error in getting all results for '{q}': {error}")
            failed = result.provenance(f"get_all[{offset}]")
            failed.status = "failure"
            provenance.append(failed)
            return Outcome.failure([], error, provenance)

        provenance.append(result.provenance(f"get_all[{offset}]", len(page)))
        if not page:
            break
        hits.extend(page)
        offset += len(page)
        logger.debug(f"Fetched {offset}/{total if total is not None else '?'} hits for '{q}'.")
        if total is not None and offset >= total:
            break

    return Outcome.success(hits, provenance)


__all__ = [
    "QueryResult",
    "RESOURCE",
    "HOURLY",
    "DAILY",
    "MAX_RESULT_WINDOW",
    "configure_session",
    "get_session",
    "cache_bust",
    "build_url",
    "query",
    "pluck",
    "fetch",
    "get_all",
]
