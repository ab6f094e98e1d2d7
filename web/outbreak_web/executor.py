from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, List, Optional, Sequence, Tuple

from outbreak_web.errors import SHAPE_ERRORS, QueryError, ShapeError
from outbreak_web.models import Outcome, ProvenanceItem

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8
_max_workers = DEFAULT_MAX_WORKERS

Task = Callable[[], Outcome[Any]]


def _settle(future: "Future[Outcome[Any]]") -> Outcome[Any]:
    try:
        return future.result()
    except QueryError as exc:
        # Unguarded member: no fallback is known, so it contributes None.
        logger.warning(f"Unguarded fan-out member failed: {exc}")
        return Outcome.failure(None, exc)
    except SHAPE_ERRORS as exc:
        logger.warning(f"Fan-out member could not read its payload: {exc!r}")
        return Outcome.failure(None, ShapeError(f"unexpected response shape: {exc!r}", cause=exc))


def set_max_workers(max_workers: int) -> None:
    """Upper bound on the threads one fan-out may use."""

    global _max_workers
    if max_workers < 1:
        raise ValueError("max_workers must be at least 1")
    _max_workers = max_workers


def gather(tasks: Sequence[Task], max_workers: Optional[int] = None) -> List[Outcome[Any]]:
    """
    Start every task at once and wait until all of them have finished.

    The returned list is in the order of ``tasks``, not completion order.
    """

    if not tasks:
        return []
    workers = max_workers or min(len(tasks), _max_workers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(task) for task in tasks]
        return [_settle(future) for future in futures]


def aggregate(
    tasks: Sequence[Task],
    require_all: bool = False,
    max_workers: Optional[int] = None,
) -> Outcome[Tuple[Any, ...]]:
    """
    Run ``tasks`` concurrently and combine their values positionally.

    Members that fail still contribute their fallback value. By default the
    aggregate succeeds anyway and lists those failures on ``absorbed``; with
    ``require_all`` any member failure fails the aggregate.
    """

    outcomes = gather(tasks, max_workers=max_workers)
    values = tuple(o.value for o in outcomes)
    provenance: List[ProvenanceItem] = [p for o in outcomes for p in o.provenance]
    failures: List[QueryError] = []
    for o in outcomes:
        if o.error is not None:
            failures.append(o.error)
        failures.extend(o.absorbed)

    if failures and require_all:
        first = failures[0]
        error = type(first)(f"{len(failures)} of {len(outcomes)} queries failed: {first}", cause=first)
        combined: Outcome[Tuple[Any, ...]] = Outcome.failure(values, error, provenance)
        combined.absorbed = failures[1:]
        return combined

    combined = Outcome.success(values, provenance)
    combined.absorbed = failures
    return combined


__all__ = [
    "Task",
    "DEFAULT_MAX_WORKERS",
    "set_max_workers",
    "gather",
    "aggregate",
]
