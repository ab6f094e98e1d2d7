from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, Optional, TypeVar

T = TypeVar("T")

FlagListener = Callable[[str, bool], None]


class LoadingFlags:
    """
    Boolean loading indicators keyed by dotted path (``admin.dataloading``).

    Nothing here is process-wide: the UI owns an instance and passes it to the
    assemblers, optionally with a listener that is told about every change.
    """

    def __init__(self, on_change: Optional[FlagListener] = None) -> None:
        self._flags: Dict[str, bool] = {}
        self._lock = threading.Lock()
        self._on_change = on_change

    def set(self, key: str, value: bool) -> None:
        with self._lock:
            self._flags[key] = value
        if self._on_change is not None:
            self._on_change(key, value)

    def get(self, key: str) -> bool:
        with self._lock:
            return self._flags.get(key, False)

    def snapshot(self) -> Dict[str, bool]:
        with self._lock:
            return dict(self._flags)

    @contextmanager
    def track(self, key: str) -> Iterator[None]:
        self.set(key, True)
        try:
            yield
        finally:
            self.set(key, False)


@contextmanager
def loading(flags: Optional[LoadingFlags], key: str) -> Iterator[None]:
    """``flags.track(key)`` that tolerates callers without flags."""

    if flags is None:
        yield
        return
    with flags.track(key):
        yield


class GenerationGate:
    """
    Monotonic request tokens per UI region.

    A request that has been superseded by a newer one for the same region
    drops its result and leaves the region's loading flag alone.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, int] = {}
        self._lock = threading.Lock()

    def issue(self, region: str) -> int:
        with self._lock:
            token = self._tokens.get(region, 0) + 1
            self._tokens[region] = token
            return token

    def is_current(self, region: str, token: int) -> bool:
        with self._lock:
            return self._tokens.get(region) == token

    def run(
        self,
        region: str,
        request: Callable[[], T],
        flags: Optional[LoadingFlags] = None,
    ) -> Optional[T]:
        token = self.issue(region)
        if flags is not None:
            flags.set(region, True)
        try:
            result = request()
        finally:
            current = self.is_current(region, token)
            if flags is not None and current:
                flags.set(region, False)
        return result if current else None


__all__ = [
    "LoadingFlags",
    "loading",
    "GenerationGate",
]
