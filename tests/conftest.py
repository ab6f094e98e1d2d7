import threading
from urllib.parse import urlparse

import pytest
import requests


EPI_URL = "https://epi.test/covid19/"
GENOMICS_URL = "https://genomics.test/genomics/"
RESOURCES_URL = "https://resources.test/resources/"
CURATED_URL = "https://curated.test/curated_mutations.json"


class FakeResponse:
    def __init__(self, payload=None, status_code=200, invalid_json=False):
        self.payload = payload
        self.status_code = status_code
        self.invalid_json = invalid_json

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def json(self):
        if self.invalid_json:
            raise ValueError("Expecting value: line 1 column 1 (char 0)")
        return self.payload


class FakeSession:
    """
    Stand-in for ``requests.Session`` routed by the last URL path segment.

    A route is a payload, a FakeResponse, an exception to raise, or a callable
    taking the query params and returning any of those. Unrouted paths 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []
        self._lock = threading.Lock()

    def get(self, url, params=None, headers=None, **kwargs):
        params = dict(params or {})
        with self._lock:
            self.calls.append((url, params, headers))
        segment = urlparse(url).path.rstrip("/").rsplit("/", 1)[-1]
        route = self.routes.get(segment, FakeResponse(status_code=404))
        if callable(route) and not isinstance(route, FakeResponse):
            route = route(params)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, FakeResponse):
            return route
        return FakeResponse(route)

    def calls_to(self, segment):
        return [c for c in self.calls if urlparse(c[0]).path.rstrip("/").endswith(segment)]


@pytest.fixture
def fake_session():
    def build(routes=None):
        return FakeSession(routes)

    return build
