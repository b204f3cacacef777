"""Shared pytest fixtures for the treasury ingestion tests.

Every test gets its own SQLite file database (worker threads need their own
connections) and a scripted stand-in for ``requests.Session``.
"""
from __future__ import annotations

import json
from typing import Any, Callable, Optional, Union

import pytest
import requests

from treasury_ingest import db
from treasury_ingest.helpers import DatabaseHelpers
from treasury_ingest.rate_limiter import RATE_LIMITERS


def build_response(
    status_code: int = 200,
    body: Union[bytes, str, dict, list, None] = None,
    *,
    url: str = "https://example.test/",
    headers: Optional[dict[str, str]] = None,
    reason: str = "",
) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.url = url
    response.reason = reason or {200: "OK", 404: "Not Found", 409: "Conflict", 429: "Too Many Requests"}.get(
        status_code, "Error"
    )
    response.encoding = "utf-8"
    if isinstance(body, (dict, list)):
        response._content = json.dumps(body).encode("utf-8")
        response.headers["Content-Type"] = "application/json"
    elif isinstance(body, str):
        response._content = body.encode("utf-8")
        response.headers["Content-Type"] = "text/html; charset=utf-8"
    else:
        response._content = body or b""
    for key, value in (headers or {}).items():
        response.headers[key] = value
    return response


Handler = Union[requests.Response, Exception, Callable[..., requests.Response]]


class FakeSession:
    """Answers requests from routes registered by URL substring.

    A route holds a list of handlers consumed in order; the last one repeats.
    """

    def __init__(self) -> None:
        self.routes: list[tuple[str, str, list[Handler]]] = []
        self.calls: list[dict[str, Any]] = []

    def add(self, method: str, fragment: str, *handlers: Handler) -> "FakeSession":
        self.routes.append((method.upper(), fragment, list(handlers)))
        return self

    def request(self, method: str, url: str, **kwargs: Any) -> requests.Response:
        self.calls.append({"method": method.upper(), "url": url, **kwargs})
        for route_method, fragment, handlers in self.routes:
            if route_method == method.upper() and fragment in url:
                handler = handlers.pop(0) if len(handlers) > 1 else handlers[0]
                if isinstance(handler, Exception):
                    raise handler
                if callable(handler) and not isinstance(handler, requests.Response):
                    return handler(method, url, **kwargs)
                return handler
        return build_response(404, b"", url=url)

    def get(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> requests.Response:
        return self.request("POST", url, **kwargs)


@pytest.fixture(autouse=True)
def reset_rate_limiters():
    """Clear the process-wide limiters so tests never wait on each other."""
    for limiter in RATE_LIMITERS.values():
        limiter.clear()
    yield
    for limiter in RATE_LIMITERS.values():
        limiter.clear()


@pytest.fixture
def engine(tmp_path):
    engine = db.create_db_engine(f"sqlite:///{tmp_path / 'treasury.db'}")
    db.ensure_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def helpers(engine):
    return DatabaseHelpers(engine, sleep=lambda _seconds: None)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def response():
    return build_response


@pytest.fixture
def make_entity(helpers):
    def factory(
        ticker: str,
        legal_name: Optional[str] = None,
        listing_venue: str = "HKEX",
        region: str = "HK",
    ):
        entity, _ = helpers.find_or_create_entity(
            legal_name or f"{ticker} Holdings Limited", ticker, listing_venue, region, fuzzy=False
        )
        return entity

    return factory
