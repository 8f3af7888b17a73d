"""
tests/conftest.py -- Shared test fixtures for PostureWatch.

This module provides:
  - make_store(): isolated named shared-memory SQLite MonitorStore
  - make_assessment(): completed Assessment builder with sane defaults
  - FakeFetch: deterministic stand-in for core.fetcher.fetch_target
  - _patch_lifespan(): wires test services into app.state, bypassing real startup
  - api_client: TestClient with a user JWT for API integration tests

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient and the scheduler run work in thread pools. Plain
:memory: DBs are per-connection and would present a blank schema to each
worker thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the same process.

The DEBUG env var must be set before any core/auth import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import itertools
import os
from collections.abc import Generator
from contextlib import asynccontextmanager

# CRITICAL: Set DEBUG before any auth/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JOB_TOKEN", "test-job-token")
os.environ.setdefault("CERT_LOOKUP_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient

from alerts.notifier import LogNotifier
from api.main import app, build_services
from auth.tokens import create_access_token
from core.models import Assessment, FetchResult, RiskLevel, ScanStatus
from core.scoring import SECURITY_HEADERS, level_for_score
from monitor.models import UserProfile
from monitor.store import MonitorStore

_db_counter = itertools.count()

ALL_HEADERS = {h: "set" for h in SECURITY_HEADERS}


def make_store(name: str) -> MonitorStore:
    """Create an isolated store. Each call gets a fresh database."""
    return MonitorStore(f"sqlite:///file:test_{name}_{next(_db_counter)}?mode=memory&cache=shared&uri=true")


def make_assessment(**overrides) -> Assessment:
    """Completed assessment: valid TLS, every checklist header present, score 0."""
    fields = dict(
        target_url="https://example.com/",
        status=ScanStatus.completed,
        ssl_valid=True,
        ssl_days_left=200,
        present_headers=frozenset(SECURITY_HEADERS),
        missing_headers=frozenset(),
        detected_technologies=(),
        risk_score=0,
        risk_level=RiskLevel.low,
        completed_at="2026-01-01T00:00:00.000000+00:00",
    )
    fields.update(overrides)
    if "risk_score" in overrides and "risk_level" not in overrides:
        fields["risk_level"] = level_for_score(fields["risk_score"])
    return Assessment(**fields)


class FakeFetch:
    """Callable replacement for fetch_target returning queued FetchResults.

    Each call pops the next result; the last one repeats. Records URLs seen.
    """

    def __init__(self, *results: FetchResult) -> None:
        self.results = list(results)
        self.calls: list[str] = []

    def __call__(self, url, settings=None) -> FetchResult:
        self.calls.append(url)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        return FetchResult(
            url=url,
            ssl_valid=result.ssl_valid,
            ssl_days_left=result.ssl_days_left,
            ssl_issuer=result.ssl_issuer,
            ssl_expires_at=result.ssl_expires_at,
            headers=dict(result.headers) if result.headers is not None else None,
            body=result.body,
            fingerprint_headers=result.fingerprint_headers,
            elapsed_ms=result.elapsed_ms,
        )


def healthy_fetch() -> FetchResult:
    return FetchResult(url="", ssl_valid=True, ssl_days_left=200, headers=dict(ALL_HEADERS), body="<html></html>")


@pytest.fixture
def store() -> Generator[MonitorStore, None, None]:
    s = make_store("unit")
    yield s
    s.close()


@pytest.fixture
def user_id(store: MonitorStore) -> int:
    return store.create_user(UserProfile(email="owner@example.com", full_name="Owner"))


def _patch_lifespan(store: MonitorStore, notifier: LogNotifier, fetch: FakeFetch):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and a fake fetcher into app.state so TestClient
    routes never touch the network or the production database.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        build_services(app, store, notifier=notifier)
        app.state.scan_service.fetch = fetch
        app.state.scheduler_task = None
        yield

    return test_lifespan


@pytest.fixture(scope="module")
def api_client() -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, token, user_id) for API integration tests.

    The TestClient uses the real FastAPI app with a patched lifespan so
    tests hit real route handlers but use an isolated in-memory store and a
    fake fetcher that reports a healthy site. base_url must be an allowed
    host for TrustedHostMiddleware.
    """
    store = make_store("api")
    uid = store.create_user(UserProfile(email="apiuser@example.com", full_name="API User"))
    token = create_access_token(uid, expire_seconds=3600)

    app.router.lifespan_context = _patch_lifespan(store, LogNotifier(), FakeFetch(healthy_fetch()))

    with TestClient(app, base_url="http://localhost", raise_server_exceptions=True) as client:
        yield client, token, uid

    store.close()
