"""Tests for core/fetcher.py -- passive probes with a fake requests session.

No network: _new_session() is patched to return a scripted session and
certificate lookups go through an injected CertificateSource.
"""

import itertools
from unittest.mock import patch

import requests

from core.config import get_settings
from core.fetcher import fetch_target, probe_body, probe_headers, probe_tls
from core.models import CertificateInfo


class _FakeResponse:
    def __init__(self, status_code=200, headers=None, body=b"", encoding="utf-8"):
        self.status_code = status_code
        self.headers = headers or {}
        self.encoding = encoding
        self._body = body

    def iter_content(self, chunk_size=1024):
        for i in range(0, len(self._body), chunk_size):
            yield self._body[i : i + chunk_size]

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class _TrickleResponse(_FakeResponse):
    """Never finishes: one byte per chunk, forever."""

    def iter_content(self, chunk_size=1024):
        while True:
            yield b"x"


class _FakeSession:
    """head()/get() return the scripted response or raise the scripted error."""

    def __init__(self, response=None, error=None):
        self.response = response or _FakeResponse()
        self.error = error
        self.headers = {}
        self.max_redirects = 30
        self.closed = False
        self.calls = []

    def _answer(self, method, url):
        self.calls.append((method, url))
        if self.error is not None:
            raise self.error
        return self.response

    def head(self, url, **kwargs):
        return self._answer("HEAD", url)

    def get(self, url, **kwargs):
        return self._answer("GET", url)

    def close(self):
        self.closed = True


class _StaticCerts:
    def __init__(self, info):
        self.info = info
        self.hosts = []

    def lookup(self, host, port, timeout):
        self.hosts.append((host, port))
        return self.info


class TestProbes:
    def test_tls_requires_https(self):
        session = _FakeSession()
        assert probe_tls(session, "http://example.com/", 1.0) is False
        assert session.calls == []

    def test_tls_ok_below_500(self):
        assert probe_tls(_FakeSession(_FakeResponse(status_code=404)), "https://example.com/", 1.0) is True

    def test_tls_server_error_is_invalid(self):
        assert probe_tls(_FakeSession(_FakeResponse(status_code=503)), "https://example.com/", 1.0) is False

    def test_tls_connection_error(self):
        session = _FakeSession(error=requests.exceptions.SSLError("bad cert"))
        assert probe_tls(session, "https://example.com/", 1.0) is False

    def test_headers_are_lowercased(self):
        resp = _FakeResponse(headers={"Strict-Transport-Security": "max-age=63072000", "Server": "nginx"})
        headers = probe_headers(_FakeSession(resp), "https://example.com/", 1.0)
        assert headers == {"strict-transport-security": "max-age=63072000", "server": "nginx"}

    def test_headers_unavailable_on_timeout(self):
        session = _FakeSession(error=requests.exceptions.Timeout("slow"))
        assert probe_headers(session, "https://example.com/", 1.0) is None

    def test_body_is_capped(self):
        resp = _FakeResponse(body=b"a" * 5000)
        headers, body = probe_body(_FakeSession(resp), "https://example.com/", 1.0, max_bytes=100)
        assert headers == {}
        assert len(body) == 100

    def test_trickled_body_stops_at_deadline(self):
        resp = _TrickleResponse()
        with patch("core.fetcher.time") as clock:
            clock.perf_counter.side_effect = itertools.count(0, 0.5)
            headers, body = probe_body(_FakeSession(resp), "https://example.com/", 2.0, max_bytes=10_000)
        assert headers == {}
        assert body == "x" * 4

    def test_body_failure(self):
        session = _FakeSession(error=requests.exceptions.ConnectionError("refused"))
        assert probe_body(session, "https://example.com/", 1.0, 100) == (None, None)


class TestFetchTarget:
    def test_healthy_target(self):
        resp = _FakeResponse(headers={"X-Frame-Options": "DENY"}, body=b"<html>wp-content</html>")
        session = _FakeSession(resp)
        certs = _StaticCerts(CertificateInfo(issuer="Let's Encrypt", expires_at="2027-01-01T00:00:00+00:00", days_left=90))

        with patch("core.fetcher._new_session", return_value=session):
            result = fetch_target("https://example.com/", get_settings(), cert_source=certs)

        assert result.ssl_valid is True
        assert result.headers == {"x-frame-options": "DENY"}
        assert "wp-content" in result.body
        assert result.ssl_issuer == "Let's Encrypt"
        assert result.ssl_days_left == 90
        assert certs.hosts == [("example.com", 443)]
        assert session.closed is True

    def test_unreachable_target_degrades(self):
        session = _FakeSession(error=requests.exceptions.ConnectionError("refused"))
        certs = _StaticCerts(CertificateInfo(days_left=10))

        with patch("core.fetcher._new_session", return_value=session):
            result = fetch_target("https://example.com/", get_settings(), cert_source=certs)

        assert result.ssl_valid is False
        assert result.headers is None
        assert result.body is None
        assert result.ssl_days_left is None
        assert certs.hosts == []

    def test_plain_http_skips_certificate_lookup(self):
        certs = _StaticCerts(CertificateInfo(days_left=10))
        with patch("core.fetcher._new_session", return_value=_FakeSession()):
            result = fetch_target("http://example.com/", get_settings(), cert_source=certs)
        assert result.ssl_valid is False
        assert result.headers == {}
        assert certs.hosts == []
