"""
fetcher.py -- Passive, timeout-guarded HTTP probes against one target.

Three independent reads run concurrently against the same URL:
  probe_tls      HEAD  -> did an HTTPS connection complete with a sane status?
  probe_headers  GET   -> response headers for the security-header checklist
  probe_body     GET   -> headers + capped body prefix for fingerprinting

Every probe has its own timeout and never raises: a failure is logged and
contributes a degraded result (False / None). There are no automatic
retries; retry policy belongs to the scheduler.

Certificate issuer/expiry come from a CertificateSource. The default source
reads the peer certificate summary that the stdlib TLS handshake already
exposes; no chain parsing happens here.
"""

import logging
import socket
import ssl
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Optional, Protocol
from urllib.parse import urlsplit

import requests

from core.config import Settings, get_settings
from core.models import CertificateInfo, FetchResult
from core.validation import domain_of

logger = logging.getLogger("posturewatch.fetcher")

_CHUNK_SIZE = 16 * 1024


class CertificateSource(Protocol):
    def lookup(self, host: str, port: int, timeout: float) -> Optional[CertificateInfo]: ...


class NullCertificateSource:
    """Certificate enrichment disabled: issuer and expiry stay unknown."""

    def lookup(self, host: str, port: int, timeout: float) -> Optional[CertificateInfo]:
        return None


class TlsSocketCertificateSource:
    """Read issuer and notAfter from a verified TLS handshake."""

    def lookup(self, host: str, port: int, timeout: float) -> Optional[CertificateInfo]:
        context = ssl.create_default_context()
        try:
            with socket.create_connection((host, port), timeout=timeout) as sock:
                with context.wrap_socket(sock, server_hostname=host) as tls:
                    cert = tls.getpeercert()
        except (OSError, ssl.SSLError, ValueError) as e:
            logger.warning("Certificate lookup failed for %s: %s", host, e)
            return None
        if not cert:
            return None

        expires_at: Optional[str] = None
        days_left: Optional[int] = None
        not_after = cert.get("notAfter")
        if not_after:
            expires = datetime.fromtimestamp(ssl.cert_time_to_seconds(not_after), tz=timezone.utc)
            expires_at = expires.isoformat()
            days_left = int((expires - datetime.now(timezone.utc)).total_seconds() // 86400)

        fields = {k: v for rdn in cert.get("issuer", ()) for k, v in rdn}
        issuer = fields.get("organizationName") or fields.get("commonName")
        return CertificateInfo(issuer=issuer, expires_at=expires_at, days_left=days_left)


def _new_session(settings: Settings) -> requests.Session:
    session = requests.Session()
    session.max_redirects = settings.max_redirects
    session.headers["User-Agent"] = settings.user_agent
    return session


def _lower_headers(resp: requests.Response) -> dict[str, str]:
    return {k.lower(): v for k, v in resp.headers.items()}


def _read_capped(resp: requests.Response, url: str, max_bytes: int, timeout: float) -> str:
    """Read at most max_bytes of the body within timeout seconds, and decode it leniently.

    The requests timeout only bounds each socket read, so a server trickling
    bytes could hold the probe open indefinitely. Past the deadline the bytes
    read so far are returned.
    """
    deadline = time.perf_counter() + timeout
    buf = bytearray()
    for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
        if chunk:
            buf.extend(chunk)
        if len(buf) >= max_bytes:
            break
        if time.perf_counter() >= deadline:
            logger.warning("Body read for %s stopped at the %.0fs deadline", domain_of(url), timeout)
            break
    encoding = resp.encoding or "utf-8"
    try:
        return bytes(buf[:max_bytes]).decode(encoding, errors="replace")
    except LookupError:
        return bytes(buf[:max_bytes]).decode("utf-8", errors="replace")


def probe_tls(session: requests.Session, url: str, timeout: float) -> bool:
    """True iff the scheme is https and the connection completed with status < 500."""
    if urlsplit(url).scheme != "https":
        return False
    try:
        resp = session.head(url, timeout=timeout, allow_redirects=True)
        resp.close()
        return resp.status_code < 500
    except requests.RequestException as e:
        logger.warning("TLS probe failed for %s: %s", domain_of(url), e)
        return False


def probe_headers(session: requests.Session, url: str, timeout: float) -> Optional[dict[str, str]]:
    """Response headers (lower-cased names), or None when unavailable."""
    try:
        with session.get(url, timeout=timeout, stream=True, allow_redirects=True) as resp:
            return _lower_headers(resp)
    except requests.RequestException as e:
        logger.warning("Header probe failed for %s: %s", domain_of(url), e)
        return None


def probe_body(
    session: requests.Session, url: str, timeout: float, max_bytes: int
) -> tuple[Optional[dict[str, str]], Optional[str]]:
    """(headers, body prefix) for fingerprinting, or (None, None) on failure."""
    try:
        with session.get(url, timeout=timeout, stream=True, allow_redirects=True) as resp:
            return _lower_headers(resp), _read_capped(resp, url, max_bytes, timeout)
    except requests.RequestException as e:
        logger.warning("Fingerprint probe failed for %s: %s", domain_of(url), e)
        return None, None


def fetch_target(
    url: str,
    settings: Optional[Settings] = None,
    cert_source: Optional[CertificateSource] = None,
) -> FetchResult:
    """Run all probes for a pre-validated URL and return raw transport facts.

    Never raises for network problems. The three HTTP probes share one
    session (and its connection pool) and run concurrently.
    """
    settings = settings or get_settings()
    if cert_source is None:
        cert_source = TlsSocketCertificateSource() if settings.cert_lookup_enabled else NullCertificateSource()

    start = time.perf_counter()
    session = _new_session(settings)
    try:
        with ThreadPoolExecutor(max_workers=3, thread_name_prefix="probe") as pool:
            tls_future = pool.submit(probe_tls, session, url, settings.tls_timeout_seconds)
            headers_future = pool.submit(probe_headers, session, url, settings.probe_timeout_seconds)
            body_future = pool.submit(
                probe_body, session, url, settings.probe_timeout_seconds, settings.max_body_bytes
            )
            ssl_valid = tls_future.result()
            headers = headers_future.result()
            fp_headers, body = body_future.result()
    finally:
        session.close()

    result = FetchResult(
        url=url,
        ssl_valid=ssl_valid,
        headers=headers,
        body=body,
        fingerprint_headers=fp_headers,
    )

    if ssl_valid:
        parts = urlsplit(url)
        info = cert_source.lookup(parts.hostname or "", parts.port or 443, settings.tls_timeout_seconds)
        if info is not None:
            result.ssl_issuer = info.issuer
            result.ssl_expires_at = info.expires_at
            result.ssl_days_left = info.days_left

    result.elapsed_ms = int((time.perf_counter() - start) * 1000)
    return result
