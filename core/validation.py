"""
core/validation.py -- Target URL validation (SSRF filter).

Everything downstream of this module assumes a pre-vetted, absolute http(s)
URL that does not point at loopback, private, link-local, or internal names.
Rejections raise InvalidTargetError with a message that is safe to return to
the caller verbatim.
"""

import ipaddress
import re
from urllib.parse import urlsplit, urlunsplit

from core.errors import InvalidTargetError

MAX_URL_LENGTH = 2000

_ALLOWED_SCHEMES = {"http", "https"}

_BLOCKED_NAME_PATTERNS = [
    re.compile(r"^localhost$", re.IGNORECASE),
    re.compile(r"\.localhost$", re.IGNORECASE),
    re.compile(r"\.local$", re.IGNORECASE),
    re.compile(r"\.internal$", re.IGNORECASE),
]


def _is_blocked_ip(host: str) -> bool:
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return False
    return (
        ip.is_private
        or ip.is_loopback
        or ip.is_link_local
        or ip.is_reserved
        or ip.is_multicast
        or ip.is_unspecified
    )


def validate_url(raw: object) -> str:
    """Return a normalized absolute URL or raise InvalidTargetError.

    A bare hostname ("example.com") defaults to https. The hostname is
    lower-cased; path and query are kept, the fragment is dropped.
    """
    if not isinstance(raw, str):
        raise InvalidTargetError("URL must be a string")
    if len(raw) > MAX_URL_LENGTH:
        raise InvalidTargetError("URL exceeds maximum length")

    url = raw.strip()
    if not url:
        raise InvalidTargetError("URL is required")
    if "://" not in url:
        url = f"https://{url}"

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError:
        raise InvalidTargetError("Invalid URL format") from None

    if parts.scheme.lower() not in _ALLOWED_SCHEMES:
        raise InvalidTargetError("Only HTTP and HTTPS protocols are allowed")
    if parts.username or parts.password:
        raise InvalidTargetError("URLs with credentials are not allowed")

    host = (parts.hostname or "").lower()
    if not host:
        raise InvalidTargetError("Invalid URL format")
    if _is_blocked_ip(host) or any(p.search(host) for p in _BLOCKED_NAME_PATTERNS):
        raise InvalidTargetError("Internal or reserved addresses are not allowed")

    netloc = f"[{host}]" if ":" in host else host
    if port is not None:
        netloc = f"{netloc}:{port}"
    return urlunsplit((parts.scheme.lower(), netloc, parts.path or "/", parts.query, ""))


def domain_of(url: str) -> str:
    """Hostname of a URL for grouping and safe logging (no path or query)."""
    try:
        return urlsplit(url).hostname or "unknown"
    except ValueError:
        return "unknown"
