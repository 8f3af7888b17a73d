"""
core/remediation.py -- Configuration-level fix guidance for scan findings.

Recommendations are static server-config snippets keyed by finding. They are
attached to each Assessment so reports can show "how to fix" next to "what
is wrong" without a second lookup.
"""

from typing import Iterable, Optional

from core.models import FixRecommendation, Severity

_MDN = "https://developer.mozilla.org/en-US/docs/Web/HTTP/Headers/"

FIX_SNIPPETS: dict[str, FixRecommendation] = {
    "strict-transport-security": FixRecommendation(
        key="strict-transport-security",
        title="Enable HTTP Strict Transport Security (HSTS)",
        severity=Severity.critical,
        description="HSTS forces browsers to always use HTTPS, preventing SSL stripping and downgrade attacks.",
        nginx='add_header Strict-Transport-Security "max-age=31536000; includeSubDomains; preload" always;',
        apache='Header always set Strict-Transport-Security "max-age=31536000; includeSubDomains; preload"',
        reference=_MDN + "Strict-Transport-Security",
    ),
    "content-security-policy": FixRecommendation(
        key="content-security-policy",
        title="Add a Content Security Policy (CSP)",
        severity=Severity.high,
        description="CSP controls which resources the browser may load and is the primary defense against XSS.",
        nginx="add_header Content-Security-Policy \"default-src 'self'; frame-ancestors 'none'; base-uri 'self';\" always;",
        apache="Header set Content-Security-Policy \"default-src 'self'; frame-ancestors 'none'; base-uri 'self';\"",
        reference="https://developer.mozilla.org/en-US/docs/Web/HTTP/CSP",
    ),
    "x-frame-options": FixRecommendation(
        key="x-frame-options",
        title="Prevent clickjacking with X-Frame-Options",
        severity=Severity.high,
        description="Stops the site from being embedded in hostile iframes.",
        nginx='add_header X-Frame-Options "SAMEORIGIN" always;',
        apache='Header set X-Frame-Options "SAMEORIGIN"',
        reference=_MDN + "X-Frame-Options",
    ),
    "x-content-type-options": FixRecommendation(
        key="x-content-type-options",
        title="Disable MIME type sniffing",
        severity=Severity.medium,
        description="Prevents browsers from executing content disguised under a different content type.",
        nginx='add_header X-Content-Type-Options "nosniff" always;',
        apache='Header set X-Content-Type-Options "nosniff"',
        reference=_MDN + "X-Content-Type-Options",
    ),
    "x-xss-protection": FixRecommendation(
        key="x-xss-protection",
        title="Enable the legacy XSS filter",
        severity=Severity.low,
        description="Deprecated in modern browsers but still adds a layer for older clients.",
        nginx='add_header X-XSS-Protection "1; mode=block" always;',
        apache='Header set X-XSS-Protection "1; mode=block"',
        reference=_MDN + "X-XSS-Protection",
    ),
    "referrer-policy": FixRecommendation(
        key="referrer-policy",
        title="Set a Referrer-Policy",
        severity=Severity.medium,
        description="Limits how much of the URL leaks to third-party sites through the Referer header.",
        nginx='add_header Referrer-Policy "strict-origin-when-cross-origin" always;',
        apache='Header set Referrer-Policy "strict-origin-when-cross-origin"',
        reference=_MDN + "Referrer-Policy",
    ),
    "permissions-policy": FixRecommendation(
        key="permissions-policy",
        title="Restrict browser features with Permissions-Policy",
        severity=Severity.medium,
        description="Declares which powerful browser features (camera, microphone, geolocation) the site may use.",
        nginx='add_header Permissions-Policy "camera=(), microphone=(), geolocation=()" always;',
        apache='Header set Permissions-Policy "camera=(), microphone=(), geolocation=()"',
        reference=_MDN + "Permissions-Policy",
    ),
    "ssl-invalid": FixRecommendation(
        key="ssl-invalid",
        title="Serve the site over valid HTTPS",
        severity=Severity.critical,
        description="Install a certificate from a trusted CA (for example Let's Encrypt) and redirect HTTP to HTTPS.",
        nginx="return 301 https://$host$request_uri;",
        apache="Redirect permanent / https://example.com/",
        reference="https://letsencrypt.org/getting-started/",
    ),
    "ssl-expiring": FixRecommendation(
        key="ssl-expiring",
        title="Renew the TLS certificate",
        severity=Severity.high,
        description="The certificate expires soon. Automate renewal so it never lapses.",
        nginx="# certbot renew --quiet  (run from cron or a systemd timer)",
        reference="https://certbot.eff.org/",
    ),
    "cms": FixRecommendation(
        key="cms",
        title="Harden the CMS installation",
        severity=Severity.medium,
        description="Keep core, themes and plugins updated, remove unused plugins, and restrict admin paths.",
    ),
    "server-banner": FixRecommendation(
        key="server-banner",
        title="Hide server version banners",
        severity=Severity.low,
        description="Remove version details from Server and X-Powered-By headers.",
        nginx="server_tokens off;",
        apache="ServerTokens Prod\nServerSignature Off",
    ),
}


def build_fixes(
    missing_headers: Iterable[str],
    ssl_valid: bool,
    ssl_days_left: Optional[int],
    detected_cms: Optional[str],
    server_info: Optional[str],
) -> tuple[FixRecommendation, ...]:
    """Return fix recommendations for the findings, most severe first."""
    fixes: list[FixRecommendation] = []
    if not ssl_valid:
        fixes.append(FIX_SNIPPETS["ssl-invalid"])
    elif ssl_days_left is not None and ssl_days_left < 30:
        fixes.append(FIX_SNIPPETS["ssl-expiring"])
    for header in missing_headers:
        fix = FIX_SNIPPETS.get(header.lower())
        if fix is not None:
            fixes.append(fix)
    if detected_cms:
        fixes.append(FIX_SNIPPETS["cms"])
    if server_info:
        fixes.append(FIX_SNIPPETS["server-banner"])
    return tuple(sorted(fixes, key=lambda f: f.severity.rank, reverse=True))
