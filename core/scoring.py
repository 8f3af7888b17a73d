"""
core/scoring.py -- Explainable 0-100 risk scoring.

calculate_risk_breakdown() is a pure function of the scan facts and an
immutable ScoringTable. It never touches the network or the database.

Scale (lower is better):
  low      0-25   strong posture, minor improvements possible
  medium   26-50  acceptable, some exposures
  high     51-75  significant gaps
  critical 76-100 severe, urgent remediation

The "bad" weights intentionally sum to more than 100 so near-worst-case sites
saturate at the cap. The returned factor list is exhaustive (passing checks
appear as zero-point info entries) and sorted by points descending; callers
rely on the worst offender being first.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, Mapping, Optional

from core.models import FactorCategory, RiskBreakdown, RiskFactor, RiskLevel, Severity

# Checked on every target, in display order.
SECURITY_HEADERS: tuple[str, ...] = (
    "strict-transport-security",
    "content-security-policy",
    "x-content-type-options",
    "x-frame-options",
    "x-xss-protection",
    "referrer-policy",
    "permissions-policy",
)

_HEADER_WEIGHTS = {
    "strict-transport-security": 10,
    "content-security-policy": 10,
    "x-frame-options": 8,
    "x-content-type-options": 6,
    "referrer-policy": 6,
    "permissions-policy": 6,
    "x-xss-protection": 4,
}

_HEADER_DESCRIPTIONS = {
    "strict-transport-security": "Forces HTTPS connections, preventing man-in-the-middle attacks",
    "content-security-policy": "Prevents XSS attacks by controlling resource loading",
    "x-frame-options": "Prevents clickjacking by blocking iframe embedding",
    "x-content-type-options": "Prevents MIME-sniffing attacks",
    "referrer-policy": "Controls information leaked to external sites",
    "permissions-policy": "Restricts browser feature access (camera, mic, etc.)",
    "x-xss-protection": "Legacy XSS filter for older browsers",
}

# Upper bound of each level, inclusive. Anything above the last is critical.
RISK_THRESHOLDS: tuple[tuple[RiskLevel, int], ...] = (
    (RiskLevel.low, 25),
    (RiskLevel.medium, 50),
    (RiskLevel.high, 75),
    (RiskLevel.critical, 100),
)

RISK_LEVEL_DESCRIPTIONS: dict[RiskLevel, tuple[str, str]] = {
    RiskLevel.low: (
        "Low Risk",
        "Strong security posture with most best practices implemented.",
    ),
    RiskLevel.medium: (
        "Medium Risk",
        "Acceptable security with room for improvement. Some security headers or configurations may be missing.",
    ),
    RiskLevel.high: (
        "High Risk",
        "Significant security gaps that could be exploited. Multiple security controls are missing or misconfigured.",
    ),
    RiskLevel.critical: (
        "Critical Risk",
        "Severe weaknesses that require urgent attention. Users and data may be at immediate risk.",
    ),
}


@dataclass(frozen=True)
class ScoringTable:
    ssl_invalid: int = 40
    ssl_expiring_critical: int = 35  # < 7 days
    ssl_expiring_warning: int = 25  # < 30 days
    ssl_expiring_notice: int = 10  # < 60 days
    cms_detected: int = 10
    server_exposed: int = 5
    default_header_weight: int = 6
    header_weights: Mapping[str, int] = field(default_factory=lambda: MappingProxyType(dict(_HEADER_WEIGHTS)))
    header_descriptions: Mapping[str, str] = field(
        default_factory=lambda: MappingProxyType(dict(_HEADER_DESCRIPTIONS))
    )
    targeted_cms: frozenset[str] = frozenset({"WordPress", "Drupal", "Joomla"})
    checklist: tuple[str, ...] = SECURITY_HEADERS

    def header_weight(self, header: str) -> int:
        return self.header_weights.get(header.lower(), self.default_header_weight)


DEFAULT_SCORING = ScoringTable()


def level_for_score(score: int) -> RiskLevel:
    """Threshold lookup. Scores are clamped to [0, 100] first."""
    score = max(0, min(100, score))
    for level, upper in RISK_THRESHOLDS:
        if score <= upper:
            return level
    return RiskLevel.critical


def headers_score(present: Iterable[str], checklist: tuple[str, ...] = SECURITY_HEADERS) -> int:
    """Percentage of checklist headers present, rounded to an int."""
    if not checklist:
        return 0
    present_set = {h.lower() for h in present}
    hits = sum(1 for h in checklist if h in present_set)
    return round(hits / len(checklist) * 100)


def _header_severity(weight: int) -> Severity:
    if weight >= 10:
        return Severity.high
    if weight <= 4:
        return Severity.low
    return Severity.medium


def _tls_factor(ssl_valid: bool, days_left: Optional[int], table: ScoringTable) -> RiskFactor:
    cap = table.ssl_invalid
    if not ssl_valid:
        return RiskFactor(
            FactorCategory.tls,
            "SSL Certificate Invalid or Missing",
            table.ssl_invalid,
            cap,
            Severity.critical,
            "The site is not served over HTTPS or the TLS connection failed. Traffic is exposed to interception.",
        )
    if days_left is None:
        return RiskFactor(
            FactorCategory.tls,
            "SSL Certificate Valid",
            0,
            cap,
            Severity.info,
            "HTTPS connection succeeded. Certificate expiry could not be determined.",
        )
    if days_left < 7:
        return RiskFactor(
            FactorCategory.tls,
            "SSL Certificate Expiring Imminently",
            table.ssl_expiring_critical,
            cap,
            Severity.critical,
            f"Certificate expires in {days_left} days. Browsers will show security warnings after expiry.",
        )
    if days_left < 30:
        return RiskFactor(
            FactorCategory.tls,
            "SSL Certificate Expiring Soon",
            table.ssl_expiring_warning,
            cap,
            Severity.high,
            f"Certificate expires in {days_left} days. Schedule renewal to avoid service disruption.",
        )
    if days_left < 60:
        return RiskFactor(
            FactorCategory.tls,
            "SSL Certificate Renewal Recommended",
            table.ssl_expiring_notice,
            cap,
            Severity.medium,
            f"Certificate expires in {days_left} days. Consider setting up auto-renewal.",
        )
    return RiskFactor(
        FactorCategory.tls,
        "SSL Certificate Valid",
        0,
        cap,
        Severity.info,
        f"Certificate is valid with {days_left} days remaining.",
    )


def _summary(score: int, level: RiskLevel, factors: list[RiskFactor]) -> str:
    def count(sev: Severity) -> int:
        return sum(1 for f in factors if f.severity == sev and f.points > 0)

    title = RISK_LEVEL_DESCRIPTIONS[level][0]
    summary = f"Risk Score: {score}/100 ({title})."
    critical, high, medium = count(Severity.critical), count(Severity.high), count(Severity.medium)
    if critical:
        summary += f" {critical} critical issue{'s' if critical > 1 else ''} found."
    if high:
        summary += f" {high} high-priority fix{'es' if high > 1 else ''} recommended."
    if medium:
        summary += f" {medium} medium issue{'s' if medium > 1 else ''} to address."
    return summary


def calculate_risk_breakdown(
    ssl_valid: bool,
    ssl_days_left: Optional[int],
    missing_headers: Iterable[str],
    present_headers: Iterable[str],
    detected_cms: Optional[str],
    server_info: Optional[str],
    table: ScoringTable = DEFAULT_SCORING,
) -> RiskBreakdown:
    """Score one assessment and explain every contributing factor.

    missing_headers / present_headers must already exclude the "headers
    unavailable" case: pass empty iterables when the header probe failed so
    unavailability never counts as a missing-header finding.
    """
    factors: list[RiskFactor] = [_tls_factor(ssl_valid, ssl_days_left, table)]

    for header in missing_headers:
        name = header.lower()
        weight = table.header_weight(name)
        factors.append(
            RiskFactor(
                FactorCategory.headers,
                f"Missing: {name}",
                weight,
                weight,
                _header_severity(weight),
                table.header_descriptions.get(name, f'Security header "{name}" is not configured'),
            )
        )

    for header in present_headers:
        name = header.lower()
        weight = table.header_weight(name)
        description = table.header_descriptions.get(name, f'Security header "{name}" is configured')
        factors.append(
            RiskFactor(FactorCategory.headers, f"Present: {name}", 0, weight, Severity.info, description)
        )

    if detected_cms and detected_cms in table.targeted_cms:
        factors.append(
            RiskFactor(
                FactorCategory.fingerprint,
                f"CMS Detected: {detected_cms}",
                table.cms_detected,
                table.cms_detected,
                Severity.medium,
                f"{detected_cms} is a common target for automated attacks. Keep core and plugins up to date.",
            )
        )
    else:
        factors.append(
            RiskFactor(
                FactorCategory.fingerprint,
                "No Commonly Targeted CMS Detected",
                0,
                table.cms_detected,
                Severity.info,
                f"Detected platform: {detected_cms}." if detected_cms else "No CMS platform fingerprint found.",
            )
        )

    banner = (server_info or "").strip()
    if banner:
        factors.append(
            RiskFactor(
                FactorCategory.server,
                "Server Version Exposed",
                table.server_exposed,
                table.server_exposed,
                Severity.low,
                f'Server reveals "{banner}". This helps attackers identify known vulnerabilities.',
            )
        )
    else:
        factors.append(
            RiskFactor(
                FactorCategory.server,
                "Server Banner Hidden",
                0,
                table.server_exposed,
                Severity.info,
                "No Server or X-Powered-By banner is exposed.",
            )
        )

    total = max(0, min(100, sum(f.points for f in factors)))
    level = level_for_score(total)

    # sorted() is stable: equal-point factors keep their insertion order.
    ordered = sorted(factors, key=lambda f: f.points, reverse=True)
    return RiskBreakdown(
        total_score=total,
        level=level,
        level_description=RISK_LEVEL_DESCRIPTIONS[level][1],
        factors=tuple(ordered),
        summary=_summary(total, level, factors),
    )


def split_headers(
    headers: Optional[Mapping[str, str]],
    checklist: tuple[str, ...] = SECURITY_HEADERS,
) -> tuple[Optional[frozenset[str]], Optional[frozenset[str]]]:
    """Return (present, missing) for the checklist, or (None, None) if unavailable."""
    if headers is None:
        return None, None
    lowered = {k.lower(): v for k, v in headers.items()}
    present = frozenset(h for h in checklist if (lowered.get(h) or "").strip())
    missing = frozenset(checklist) - present
    return present, missing
