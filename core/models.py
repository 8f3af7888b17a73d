from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

# ---------------------------------------------------------------------------
# Ordinal enums
#
# Severities and risk levels are compared by rank, never by string value.
# ---------------------------------------------------------------------------


class Severity(str, Enum):
    info = "info"
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.info: 0,
    Severity.low: 1,
    Severity.medium: 2,
    Severity.high: 3,
    Severity.critical: 4,
}


def severity_at_least(severity: Severity, minimum: Severity) -> bool:
    """Total-order comparison used for min-severity gates."""
    return Severity(severity).rank >= Severity(minimum).rank


class RiskLevel(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"
    critical = "critical"

    @property
    def rank(self) -> int:
        return _RISK_RANK[self]


_RISK_RANK: dict[RiskLevel, int] = {
    RiskLevel.low: 0,
    RiskLevel.medium: 1,
    RiskLevel.high: 2,
    RiskLevel.critical: 3,
}


class ScanStatus(str, Enum):
    pending = "pending"
    running = "running"
    completed = "completed"
    failed = "failed"


class FactorCategory(str, Enum):
    tls = "tls"
    headers = "headers"
    fingerprint = "fingerprint"
    server = "server"


class DriftKind(str, Enum):
    ssl_changed = "ssl-changed"
    risk_level_changed = "risk-level-changed"
    header_added = "header-added"
    header_removed = "header-removed"
    tech_added = "tech-added"
    tech_removed = "tech-removed"
    score_delta = "score-delta"


class Direction(str, Enum):
    improvement = "improvement"
    regression = "regression"
    neutral = "neutral"


# ---------------------------------------------------------------------------
# Fetcher output
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CertificateInfo:
    issuer: Optional[str] = None
    expires_at: Optional[str] = None  # ISO 8601
    days_left: Optional[int] = None


@dataclass
class FetchResult:
    """Raw transport facts for one target.

    headers is None when the header probe failed ("headers unavailable").
    An empty dict means the probe succeeded and the server sent no headers.
    Header names are lower-cased.
    """

    url: str
    ssl_valid: bool = False
    ssl_days_left: Optional[int] = None
    ssl_issuer: Optional[str] = None
    ssl_expires_at: Optional[str] = None
    headers: Optional[dict[str, str]] = None
    body: Optional[str] = None
    fingerprint_headers: Optional[dict[str, str]] = None
    elapsed_ms: int = 0


@dataclass(frozen=True)
class Fingerprint:
    technologies: tuple[str, ...] = ()
    cms: Optional[str] = None
    server_info: Optional[str] = None


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskFactor:
    category: FactorCategory
    name: str
    points: int
    max_points: int
    severity: Severity
    description: str


@dataclass(frozen=True)
class RiskBreakdown:
    total_score: int
    level: RiskLevel
    level_description: str
    factors: tuple[RiskFactor, ...]
    summary: str
    max_possible_score: int = 100


@dataclass(frozen=True)
class FixRecommendation:
    key: str
    title: str
    severity: Severity
    description: str
    nginx: str = ""
    apache: str = ""
    reference: str = ""


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Assessment:
    """One scan of one target at one instant.

    present_headers / missing_headers are None when the header probe failed.
    When available they are disjoint and their union is the header checklist.

    id, target_id and user_id are None until the record is persisted.
    """

    target_url: str
    status: ScanStatus
    ssl_valid: bool = False
    ssl_days_left: Optional[int] = None
    ssl_issuer: Optional[str] = None
    ssl_expires_at: Optional[str] = None
    present_headers: Optional[frozenset[str]] = None
    missing_headers: Optional[frozenset[str]] = None
    detected_technologies: tuple[str, ...] = ()
    detected_cms: Optional[str] = None
    server_info: Optional[str] = None
    risk_score: int = 0
    risk_level: RiskLevel = RiskLevel.low
    headers_score: int = 0
    factors: tuple[RiskFactor, ...] = ()
    summary: str = ""
    recommended_fixes: tuple[FixRecommendation, ...] = ()
    scan_duration_ms: int = 0
    created_at: str = ""
    completed_at: Optional[str] = None
    error: Optional[str] = None
    alerts_evaluated: bool = False
    id: Optional[int] = None
    target_id: Optional[int] = None
    user_id: Optional[int] = None

    @property
    def headers_available(self) -> bool:
        return self.present_headers is not None and self.missing_headers is not None


# ---------------------------------------------------------------------------
# Drift
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DriftEvent:
    """Typed difference between two consecutive Assessments of one target.

    subject names the header or technology for item-level kinds and is empty
    for target-level kinds (ssl, risk level, score).
    """

    kind: DriftKind
    direction: Direction
    before: Optional[str]
    after: Optional[str]
    subject: str = ""
    description: str = ""
    delta: int = 0


@dataclass
class DriftReport:
    previous_id: Optional[int]
    current_id: Optional[int]
    events: list[DriftEvent] = field(default_factory=list)

    @property
    def regressions(self) -> list[DriftEvent]:
        return [e for e in self.events if e.direction == Direction.regression]

    @property
    def improvements(self) -> list[DriftEvent]:
        return [e for e in self.events if e.direction == Direction.improvement]
