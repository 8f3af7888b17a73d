"""
monitor/models.py -- Domain dataclasses for monitored targets and alerting.

These are plain data containers. Persistence lives in monitor/store.py,
alert policy in alerts/engine.py. The scan engine's own types (Assessment,
RiskFactor, DriftEvent) live in core/models.py; this layer imports them, never
the other way around.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from core.models import Severity


class Frequency(str, Enum):
    hourly = "hourly"
    daily = "daily"
    weekly = "weekly"

    @property
    def interval(self) -> timedelta:
        return _INTERVALS[self]


_INTERVALS = {
    Frequency.hourly: timedelta(hours=1),
    Frequency.daily: timedelta(days=1),
    Frequency.weekly: timedelta(weeks=1),
}


class AlertType(str, Enum):
    ssl_invalid = "ssl_invalid"
    ssl_restored = "ssl_restored"
    ssl_expiring = "ssl_expiring"
    risk_increased = "risk_increased"
    risk_decreased = "risk_decreased"
    config_drift = "config_drift"
    headers_improved = "headers_improved"
    new_technology = "new_technology"
    technology_removed = "technology_removed"


IMPROVEMENT_TYPES = frozenset({AlertType.ssl_restored, AlertType.risk_decreased, AlertType.headers_improved})
INFORMATIONAL_TYPES = frozenset({AlertType.new_technology, AlertType.technology_removed})


def is_improvement(alert_type: str) -> bool:
    return AlertType(alert_type) in IMPROVEMENT_TYPES


def is_informational(alert_type: str) -> bool:
    return AlertType(alert_type) in INFORMATIONAL_TYPES


@dataclass
class UserProfile:
    """Recipient of digests. email_notifications is the global channel switch."""

    email: str
    full_name: Optional[str] = None
    email_notifications: bool = True
    created_at: str = ""
    id: Optional[int] = None


@dataclass
class Target:
    """A monitored (user, URL) pair. domain is the URL hostname."""

    user_id: int
    url: str
    domain: str = ""
    created_at: str = ""
    id: Optional[int] = None


@dataclass
class Schedule:
    target_id: int
    frequency: Frequency = Frequency.daily
    next_due_at: str = ""
    is_active: bool = True
    last_assessment_id: Optional[int] = None
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None
    id: Optional[int] = None


@dataclass
class AlertRecord:
    """A drift event that passed policy.

    Mutated only through read / dismiss / sent transitions; never deleted.
    subject carries the header or technology name for item-level alerts.
    """

    user_id: int
    target_id: int
    alert_type: AlertType
    severity: Severity
    title: str
    description: str = ""
    previous_value: Optional[str] = None
    current_value: Optional[str] = None
    subject: str = ""
    target_url: str = ""
    assessment_id: Optional[int] = None
    is_read: bool = False
    is_dismissed: bool = False
    sent: bool = False
    sent_at: Optional[str] = None
    created_at: str = ""
    id: Optional[int] = None


DEFAULT_ENABLED = True
DEFAULT_MIN_SEVERITY = Severity.medium
DEFAULT_COOLDOWN_HOURS = 24


@dataclass
class AlertPreference:
    """Per (user, alert type) policy. Absent rows mean these defaults."""

    user_id: int
    alert_type: AlertType
    enabled: bool = DEFAULT_ENABLED
    min_severity: Severity = DEFAULT_MIN_SEVERITY
    cooldown_hours: int = DEFAULT_COOLDOWN_HOURS
    is_default: bool = True


@dataclass
class RiskTrendPoint:
    target_id: int
    assessment_id: int
    risk_score: int
    risk_level: str
    ssl_valid: bool
    missing_headers_count: int
    present_headers_count: int
    recorded_at: str
    id: Optional[int] = None
