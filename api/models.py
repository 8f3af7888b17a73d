"""
API request and response models for PostureWatch REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in core/models.py and
monitor/models.py, which own the internal domain representation. Route
handlers map between the two with the from_* classmethods below.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from alerts.digest import DigestResult
from core.models import Assessment, DriftReport, RiskLevel, ScanStatus, Severity
from monitor.models import AlertPreference, AlertRecord, AlertType, Frequency, RiskTrendPoint, Schedule, Target
from monitor.scheduler import SchedulerRunResult

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ScanRequest(BaseModel):
    """Request body for POST /api/v1/scans and POST /api/v1/targets.

    Only the length is checked here; core.validation.validate_url() does the
    real vetting so the API and the CLI reject exactly the same inputs.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    url: str = Field(min_length=1, max_length=2000)


class ScheduleUpdate(BaseModel):
    frequency: Frequency = Frequency.daily
    is_active: bool = True


class PreferenceUpdate(BaseModel):
    enabled: bool = True
    min_severity: Severity = Severity.medium
    cooldown_hours: int = Field(default=24, ge=0, le=24 * 30)

    @field_validator("min_severity")
    @classmethod
    def threshold_severity(cls, v: Severity) -> Severity:
        """Thresholds are ranked low < medium < high < critical; info is not one."""
        if v == Severity.info:
            raise ValueError("min_severity must be one of: low, medium, high, critical")
        return v


# ---------------------------------------------------------------------------
# Assessment
# ---------------------------------------------------------------------------


class RiskFactorRow(BaseModel):
    category: str
    name: str
    points: int
    max_points: int
    severity: Severity
    description: str


class FixRow(BaseModel):
    key: str
    title: str
    severity: Severity
    description: str
    nginx: str = ""
    apache: str = ""
    reference: str = ""


class AssessmentResponse(BaseModel):
    """One assessment. present/missing headers are null when headers were unavailable."""

    id: Optional[int] = None
    target_id: Optional[int] = None
    target_url: str
    status: ScanStatus
    ssl_valid: bool
    ssl_days_left: Optional[int] = None
    ssl_issuer: Optional[str] = None
    ssl_expires_at: Optional[str] = None
    present_headers: Optional[list[str]] = None
    missing_headers: Optional[list[str]] = None
    detected_technologies: list[str]
    detected_cms: Optional[str] = None
    server_info: Optional[str] = None
    risk_score: int
    risk_level: RiskLevel
    headers_score: int
    factors: list[RiskFactorRow]
    summary: str
    recommended_fixes: list[FixRow]
    scan_duration_ms: int
    created_at: str = ""
    completed_at: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_assessment(cls, a: Assessment) -> "AssessmentResponse":
        return cls(
            id=a.id,
            target_id=a.target_id,
            target_url=a.target_url,
            status=a.status,
            ssl_valid=a.ssl_valid,
            ssl_days_left=a.ssl_days_left,
            ssl_issuer=a.ssl_issuer,
            ssl_expires_at=a.ssl_expires_at,
            present_headers=sorted(a.present_headers) if a.present_headers is not None else None,
            missing_headers=sorted(a.missing_headers) if a.missing_headers is not None else None,
            detected_technologies=list(a.detected_technologies),
            detected_cms=a.detected_cms,
            server_info=a.server_info,
            risk_score=a.risk_score,
            risk_level=a.risk_level,
            headers_score=a.headers_score,
            factors=[
                RiskFactorRow(
                    category=f.category.value,
                    name=f.name,
                    points=f.points,
                    max_points=f.max_points,
                    severity=f.severity,
                    description=f.description,
                )
                for f in a.factors
            ],
            summary=a.summary,
            recommended_fixes=[
                FixRow(
                    key=f.key,
                    title=f.title,
                    severity=f.severity,
                    description=f.description,
                    nginx=f.nginx,
                    apache=f.apache,
                    reference=f.reference,
                )
                for f in a.recommended_fixes
            ],
            scan_duration_ms=a.scan_duration_ms,
            created_at=a.created_at,
            completed_at=a.completed_at,
            error=a.error,
        )


class AlertDecisionRow(BaseModel):
    alert_type: AlertType
    severity: Severity
    title: str
    emitted: bool
    reason: str
    alert_id: Optional[int] = None


class ScanResponse(BaseModel):
    """Response for POST /api/v1/scans."""

    assessment: AssessmentResponse
    drift: list["DriftEventRow"] = Field(default_factory=list)
    alerts: list[AlertDecisionRow] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Drift and trend
# ---------------------------------------------------------------------------


class DriftEventRow(BaseModel):
    kind: str
    direction: str
    subject: str = ""
    before: Optional[str] = None
    after: Optional[str] = None
    description: str = ""


class DriftResponse(BaseModel):
    previous_id: Optional[int] = None
    current_id: Optional[int] = None
    events: list[DriftEventRow]

    @classmethod
    def from_report(cls, report: DriftReport) -> "DriftResponse":
        return cls(
            previous_id=report.previous_id,
            current_id=report.current_id,
            events=[
                DriftEventRow(
                    kind=e.kind.value,
                    direction=e.direction.value,
                    subject=e.subject,
                    before=e.before,
                    after=e.after,
                    description=e.description,
                )
                for e in report.events
            ],
        )


class TrendPointRow(BaseModel):
    assessment_id: int
    risk_score: int
    risk_level: str
    ssl_valid: bool
    missing_headers_count: int
    present_headers_count: int
    recorded_at: str

    @classmethod
    def from_point(cls, p: RiskTrendPoint) -> "TrendPointRow":
        return cls(
            assessment_id=p.assessment_id,
            risk_score=p.risk_score,
            risk_level=p.risk_level,
            ssl_valid=p.ssl_valid,
            missing_headers_count=p.missing_headers_count,
            present_headers_count=p.present_headers_count,
            recorded_at=p.recorded_at,
        )


# ---------------------------------------------------------------------------
# Targets and schedules
# ---------------------------------------------------------------------------


class ScheduleResponse(BaseModel):
    frequency: Frequency
    next_due_at: str
    is_active: bool
    last_assessment_id: Optional[int] = None
    last_run_at: Optional[str] = None
    last_error: Optional[str] = None

    @classmethod
    def from_schedule(cls, s: Schedule) -> "ScheduleResponse":
        return cls(
            frequency=s.frequency,
            next_due_at=s.next_due_at,
            is_active=s.is_active,
            last_assessment_id=s.last_assessment_id,
            last_run_at=s.last_run_at,
            last_error=s.last_error,
        )


class TargetResponse(BaseModel):
    id: int
    url: str
    domain: str
    created_at: str
    schedule: Optional[ScheduleResponse] = None
    latest_score: Optional[int] = None
    latest_level: Optional[RiskLevel] = None

    @classmethod
    def from_target(
        cls, t: Target, schedule: Optional[Schedule] = None, latest: Optional[Assessment] = None
    ) -> "TargetResponse":
        return cls(
            id=t.id,
            url=t.url,
            domain=t.domain,
            created_at=t.created_at,
            schedule=ScheduleResponse.from_schedule(schedule) if schedule is not None else None,
            latest_score=latest.risk_score if latest is not None else None,
            latest_level=latest.risk_level if latest is not None else None,
        )


# ---------------------------------------------------------------------------
# Alerts and preferences
# ---------------------------------------------------------------------------


class AlertResponse(BaseModel):
    id: int
    target_id: int
    assessment_id: Optional[int] = None
    alert_type: AlertType
    severity: Severity
    title: str
    description: str
    subject: str = ""
    previous_value: Optional[str] = None
    current_value: Optional[str] = None
    target_url: str
    is_read: bool
    is_dismissed: bool
    sent: bool
    created_at: str

    @classmethod
    def from_record(cls, a: AlertRecord) -> "AlertResponse":
        return cls(
            id=a.id,
            target_id=a.target_id,
            assessment_id=a.assessment_id,
            alert_type=a.alert_type,
            severity=a.severity,
            title=a.title,
            description=a.description,
            subject=a.subject,
            previous_value=a.previous_value,
            current_value=a.current_value,
            target_url=a.target_url,
            is_read=a.is_read,
            is_dismissed=a.is_dismissed,
            sent=a.sent,
            created_at=a.created_at,
        )


class PreferenceResponse(BaseModel):
    alert_type: AlertType
    enabled: bool
    min_severity: Severity
    cooldown_hours: int
    is_default: bool

    @classmethod
    def from_preference(cls, p: AlertPreference) -> "PreferenceResponse":
        return cls(
            alert_type=p.alert_type,
            enabled=p.enabled,
            min_severity=p.min_severity,
            cooldown_hours=p.cooldown_hours,
            is_default=p.is_default,
        )


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class SchedulerRunResponse(BaseModel):
    due: int
    succeeded: int
    skipped: int
    failures: list[dict]

    @classmethod
    def from_result(cls, r: SchedulerRunResult) -> "SchedulerRunResponse":
        return cls(due=r.due, succeeded=r.succeeded, skipped=r.skipped, failures=r.failures)


class DigestRunResponse(BaseModel):
    emails_dispatched: int
    alerts_sent: int
    users_skipped: int
    delivery_failures: int

    @classmethod
    def from_result(cls, r: DigestResult) -> "DigestRunResponse":
        return cls(
            emails_dispatched=r.emails_dispatched,
            alerts_sent=r.alerts_sent,
            users_skipped=r.users_skipped,
            delivery_failures=r.delivery_failures,
        )


# ---------------------------------------------------------------------------
# Error and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str] = Field(default_factory=dict)


ScanResponse.model_rebuild()
