"""
monitor/store.py -- SQLAlchemy-backed persistence layer for PostureWatch.

Uses SQLAlchemy Core (not ORM) so the dataclasses in core/models.py and
monitor/models.py remain the authoritative domain representation. Swapping
SQLite for PostgreSQL is a connection string change.

Pattern: Repository + Data Mapper. MonitorStore is the repository; the
_row_to_* functions translate rows into domain dataclasses. Route handlers,
the scheduler and the alert engine never touch SQL directly.

Security: all queries use bound parameters. No f-strings in SQL.

Timestamps are ISO 8601 UTC strings with fixed microsecond precision
(core/clock.py), so ordering and range predicates compare as strings.

Usage:
    store = MonitorStore()                                # SQLite default
    store = MonitorStore("postgresql://user:pw@host/db")  # PostgreSQL
    target = store.get_or_create_target(user_id, "https://example.com/")
    assessment_id = store.create_assessment(target)
    store.complete_assessment(assessment_id, assessment)
    store.close()
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    and_,
    create_engine,
    event,
    or_,
    select,
    text,
)
from sqlalchemy.engine import Engine

from core.clock import to_iso, utc_now
from core.models import (
    Assessment,
    FactorCategory,
    FixRecommendation,
    RiskFactor,
    RiskLevel,
    ScanStatus,
    Severity,
)
from core.validation import domain_of
from monitor.models import (
    AlertPreference,
    AlertRecord,
    AlertType,
    Frequency,
    RiskTrendPoint,
    Schedule,
    Target,
    UserProfile,
)

logger = logging.getLogger("posturewatch.store")

_DEFAULT_DB_URL = "sqlite:///posturewatch.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), nullable=False, unique=True),
    Column("full_name", String(255)),
    Column("email_notifications", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
)

_targets = Table(
    "targets",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("url", String(2048), nullable=False),
    Column("domain", String(255), nullable=False),
    Column("created_at", String(32), nullable=False),
    # Per-target scan lease. NULL owner means free.
    Column("lease_owner", String(64)),
    Column("lease_expires_at", String(32)),
    UniqueConstraint("user_id", "url", name="uq_user_url"),
)

_schedules = Table(
    "schedules",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("target_id", Integer, nullable=False, unique=True),
    Column("frequency", String(10), nullable=False, server_default="daily"),
    Column("next_due_at", String(32), nullable=False),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("last_assessment_id", Integer),
    Column("last_run_at", String(32)),
    Column("last_error", Text),
)

_assessments = Table(
    "assessments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("target_id", Integer, nullable=False),
    Column("user_id", Integer, nullable=False),
    Column("target_url", String(2048), nullable=False),
    Column("status", String(20), nullable=False, server_default="pending"),
    Column("ssl_valid", Integer, nullable=False, server_default="0"),
    Column("ssl_days_left", Integer),
    Column("ssl_issuer", String(255)),
    Column("ssl_expires_at", String(32)),
    Column("present_headers", Text),  # JSON array, NULL when headers were unavailable
    Column("missing_headers", Text),  # JSON array, NULL when headers were unavailable
    Column("detected_technologies", Text),  # JSON array, detection order preserved
    Column("detected_cms", String(100)),
    Column("server_info", String(255)),
    Column("risk_score", Integer, nullable=False, server_default="0"),
    Column("risk_level", String(10), nullable=False, server_default="low"),
    Column("headers_score", Integer, nullable=False, server_default="0"),
    Column("factors", Text),  # JSON array of RiskFactor dicts
    Column("summary", Text),
    Column("recommended_fixes", Text),  # JSON array of FixRecommendation dicts
    Column("scan_duration_ms", Integer, nullable=False, server_default="0"),
    Column("created_at", String(32), nullable=False),
    Column("completed_at", String(32)),
    Column("error", Text),
    Column("alerts_evaluated", Integer, nullable=False, server_default="0"),
)

_alerts = Table(
    "alerts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("target_id", Integer, nullable=False),
    Column("assessment_id", Integer),
    Column("alert_type", String(30), nullable=False),
    Column("subject", String(255), nullable=False, server_default=""),
    Column("severity", String(10), nullable=False),
    Column("title", String(255), nullable=False),
    Column("description", Text),
    Column("previous_value", Text),
    Column("current_value", Text),
    Column("target_url", String(2048), nullable=False, server_default=""),
    Column("is_read", Integer, nullable=False, server_default="0"),
    Column("is_dismissed", Integer, nullable=False, server_default="0"),
    Column("sent", Integer, nullable=False, server_default="0"),
    Column("sent_at", String(32)),
    Column("created_at", String(32), nullable=False),
)

_preferences = Table(
    "alert_preferences",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, nullable=False),
    Column("alert_type", String(30), nullable=False),
    Column("enabled", Integer, nullable=False, server_default="1"),
    Column("min_severity", String(10), nullable=False, server_default="medium"),
    Column("cooldown_hours", Integer, nullable=False, server_default="24"),
    Column("updated_at", String(32), nullable=False),
    UniqueConstraint("user_id", "alert_type", name="uq_user_alert_type"),
)

_risk_trends = Table(
    "risk_trends",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("target_id", Integer, nullable=False),
    Column("assessment_id", Integer, nullable=False),
    Column("risk_score", Integer, nullable=False),
    Column("risk_level", String(10), nullable=False),
    Column("ssl_valid", Integer, nullable=False),
    Column("missing_headers_count", Integer, nullable=False),
    Column("present_headers_count", Integer, nullable=False),
    Column("recorded_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return to_iso(utc_now())


def _dump_headers(headers: Optional[frozenset]) -> Optional[str]:
    return json.dumps(sorted(headers)) if headers is not None else None


def _load_headers(raw: Optional[str]) -> Optional[frozenset]:
    return frozenset(json.loads(raw)) if raw is not None else None


def _dump_factors(factors: Iterable[RiskFactor]) -> str:
    return json.dumps(
        [
            {
                "category": f.category.value,
                "name": f.name,
                "points": f.points,
                "max_points": f.max_points,
                "severity": f.severity.value,
                "description": f.description,
            }
            for f in factors
        ]
    )


def _load_factors(raw: Optional[str]) -> tuple[RiskFactor, ...]:
    if not raw:
        return ()
    return tuple(
        RiskFactor(
            category=FactorCategory(d["category"]),
            name=d["name"],
            points=d["points"],
            max_points=d["max_points"],
            severity=Severity(d["severity"]),
            description=d["description"],
        )
        for d in json.loads(raw)
    )


def _dump_fixes(fixes: Iterable[FixRecommendation]) -> str:
    return json.dumps(
        [
            {
                "key": f.key,
                "title": f.title,
                "severity": f.severity.value,
                "description": f.description,
                "nginx": f.nginx,
                "apache": f.apache,
                "reference": f.reference,
            }
            for f in fixes
        ]
    )


def _load_fixes(raw: Optional[str]) -> tuple[FixRecommendation, ...]:
    if not raw:
        return ()
    return tuple(
        FixRecommendation(
            key=d["key"],
            title=d["title"],
            severity=Severity(d["severity"]),
            description=d["description"],
            nginx=d.get("nginx", ""),
            apache=d.get("apache", ""),
            reference=d.get("reference", ""),
        )
        for d in json.loads(raw)
    )


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block on the scheduler's writes.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class MonitorStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            # Scheduler workers and the ASGI threadpool share the engine.
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: UserProfile) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    email=user.email,
                    full_name=user.full_name,
                    email_notifications=1 if user.email_notifications else 0,
                    created_at=user.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user(self, user_id: int) -> Optional[UserProfile]:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_email_notifications(self, user_id: int, enabled: bool) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(email_notifications=1 if enabled else 0)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Targets
    # ------------------------------------------------------------------

    def create_target(self, target: Target) -> int:
        """Insert a target and return its ID.

        Raises sqlalchemy.exc.IntegrityError if the user already monitors
        this URL. Use get_or_create_target() for upsert semantics.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _targets.insert().values(
                    user_id=target.user_id,
                    url=target.url,
                    domain=target.domain or domain_of(target.url),
                    created_at=target.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_target(self, target_id: int) -> Optional[Target]:
        with self.engine.connect() as conn:
            row = conn.execute(_targets.select().where(_targets.c.id == target_id)).fetchone()
        return _row_to_target(row) if row is not None else None

    def get_target_by_url(self, user_id: int, url: str) -> Optional[Target]:
        with self.engine.connect() as conn:
            row = conn.execute(
                _targets.select().where((_targets.c.user_id == user_id) & (_targets.c.url == url))
            ).fetchone()
        return _row_to_target(row) if row is not None else None

    def get_or_create_target(self, user_id: int, url: str) -> Target:
        """Return the user's target for a normalized URL, creating it if needed."""
        existing = self.get_target_by_url(user_id, url)
        if existing is not None:
            return existing
        target_id = self.create_target(Target(user_id=user_id, url=url))
        return self.get_target(target_id)

    def list_targets(self, user_id: int) -> list[Target]:
        """Return the user's targets ordered by domain."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _targets.select().where(_targets.c.user_id == user_id).order_by(_targets.c.domain, _targets.c.id)
            ).fetchall()
        return [_row_to_target(r) for r in rows]

    # ------------------------------------------------------------------
    # Per-target lease
    # ------------------------------------------------------------------

    def acquire_lease(self, target_id: int, owner: str, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        """Claim the target for one pipeline run.

        A single conditional UPDATE: it succeeds only if the lease is free or
        expired, so two workers can never both hold it.
        """
        now = now or utc_now()
        now_iso = to_iso(now)
        expires = to_iso(now + timedelta(seconds=ttl_seconds))
        with self.engine.connect() as conn:
            result = conn.execute(
                _targets.update()
                .where(
                    (_targets.c.id == target_id)
                    & or_(_targets.c.lease_owner.is_(None), _targets.c.lease_expires_at < now_iso)
                )
                .values(lease_owner=owner, lease_expires_at=expires)
            )
            conn.commit()
        if result.rowcount != 1:
            logger.debug("Lease on target %s is held by another worker", target_id)
            return False
        return True

    def release_lease(self, target_id: int, owner: str) -> None:
        """Release the lease if this owner still holds it."""
        with self.engine.connect() as conn:
            conn.execute(
                _targets.update()
                .where((_targets.c.id == target_id) & (_targets.c.lease_owner == owner))
                .values(lease_owner=None, lease_expires_at=None)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def upsert_schedule(
        self,
        target_id: int,
        frequency: Frequency,
        is_active: bool = True,
        next_due_at: Optional[str] = None,
    ) -> Schedule:
        """Create or update the target's schedule.

        A new schedule is due immediately unless next_due_at is given. An
        existing schedule keeps its next_due_at unless one is supplied.
        """
        current = self.get_schedule(target_id)
        with self.engine.connect() as conn:
            if current is None:
                conn.execute(
                    _schedules.insert().values(
                        target_id=target_id,
                        frequency=Frequency(frequency).value,
                        next_due_at=next_due_at or _now_iso(),
                        is_active=1 if is_active else 0,
                    )
                )
            else:
                values: dict = {"frequency": Frequency(frequency).value, "is_active": 1 if is_active else 0}
                if next_due_at is not None:
                    values["next_due_at"] = next_due_at
                conn.execute(_schedules.update().where(_schedules.c.target_id == target_id).values(**values))
            conn.commit()
        return self.get_schedule(target_id)

    def get_schedule(self, target_id: int) -> Optional[Schedule]:
        with self.engine.connect() as conn:
            row = conn.execute(_schedules.select().where(_schedules.c.target_id == target_id)).fetchone()
        return _row_to_schedule(row) if row is not None else None

    def deactivate_schedule(self, target_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _schedules.update().where(_schedules.c.target_id == target_id).values(is_active=0)
            )
            conn.commit()
        return result.rowcount > 0

    def list_due_schedules(self, now: datetime) -> list[tuple[Schedule, Target]]:
        """Return active schedules with next_due_at <= now, oldest due first."""
        stmt = (
            select(_schedules, _targets.c.user_id, _targets.c.url, _targets.c.domain, _targets.c.created_at)
            .select_from(_schedules.join(_targets, _schedules.c.target_id == _targets.c.id))
            .where((_schedules.c.is_active == 1) & (_schedules.c.next_due_at <= to_iso(now)))
            .order_by(_schedules.c.next_due_at, _schedules.c.id)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [
            (
                _row_to_schedule(r),
                Target(id=r.target_id, user_id=r.user_id, url=r.url, domain=r.domain, created_at=r.created_at),
            )
            for r in rows
        ]

    def schedule_is_due(self, schedule_id: int, now: datetime) -> bool:
        """Re-read one schedule: still active and next_due_at <= now."""
        stmt = select(_schedules.c.id).where(
            (_schedules.c.id == schedule_id)
            & (_schedules.c.is_active == 1)
            & (_schedules.c.next_due_at <= to_iso(now))
        )
        with self.engine.connect() as conn:
            return conn.execute(stmt).fetchone() is not None

    def mark_schedule_run(self, schedule_id: int, ran_at: datetime, next_due_at: datetime, assessment_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _schedules.update()
                .where(_schedules.c.id == schedule_id)
                .values(
                    next_due_at=to_iso(next_due_at),
                    last_run_at=to_iso(ran_at),
                    last_assessment_id=assessment_id,
                    last_error=None,
                )
            )
            conn.commit()

    def mark_schedule_failed(self, schedule_id: int, ran_at: datetime, error: str) -> None:
        """Record a failure. next_due_at is left untouched so the next pass retries."""
        with self.engine.connect() as conn:
            conn.execute(
                _schedules.update()
                .where(_schedules.c.id == schedule_id)
                .values(last_run_at=to_iso(ran_at), last_error=error)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Assessments
    # ------------------------------------------------------------------

    def create_assessment(self, target: Target, status: ScanStatus = ScanStatus.running) -> int:
        """Insert a placeholder row for an in-flight scan and return its ID."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _assessments.insert().values(
                    target_id=target.id,
                    user_id=target.user_id,
                    target_url=target.url,
                    status=status.value,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def complete_assessment(self, assessment_id: int, assessment: Assessment, completed_at: Optional[str] = None) -> None:
        """Write the scan results and flip the row to completed.

        Only rows that are not yet completed are touched: a completed
        assessment is immutable.
        """
        with self.engine.connect() as conn:
            conn.execute(
                _assessments.update()
                .where((_assessments.c.id == assessment_id) & (_assessments.c.status != ScanStatus.completed.value))
                .values(
                    status=ScanStatus.completed.value,
                    ssl_valid=1 if assessment.ssl_valid else 0,
                    ssl_days_left=assessment.ssl_days_left,
                    ssl_issuer=assessment.ssl_issuer,
                    ssl_expires_at=assessment.ssl_expires_at,
                    present_headers=_dump_headers(assessment.present_headers),
                    missing_headers=_dump_headers(assessment.missing_headers),
                    detected_technologies=json.dumps(list(assessment.detected_technologies)),
                    detected_cms=assessment.detected_cms,
                    server_info=assessment.server_info,
                    risk_score=assessment.risk_score,
                    risk_level=assessment.risk_level.value,
                    headers_score=assessment.headers_score,
                    factors=_dump_factors(assessment.factors),
                    summary=assessment.summary,
                    recommended_fixes=_dump_fixes(assessment.recommended_fixes),
                    scan_duration_ms=assessment.scan_duration_ms,
                    completed_at=completed_at or _now_iso(),
                    error=None,
                )
            )
            conn.commit()

    def fail_assessment(self, assessment_id: int, error: str, scan_duration_ms: int = 0) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _assessments.update()
                .where((_assessments.c.id == assessment_id) & (_assessments.c.status != ScanStatus.completed.value))
                .values(
                    status=ScanStatus.failed.value,
                    error=error,
                    scan_duration_ms=scan_duration_ms,
                    completed_at=_now_iso(),
                )
            )
            conn.commit()

    def get_assessment(self, assessment_id: int) -> Optional[Assessment]:
        with self.engine.connect() as conn:
            row = conn.execute(_assessments.select().where(_assessments.c.id == assessment_id)).fetchone()
        return _row_to_assessment(row) if row is not None else None

    def list_assessments(self, target_id: int, limit: int = 20) -> list[Assessment]:
        """Return the target's assessments, newest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _assessments.select()
                .where(_assessments.c.target_id == target_id)
                .order_by(_assessments.c.created_at.desc(), _assessments.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_assessment(r) for r in rows]

    def list_completed_assessments(self, target_id: int, limit: int = 2) -> list[Assessment]:
        """Return completed assessments, newest first by (completed_at, id)."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _assessments.select()
                .where(
                    (_assessments.c.target_id == target_id)
                    & (_assessments.c.status == ScanStatus.completed.value)
                )
                .order_by(_assessments.c.completed_at.desc(), _assessments.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_assessment(r) for r in rows]

    def get_previous_assessment(self, current: Assessment) -> Optional[Assessment]:
        """Return the completed assessment immediately preceding current.

        Ordering is strict on (completed_at, id): equal timestamps fall back
        to insertion order.
        """
        c = _assessments.c
        stmt = (
            _assessments.select()
            .where(
                (c.target_id == current.target_id)
                & (c.status == ScanStatus.completed.value)
                & (c.id != current.id)
                & or_(
                    c.completed_at < current.completed_at,
                    and_(c.completed_at == current.completed_at, c.id < current.id),
                )
            )
            .order_by(c.completed_at.desc(), c.id.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return _row_to_assessment(row) if row is not None else None

    def list_unevaluated_assessments(self, target_id: int) -> list[Assessment]:
        """Completed assessments whose drift has not been handed to the alert engine yet, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _assessments.select()
                .where(
                    (_assessments.c.target_id == target_id)
                    & (_assessments.c.status == ScanStatus.completed.value)
                    & (_assessments.c.alerts_evaluated == 0)
                )
                .order_by(_assessments.c.completed_at, _assessments.c.id)
            ).fetchall()
        return [_row_to_assessment(r) for r in rows]

    def mark_alerts_evaluated(self, assessment_id: int) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _assessments.update().where(_assessments.c.id == assessment_id).values(alerts_evaluated=1)
            )
            conn.commit()

    # ------------------------------------------------------------------
    # Risk trend
    # ------------------------------------------------------------------

    def add_trend_point(self, assessment: Assessment) -> int:
        """Record one trend point for a completed assessment."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _risk_trends.insert().values(
                    target_id=assessment.target_id,
                    assessment_id=assessment.id,
                    risk_score=assessment.risk_score,
                    risk_level=assessment.risk_level.value,
                    ssl_valid=1 if assessment.ssl_valid else 0,
                    missing_headers_count=len(assessment.missing_headers or ()),
                    present_headers_count=len(assessment.present_headers or ()),
                    recorded_at=assessment.completed_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def list_trend(self, target_id: int, limit: int = 90) -> list[RiskTrendPoint]:
        """Return the most recent trend points in chronological order."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _risk_trends.select()
                .where(_risk_trends.c.target_id == target_id)
                .order_by(_risk_trends.c.recorded_at.desc(), _risk_trends.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_trend(r) for r in reversed(rows)]

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    def create_alert(self, alert: AlertRecord) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                _alerts.insert().values(
                    user_id=alert.user_id,
                    target_id=alert.target_id,
                    assessment_id=alert.assessment_id,
                    alert_type=AlertType(alert.alert_type).value,
                    subject=alert.subject,
                    severity=Severity(alert.severity).value,
                    title=alert.title,
                    description=alert.description,
                    previous_value=alert.previous_value,
                    current_value=alert.current_value,
                    target_url=alert.target_url,
                    created_at=alert.created_at or _now_iso(),
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def latest_alert_time(self, user_id: int, target_id: int, alert_type: AlertType, subject: str) -> Optional[str]:
        """created_at of the newest alert for this cooldown key, or None.

        Dismissed alerts count: dismissing must not reopen the flood gate.
        """
        c = _alerts.c
        stmt = (
            select(c.created_at)
            .where(
                (c.user_id == user_id)
                & (c.target_id == target_id)
                & (c.alert_type == AlertType(alert_type).value)
                & (c.subject == subject)
            )
            .order_by(c.created_at.desc())
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).fetchone()
        return row.created_at if row is not None else None

    def get_alert(self, alert_id: int) -> Optional[AlertRecord]:
        with self.engine.connect() as conn:
            row = conn.execute(_alerts.select().where(_alerts.c.id == alert_id)).fetchone()
        return _row_to_alert(row) if row is not None else None

    def list_alerts(
        self,
        user_id: int,
        unread_only: bool = False,
        include_dismissed: bool = False,
        limit: int = 100,
    ) -> list[AlertRecord]:
        """Return the user's alerts, newest first."""
        stmt = _alerts.select().where(_alerts.c.user_id == user_id)
        if unread_only:
            stmt = stmt.where(_alerts.c.is_read == 0)
        if not include_dismissed:
            stmt = stmt.where(_alerts.c.is_dismissed == 0)
        stmt = stmt.order_by(_alerts.c.created_at.desc(), _alerts.c.id.desc()).limit(limit)
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_alert(r) for r in rows]

    def list_pending_alerts(self) -> list[AlertRecord]:
        """Unsent, undismissed alerts across all users, oldest first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _alerts.select()
                .where((_alerts.c.sent == 0) & (_alerts.c.is_dismissed == 0))
                .order_by(_alerts.c.user_id, _alerts.c.created_at, _alerts.c.id)
            ).fetchall()
        return [_row_to_alert(r) for r in rows]

    def mark_alerts_sent(self, alert_ids: list[int], sent_at: Optional[str] = None) -> int:
        """Flip sent for the given alerts. Idempotent; returns rows changed."""
        if not alert_ids:
            return 0
        with self.engine.connect() as conn:
            result = conn.execute(
                _alerts.update()
                .where(_alerts.c.id.in_(alert_ids) & (_alerts.c.sent == 0))
                .values(sent=1, sent_at=sent_at or _now_iso())
            )
            conn.commit()
        return result.rowcount

    def mark_alert_read(self, alert_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _alerts.update()
                .where((_alerts.c.id == alert_id) & (_alerts.c.user_id == user_id))
                .values(is_read=1)
            )
            conn.commit()
        return result.rowcount > 0

    def dismiss_alert(self, alert_id: int, user_id: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _alerts.update()
                .where((_alerts.c.id == alert_id) & (_alerts.c.user_id == user_id))
                .values(is_dismissed=1)
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Alert preferences
    # ------------------------------------------------------------------

    def get_preference(self, user_id: int, alert_type: AlertType) -> AlertPreference:
        """Return the stored preference or the defaults when none is stored."""
        alert_type = AlertType(alert_type)
        with self.engine.connect() as conn:
            row = conn.execute(
                _preferences.select().where(
                    (_preferences.c.user_id == user_id) & (_preferences.c.alert_type == alert_type.value)
                )
            ).fetchone()
        if row is None:
            return AlertPreference(user_id=user_id, alert_type=alert_type)
        return _row_to_preference(row)

    def list_preferences(self, user_id: int) -> list[AlertPreference]:
        """One entry per alert type, defaults filled in for absent rows."""
        with self.engine.connect() as conn:
            rows = conn.execute(_preferences.select().where(_preferences.c.user_id == user_id)).fetchall()
        stored = {r.alert_type: _row_to_preference(r) for r in rows}
        return [stored.get(t.value) or AlertPreference(user_id=user_id, alert_type=t) for t in AlertType]

    def set_preference(self, pref: AlertPreference) -> AlertPreference:
        alert_type = AlertType(pref.alert_type)
        values = {
            "enabled": 1 if pref.enabled else 0,
            "min_severity": Severity(pref.min_severity).value,
            "cooldown_hours": pref.cooldown_hours,
            "updated_at": _now_iso(),
        }
        with self.engine.connect() as conn:
            result = conn.execute(
                _preferences.update()
                .where((_preferences.c.user_id == pref.user_id) & (_preferences.c.alert_type == alert_type.value))
                .values(**values)
            )
            if result.rowcount == 0:
                conn.execute(_preferences.insert().values(user_id=pref.user_id, alert_type=alert_type.value, **values))
            conn.commit()
        return self.get_preference(pref.user_id, alert_type)

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern -- DB row -> domain dataclass)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> UserProfile:
    return UserProfile(
        id=row.id,
        email=row.email,
        full_name=row.full_name,
        email_notifications=bool(row.email_notifications),
        created_at=row.created_at,
    )


def _row_to_target(row) -> Target:
    return Target(id=row.id, user_id=row.user_id, url=row.url, domain=row.domain, created_at=row.created_at)


def _row_to_schedule(row) -> Schedule:
    return Schedule(
        id=row.id,
        target_id=row.target_id,
        frequency=Frequency(row.frequency),
        next_due_at=row.next_due_at,
        is_active=bool(row.is_active),
        last_assessment_id=row.last_assessment_id,
        last_run_at=row.last_run_at,
        last_error=row.last_error,
    )


def _row_to_assessment(row) -> Assessment:
    return Assessment(
        id=row.id,
        target_id=row.target_id,
        user_id=row.user_id,
        target_url=row.target_url,
        status=ScanStatus(row.status),
        ssl_valid=bool(row.ssl_valid),
        ssl_days_left=row.ssl_days_left,
        ssl_issuer=row.ssl_issuer,
        ssl_expires_at=row.ssl_expires_at,
        present_headers=_load_headers(row.present_headers),
        missing_headers=_load_headers(row.missing_headers),
        detected_technologies=tuple(json.loads(row.detected_technologies)) if row.detected_technologies else (),
        detected_cms=row.detected_cms,
        server_info=row.server_info,
        risk_score=row.risk_score,
        risk_level=RiskLevel(row.risk_level),
        headers_score=row.headers_score,
        factors=_load_factors(row.factors),
        summary=row.summary or "",
        recommended_fixes=_load_fixes(row.recommended_fixes),
        scan_duration_ms=row.scan_duration_ms,
        created_at=row.created_at,
        completed_at=row.completed_at,
        error=row.error,
        alerts_evaluated=bool(row.alerts_evaluated),
    )


def _row_to_alert(row) -> AlertRecord:
    return AlertRecord(
        id=row.id,
        user_id=row.user_id,
        target_id=row.target_id,
        assessment_id=row.assessment_id,
        alert_type=AlertType(row.alert_type),
        subject=row.subject or "",
        severity=Severity(row.severity),
        title=row.title,
        description=row.description or "",
        previous_value=row.previous_value,
        current_value=row.current_value,
        target_url=row.target_url,
        is_read=bool(row.is_read),
        is_dismissed=bool(row.is_dismissed),
        sent=bool(row.sent),
        sent_at=row.sent_at,
        created_at=row.created_at,
    )


def _row_to_preference(row) -> AlertPreference:
    return AlertPreference(
        user_id=row.user_id,
        alert_type=AlertType(row.alert_type),
        enabled=bool(row.enabled),
        min_severity=Severity(row.min_severity),
        cooldown_hours=row.cooldown_hours,
        is_default=False,
    )


def _row_to_trend(row) -> RiskTrendPoint:
    return RiskTrendPoint(
        id=row.id,
        target_id=row.target_id,
        assessment_id=row.assessment_id,
        risk_score=row.risk_score,
        risk_level=row.risk_level,
        ssl_valid=bool(row.ssl_valid),
        missing_headers_count=row.missing_headers_count,
        present_headers_count=row.present_headers_count,
        recorded_at=row.recorded_at,
    )
