"""
alerts/engine.py -- Turn drift events into deduplicated, preference-filtered alerts.

Two stages:
  1. build_candidates() maps each DriftEvent to an AlertCandidate through a
     fixed table (plus an ssl_expiring reminder read off the current
     assessment) and merges candidates sharing a cooldown key. Pure.
  2. AlertEngine.evaluate() applies the user's AlertPreference to each
     candidate and persists the survivors as AlertRecords.

Decision order per candidate:
  disabled                      -> suppressed
  regression below min severity -> suppressed
  (improvements and informational types skip the severity gate)
  same (user, target, type, subject) alert inside the cooldown -> suppressed
  otherwise                     -> emitted

Suppressed candidates are dropped, never queued.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from core.clock import parse_iso, to_iso, utc_now
from core.models import Assessment, Direction, DriftEvent, DriftKind, RiskLevel, Severity, severity_at_least
from monitor.models import AlertPreference, AlertRecord, AlertType, Target, is_improvement, is_informational

logger = logging.getLogger("posturewatch.alerts")

SSL_EXPIRING_DAYS = 30

# ---------------------------------------------------------------------------
# Candidates
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AlertCandidate:
    alert_type: AlertType
    severity: Severity
    title: str
    description: str
    previous_value: Optional[str] = None
    current_value: Optional[str] = None
    subject: str = ""


@dataclass(frozen=True)
class AlertDecision:
    """Outcome of evaluating one candidate. alert_id is set when emitted."""

    candidate: AlertCandidate
    emitted: bool
    reason: str
    alert_id: Optional[int] = None


_LEVEL_SEVERITY = {
    RiskLevel.low: Severity.medium,
    RiskLevel.medium: Severity.medium,
    RiskLevel.high: Severity.high,
    RiskLevel.critical: Severity.critical,
}


def _score_severity(delta: int) -> Severity:
    if delta >= 30:
        return Severity.critical
    if delta >= 20:
        return Severity.high
    return Severity.medium


def _expiry_severity(days_left: int) -> Severity:
    if days_left <= 7:
        return Severity.critical
    if days_left <= 14:
        return Severity.high
    return Severity.medium


def _candidate_for(event: DriftEvent, domain: str) -> Optional[AlertCandidate]:
    regression = event.direction == Direction.regression
    kind = event.kind

    if kind == DriftKind.ssl_changed:
        if regression:
            return AlertCandidate(
                AlertType.ssl_invalid, Severity.critical, f"SSL certificate invalid on {domain}",
                event.description, event.before, event.after,
            )
        return AlertCandidate(
            AlertType.ssl_restored, Severity.low, f"SSL certificate restored on {domain}",
            event.description, event.before, event.after,
        )

    if kind == DriftKind.risk_level_changed:
        if regression:
            return AlertCandidate(
                AlertType.risk_increased, _LEVEL_SEVERITY[RiskLevel(event.after)],
                f"Risk level increased to {event.after} on {domain}",
                event.description, event.before, event.after,
            )
        return AlertCandidate(
            AlertType.risk_decreased, Severity.low, f"Risk level decreased to {event.after} on {domain}",
            event.description, event.before, event.after,
        )

    if kind == DriftKind.score_delta:
        if regression:
            return AlertCandidate(
                AlertType.risk_increased, _score_severity(event.delta),
                f"Risk score increased by {event.delta} points on {domain}",
                event.description, event.before, event.after,
            )
        return AlertCandidate(
            AlertType.risk_decreased, Severity.low,
            f"Risk score decreased by {-event.delta} points on {domain}",
            event.description, event.before, event.after,
        )

    if kind == DriftKind.header_removed:
        return AlertCandidate(
            AlertType.config_drift, Severity.high, f"Security header removed on {domain}: {event.subject}",
            event.description, event.before, event.after, event.subject,
        )

    if kind == DriftKind.header_added:
        return AlertCandidate(
            AlertType.headers_improved, Severity.low, f"Security header added on {domain}: {event.subject}",
            event.description, event.before, event.after, event.subject,
        )

    if kind == DriftKind.tech_added:
        return AlertCandidate(
            AlertType.new_technology, Severity.low, f"New technology detected on {domain}: {event.subject}",
            event.description, event.before, event.after, event.subject,
        )

    if kind == DriftKind.tech_removed:
        return AlertCandidate(
            AlertType.technology_removed, Severity.low, f"Technology no longer detected on {domain}: {event.subject}",
            event.description, event.before, event.after, event.subject,
        )

    return None


def _expiry_candidate(assessment: Assessment, domain: str) -> Optional[AlertCandidate]:
    days = assessment.ssl_days_left
    if not assessment.ssl_valid or days is None or days > SSL_EXPIRING_DAYS:
        return None
    return AlertCandidate(
        AlertType.ssl_expiring,
        _expiry_severity(days),
        f"SSL certificate expiring in {days} days on {domain}",
        f"The certificate for {domain} expires in {days} days. Renew it before browsers start rejecting it.",
        None,
        str(days),
    )


def _merge_shared_keys(candidates: list[AlertCandidate]) -> list[AlertCandidate]:
    """Collapse candidates with the same (type, subject), keeping the most severe.

    A risk-level change and a score jump in one scan both map to
    risk_increased; the user gets one alert for it, not one plus a
    cooldown suppression.
    """
    merged: dict[tuple[AlertType, str], AlertCandidate] = {}
    for candidate in candidates:
        key = (candidate.alert_type, candidate.subject)
        kept = merged.get(key)
        if kept is None or candidate.severity.rank > kept.severity.rank:
            merged[key] = candidate
    return list(merged.values())


def build_candidates(events: list[DriftEvent], assessment: Assessment, domain: str) -> list[AlertCandidate]:
    """Map drift events (and the current certificate state) to alert candidates.

    At most one candidate per (alert type, subject) is returned.
    """
    candidates = [c for c in (_candidate_for(e, domain) for e in events) if c is not None]
    expiring = _expiry_candidate(assessment, domain)
    if expiring is not None:
        candidates.append(expiring)
    return _merge_shared_keys(candidates)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def preference_gate(alert_type: AlertType, severity: Severity, pref: AlertPreference) -> Optional[str]:
    """Reason the preference blocks this alert, or None when it passes.

    Improvements and informational types skip the severity check.
    """
    if not pref.enabled:
        return "disabled"
    gated = not (is_improvement(alert_type) or is_informational(alert_type))
    if gated and not severity_at_least(severity, pref.min_severity):
        return "below_min_severity"
    return None


class AlertEngine:
    """Apply preferences and cooldowns, then persist emitted alerts.

    store needs get_preference(), latest_alert_time() and create_alert()
    (monitor.store.MonitorStore). Callers must serialize evaluate() per
    target (the scan lease does this) so the cooldown read and the insert
    are not interleaved with another writer for the same key.
    """

    def __init__(self, store, improvement_cooldown_hours: Optional[int] = None) -> None:
        self.store = store
        self.improvement_cooldown_hours = improvement_cooldown_hours

    def _cooldown_hours(self, pref: AlertPreference) -> int:
        if self.improvement_cooldown_hours is not None and is_improvement(pref.alert_type):
            return self.improvement_cooldown_hours
        return pref.cooldown_hours

    def _in_cooldown(self, target: Target, candidate: AlertCandidate, hours: int, now: datetime) -> bool:
        if hours <= 0:
            return False
        last = self.store.latest_alert_time(target.user_id, target.id, candidate.alert_type, candidate.subject)
        if last is None:
            return False
        return now - parse_iso(last) < timedelta(hours=hours)

    def decide(self, candidate: AlertCandidate, pref: AlertPreference, target: Target, now: datetime) -> tuple[bool, str]:
        blocked = preference_gate(candidate.alert_type, candidate.severity, pref)
        if blocked is not None:
            return False, blocked
        if self._in_cooldown(target, candidate, self._cooldown_hours(pref), now):
            return False, "cooldown"
        return True, "emitted"

    def evaluate(
        self,
        events: list[DriftEvent],
        assessment: Assessment,
        target: Target,
        now: Optional[datetime] = None,
    ) -> list[AlertDecision]:
        """Evaluate all candidates for one assessment, in order."""
        now = now or utc_now()
        decisions: list[AlertDecision] = []
        prefs: dict[AlertType, AlertPreference] = {}

        for candidate in build_candidates(events, assessment, target.domain):
            pref = prefs.get(candidate.alert_type)
            if pref is None:
                pref = self.store.get_preference(target.user_id, candidate.alert_type)
                prefs[candidate.alert_type] = pref

            emitted, reason = self.decide(candidate, pref, target, now)
            if not emitted:
                logger.debug(
                    "Suppressed %s for %s (%s)", candidate.alert_type.value, target.domain, reason
                )
                decisions.append(AlertDecision(candidate, False, reason))
                continue

            alert_id = self.store.create_alert(
                AlertRecord(
                    user_id=target.user_id,
                    target_id=target.id,
                    assessment_id=assessment.id,
                    alert_type=candidate.alert_type,
                    severity=candidate.severity,
                    title=candidate.title,
                    description=candidate.description,
                    previous_value=candidate.previous_value,
                    current_value=candidate.current_value,
                    subject=candidate.subject,
                    target_url=target.url,
                    created_at=to_iso(now),
                )
            )
            decisions.append(AlertDecision(candidate, True, reason, alert_id))

        emitted_count = sum(1 for d in decisions if d.emitted)
        if decisions:
            logger.info(
                "Alert evaluation for %s: %d emitted, %d suppressed",
                target.domain,
                emitted_count,
                len(decisions) - emitted_count,
            )
        return decisions
