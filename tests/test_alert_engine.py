"""Tests for alerts/engine.py -- drift events to persisted, policy-filtered alerts.

Covers:
- the drift-kind -> alert-type/severity mapping in build_candidates()
- ssl_expiring reminders read off the current assessment
- preference gates: disabled, min severity, improvements bypassing the gate
- cooldown per (user, target, type, subject), including dismissed alerts
"""

from datetime import timedelta

import pytest

from conftest import make_assessment

from alerts.engine import AlertEngine, build_candidates
from core.clock import utc_now
from core.drift import detect_drift
from core.models import Direction, DriftEvent, DriftKind, RiskLevel, Severity
from core.scoring import SECURITY_HEADERS
from monitor.models import AlertPreference, AlertType

REMOVED = ("strict-transport-security", "content-security-policy", "x-frame-options")


def _broken_site(**overrides):
    missing = frozenset(REMOVED)
    fields = dict(
        ssl_valid=False,
        ssl_days_left=None,
        present_headers=frozenset(SECURITY_HEADERS) - missing,
        missing_headers=missing,
        risk_score=5,
    )
    fields.update(overrides)
    return make_assessment(**fields)


def _event(kind, direction, before=None, after=None, subject="", delta=0):
    return DriftEvent(kind=kind, direction=direction, before=before, after=after, subject=subject, delta=delta)


@pytest.fixture
def target(store, user_id):
    return store.get_or_create_target(user_id, "https://example.com/")


@pytest.fixture
def engine(store):
    return AlertEngine(store)


# ---------------------------------------------------------------------------
# Candidate mapping
# ---------------------------------------------------------------------------


class TestBuildCandidates:
    def test_ssl_and_header_regressions(self):
        events = detect_drift(make_assessment(), _broken_site())
        candidates = build_candidates(events, _broken_site(), "example.com")
        types = [c.alert_type for c in candidates]
        assert types.count(AlertType.ssl_invalid) == 1
        assert types.count(AlertType.config_drift) == 3
        ssl = [c for c in candidates if c.alert_type == AlertType.ssl_invalid][0]
        assert ssl.severity == Severity.critical
        assert ssl.title == "SSL certificate invalid on example.com"
        assert {c.subject for c in candidates if c.alert_type == AlertType.config_drift} == set(REMOVED)

    @pytest.mark.parametrize(
        "delta,severity",
        [(10, Severity.medium), (20, Severity.high), (29, Severity.high), (30, Severity.critical)],
    )
    def test_score_delta_severity(self, delta, severity):
        ev = _event(DriftKind.score_delta, Direction.regression, "0", str(delta), delta=delta)
        (c,) = build_candidates([ev], make_assessment(), "example.com")
        assert c.alert_type == AlertType.risk_increased
        assert c.severity == severity

    @pytest.mark.parametrize(
        "level,severity",
        [("medium", Severity.medium), ("high", Severity.high), ("critical", Severity.critical)],
    )
    def test_risk_level_severity(self, level, severity):
        ev = _event(DriftKind.risk_level_changed, Direction.regression, "low", level)
        (c,) = build_candidates([ev], make_assessment(), "example.com")
        assert c.severity == severity

    def test_improvements_map_to_low(self):
        events = [
            _event(DriftKind.ssl_changed, Direction.improvement, "invalid", "valid"),
            _event(DriftKind.risk_level_changed, Direction.improvement, "high", "low"),
            _event(DriftKind.score_delta, Direction.improvement, "40", "10", delta=-30),
            _event(DriftKind.header_added, Direction.improvement, "missing", "present", "referrer-policy"),
        ]
        candidates = build_candidates(events, make_assessment(), "example.com")
        assert [c.alert_type for c in candidates] == [
            AlertType.ssl_restored,
            AlertType.risk_decreased,
            AlertType.headers_improved,
        ]
        assert all(c.severity == Severity.low for c in candidates)
        # Equal severity keeps the first candidate for the key.
        assert candidates[1].title == "Risk level decreased to low on example.com"

    def test_technology_events(self):
        events = [
            _event(DriftKind.tech_added, Direction.neutral, None, "WordPress", "WordPress"),
            _event(DriftKind.tech_removed, Direction.neutral, "jQuery", None, "jQuery"),
        ]
        candidates = build_candidates(events, make_assessment(), "example.com")
        assert [(c.alert_type, c.subject) for c in candidates] == [
            (AlertType.new_technology, "WordPress"),
            (AlertType.technology_removed, "jQuery"),
        ]

    @pytest.mark.parametrize(
        "days,severity",
        [(3, Severity.critical), (7, Severity.critical), (14, Severity.high), (30, Severity.medium)],
    )
    def test_expiring_certificate(self, days, severity):
        (c,) = build_candidates([], make_assessment(ssl_days_left=days), "example.com")
        assert c.alert_type == AlertType.ssl_expiring
        assert c.severity == severity
        assert c.current_value == str(days)

    def test_no_expiry_reminder_outside_window_or_when_invalid(self):
        assert build_candidates([], make_assessment(ssl_days_left=31), "example.com") == []
        assert build_candidates([], make_assessment(ssl_valid=False, ssl_days_left=3), "example.com") == []
        assert build_candidates([], make_assessment(ssl_days_left=None), "example.com") == []


# ---------------------------------------------------------------------------
# Engine policy
# ---------------------------------------------------------------------------


class TestAlertEngine:
    def test_ssl_break_with_three_headers_emits_four_alerts(self, store, engine, target):
        current = _broken_site(id=2)
        events = detect_drift(make_assessment(), current)
        assert sorted(e.kind for e in events) == sorted([DriftKind.ssl_changed] + [DriftKind.header_removed] * 3)
        decisions = engine.evaluate(events, current, target)
        assert [d.emitted for d in decisions] == [True] * 4
        alerts = store.list_alerts(target.user_id)
        assert len(alerts) == 4
        assert all(a.assessment_id == 2 and a.target_url == target.url for a in alerts)

    def test_scored_break_adds_one_risk_alert_without_suppressions(self, store, engine, target):
        # Level change and score jump both map to risk_increased.
        current = _broken_site(id=2, risk_score=68)
        events = detect_drift(make_assessment(), current)
        assert {DriftKind.risk_level_changed, DriftKind.score_delta} <= {e.kind for e in events}

        decisions = engine.evaluate(events, current, target)

        assert all(d.emitted for d in decisions)
        types = [d.candidate.alert_type for d in decisions]
        assert types.count(AlertType.risk_increased) == 1
        assert types.count(AlertType.config_drift) == 3
        assert len(store.list_alerts(target.user_id)) == 5

    def test_cooldown_suppresses_repeat_within_window(self, store, engine, target):
        t0 = utc_now()
        ev = [_event(DriftKind.ssl_changed, Direction.regression, "valid", "invalid")]
        broken = make_assessment(ssl_valid=False, ssl_days_left=None)

        (first,) = engine.evaluate(ev, broken, target, now=t0)
        (second,) = engine.evaluate(ev, broken, target, now=t0 + timedelta(hours=1))
        (third,) = engine.evaluate(ev, broken, target, now=t0 + timedelta(hours=25))

        assert first.emitted and first.alert_id is not None
        assert not second.emitted and second.reason == "cooldown"
        assert third.emitted
        assert len(store.list_alerts(target.user_id)) == 2

    def test_dismissed_alert_still_blocks_repeat(self, store, engine, target):
        t0 = utc_now()
        ev = [_event(DriftKind.ssl_changed, Direction.regression, "valid", "invalid")]
        broken = make_assessment(ssl_valid=False, ssl_days_left=None)
        (first,) = engine.evaluate(ev, broken, target, now=t0)
        store.dismiss_alert(first.alert_id, target.user_id)
        (second,) = engine.evaluate(ev, broken, target, now=t0 + timedelta(minutes=5))
        assert second.reason == "cooldown"

    def test_cooldown_is_per_subject(self, engine, target):
        t0 = utc_now()
        a = [_event(DriftKind.header_removed, Direction.regression, "present", "missing", "x-frame-options")]
        b = [_event(DriftKind.header_removed, Direction.regression, "present", "missing", "referrer-policy")]
        (first,) = engine.evaluate(a, make_assessment(), target, now=t0)
        (second,) = engine.evaluate(b, make_assessment(), target, now=t0 + timedelta(minutes=1))
        assert first.emitted and second.emitted

    def test_zero_cooldown_disables_dedup(self, store, engine, target):
        store.set_preference(AlertPreference(target.user_id, AlertType.ssl_invalid, cooldown_hours=0))
        ev = [_event(DriftKind.ssl_changed, Direction.regression, "valid", "invalid")]
        t0 = utc_now()
        engine.evaluate(ev, make_assessment(ssl_valid=False), target, now=t0)
        (second,) = engine.evaluate(ev, make_assessment(ssl_valid=False), target, now=t0)
        assert second.emitted

    def test_disabled_type_is_suppressed(self, store, engine, target):
        store.set_preference(AlertPreference(target.user_id, AlertType.ssl_invalid, enabled=False))
        current = _broken_site()
        events = [e for e in detect_drift(make_assessment(), current) if e.kind != DriftKind.score_delta]
        decisions = engine.evaluate(events, current, target)
        by_type = {}
        for d in decisions:
            by_type.setdefault(d.candidate.alert_type, []).append(d)
        assert by_type[AlertType.ssl_invalid][0].reason == "disabled"
        assert all(d.emitted for d in by_type[AlertType.config_drift])
        assert len(store.list_alerts(target.user_id)) == 3

    def test_min_severity_gate(self, store, engine, target):
        store.set_preference(AlertPreference(target.user_id, AlertType.risk_increased, min_severity=Severity.high))
        ev = [_event(DriftKind.score_delta, Direction.regression, "0", "12", delta=12)]
        (decision,) = engine.evaluate(ev, make_assessment(risk_score=12), target)
        assert decision.reason == "below_min_severity"
        assert store.list_alerts(target.user_id) == []

    def test_improvements_and_notices_skip_severity_gate(self, store, engine, target):
        for t in (AlertType.headers_improved, AlertType.new_technology):
            store.set_preference(AlertPreference(target.user_id, t, min_severity=Severity.critical))
        events = [
            _event(DriftKind.header_added, Direction.improvement, "missing", "present", "referrer-policy"),
            _event(DriftKind.tech_added, Direction.neutral, None, "nginx", "nginx"),
        ]
        decisions = engine.evaluate(events, make_assessment(), target)
        assert [d.emitted for d in decisions] == [True, True]

    def test_improvement_cooldown_override(self, store, target):
        engine = AlertEngine(store, improvement_cooldown_hours=72)
        ev = [_event(DriftKind.ssl_changed, Direction.improvement, "invalid", "valid")]
        t0 = utc_now()
        engine.evaluate(ev, make_assessment(), target, now=t0)
        (later,) = engine.evaluate(ev, make_assessment(), target, now=t0 + timedelta(hours=48))
        assert later.reason == "cooldown"

    def test_shared_cooldown_key_merges_to_most_severe(self, store, engine, target):
        events = [
            _event(DriftKind.risk_level_changed, Direction.regression, "low", "high"),
            _event(DriftKind.score_delta, Direction.regression, "20", "55", delta=35),
        ]
        (decision,) = engine.evaluate(events, make_assessment(risk_score=55, risk_level=RiskLevel.high), target)
        assert decision.emitted
        assert decision.candidate.alert_type == AlertType.risk_increased
        assert decision.candidate.severity == Severity.critical
        assert "35 points" in decision.candidate.title

    def test_no_events_no_alerts(self, store, engine, target):
        assert engine.evaluate([], make_assessment(), target) == []
