"""Tests for alerts/digest.py and alerts/notifier.py -- batching and delivery of pending alerts.

Covers:
- one digest per user, grouped by domain with regression/improvement/notice sections
- a second dispatch pass sends nothing (records are marked sent)
- users with notifications off are skipped and their records still marked sent
- DeliveryError leaves records unsent for the next pass
- preferences re-applied at send time; one user's failure does not stop the rest
- subject lines and HTML escaping
"""

import smtplib
from unittest.mock import MagicMock, patch

import pytest

from alerts.digest import DigestDispatcher, digest_subject, group_by_domain, render_digest
from alerts.notifier import DigestMessage, LogNotifier, SmtpNotifier, notifier_from_settings
from core.config import Settings
from core.errors import DeliveryError
from core.models import Severity
from monitor.models import AlertPreference, AlertRecord, AlertType, UserProfile


class _FailingNotifier:
    def __init__(self):
        self.attempts = 0

    def send(self, message):
        self.attempts += 1
        raise DeliveryError("SMTP delivery failed: SMTPServerDisconnected")


class _FlakyNotifier(LogNotifier):
    """Raises a raw socket error for one recipient, delivers the rest."""

    def __init__(self, fail_for):
        super().__init__()
        self.fail_for = fail_for

    def send(self, message):
        if message.to == self.fail_for:
            raise ConnectionResetError("connection reset by peer")
        super().send(message)


def _record(user_id, target_id, alert_type=AlertType.config_drift, severity=Severity.high, **overrides):
    fields = dict(
        user_id=user_id,
        target_id=target_id,
        alert_type=alert_type,
        severity=severity,
        title=f"{alert_type.value} on example.com",
        description="Something changed.",
        target_url="https://example.com/",
    )
    fields.update(overrides)
    return AlertRecord(**fields)


@pytest.fixture
def target(store, user_id):
    return store.get_or_create_target(user_id, "https://example.com/")


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


class TestDigestHelpers:
    def test_single_alert_subject(self):
        alerts = [_record(1, 1, AlertType.ssl_invalid, Severity.critical, title="SSL certificate invalid on example.com")]
        assert digest_subject(alerts) == "[CRITICAL] SSL certificate invalid on example.com"

    def test_multi_alert_subject_uses_highest_severity(self):
        alerts = [
            _record(1, 1, AlertType.headers_improved, Severity.low),
            _record(1, 1, AlertType.config_drift, Severity.high),
            _record(1, 1, AlertType.new_technology, Severity.low),
        ]
        assert digest_subject(alerts) == "[HIGH] 3 security alerts for your domains"

    def test_grouping_by_domain_and_section(self):
        alerts = [
            _record(1, 1, AlertType.config_drift),
            _record(1, 2, AlertType.headers_improved, Severity.low, target_url="https://shop.example.net/"),
            _record(1, 1, AlertType.new_technology, Severity.low),
            _record(1, 1, AlertType.ssl_restored, Severity.low),
        ]
        sections = group_by_domain(alerts)
        assert [s.domain for s in sections] == ["example.com", "shop.example.net"]
        first = sections[0]
        assert [a.alert_type for a in first.regressions] == [AlertType.config_drift]
        assert [a.alert_type for a in first.improvements] == [AlertType.ssl_restored]
        assert [a.alert_type for a in first.notices] == [AlertType.new_technology]

    def test_render_escapes_html_only(self):
        user = UserProfile(email="a@example.com", full_name="Alice", id=1)
        alerts = [_record(1, 1, title="<script>alert(1)</script>", id=9)]
        message = render_digest(user, alerts, "https://dash.example.com/")
        assert "<script>" not in message.html_body
        assert "&lt;script&gt;" in message.html_body
        assert "<script>alert(1)</script>" in message.text_body
        assert "Regressions" in message.text_body
        assert "https://dash.example.com/" in message.text_body
        assert message.alert_ids == [9]
        assert message.to == "a@example.com"


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class TestDigestDispatcher:
    def test_dispatch_sends_once(self, store, user_id, target):
        for t in (AlertType.ssl_invalid, AlertType.config_drift):
            store.create_alert(_record(user_id, target.id, t))
        notifier = LogNotifier()
        dispatcher = DigestDispatcher(store, notifier)

        first = dispatcher.dispatch()
        second = dispatcher.dispatch()

        assert (first.emails_dispatched, first.alerts_sent) == (1, 2)
        assert (second.emails_dispatched, second.alerts_sent) == (0, 0)
        assert len(notifier.sent) == 1
        assert notifier.sent[0].subject.startswith("[HIGH] 2 security alerts")
        assert store.list_pending_alerts() == []

    def test_one_digest_per_user(self, store, user_id, target):
        other = store.create_user(UserProfile(email="b@example.com"))
        other_target = store.get_or_create_target(other, "https://example.org/")
        store.create_alert(_record(user_id, target.id))
        store.create_alert(_record(other, other_target.id, target_url=other_target.url))
        notifier = LogNotifier()

        result = DigestDispatcher(store, notifier).dispatch()

        assert result.emails_dispatched == 2
        assert sorted(m.to for m in notifier.sent) == ["b@example.com", "owner@example.com"]

    def test_notifications_off_marks_sent_without_delivery(self, store, user_id, target):
        store.set_email_notifications(user_id, False)
        aid = store.create_alert(_record(user_id, target.id))
        notifier = LogNotifier()

        result = DigestDispatcher(store, notifier).dispatch()

        assert result.users_skipped == 1
        assert result.emails_dispatched == 0
        assert notifier.sent == []
        assert store.get_alert(aid).sent is True

    def test_delivery_failure_leaves_alerts_pending(self, store, user_id, target):
        aid = store.create_alert(_record(user_id, target.id))
        failing = _FailingNotifier()

        result = DigestDispatcher(store, failing).dispatch()

        assert result.delivery_failures == 1
        assert result.emails_dispatched == 0
        assert store.get_alert(aid).sent is False

        retry = DigestDispatcher(store, LogNotifier()).dispatch()
        assert retry.alerts_sent == 1

    def test_dismissed_alerts_are_not_sent(self, store, user_id, target):
        aid = store.create_alert(_record(user_id, target.id))
        store.dismiss_alert(aid, user_id)
        notifier = LogNotifier()
        assert DigestDispatcher(store, notifier).dispatch().emails_dispatched == 0
        assert notifier.sent == []


    def test_disabled_type_is_settled_without_a_message(self, store, user_id, target):
        aid = store.create_alert(_record(user_id, target.id, AlertType.ssl_invalid, Severity.critical))
        store.set_preference(AlertPreference(user_id, AlertType.ssl_invalid, enabled=False))
        notifier = LogNotifier()

        result = DigestDispatcher(store, notifier).dispatch()

        assert notifier.sent == []
        assert result.emails_dispatched == 0
        assert result.users_skipped == 1
        assert store.get_alert(aid).sent is True

    def test_preferences_filter_per_alert_at_send_time(self, store, user_id, target):
        store.set_preference(AlertPreference(user_id, AlertType.risk_increased, min_severity=Severity.critical))
        store.set_preference(AlertPreference(user_id, AlertType.risk_decreased, min_severity=Severity.critical))
        below = store.create_alert(_record(user_id, target.id, AlertType.risk_increased, Severity.high))
        kept = store.create_alert(_record(user_id, target.id, AlertType.config_drift, Severity.high))
        improvement = store.create_alert(_record(user_id, target.id, AlertType.risk_decreased, Severity.low))
        notifier = LogNotifier()

        result = DigestDispatcher(store, notifier).dispatch()

        assert result.emails_dispatched == 1
        assert result.alerts_sent == 2
        assert sorted(notifier.sent[0].alert_ids) == sorted([kept, improvement])
        assert store.list_pending_alerts() == []
        assert store.get_alert(below).sent is True

    def test_unexpected_error_for_one_user_does_not_stop_others(self, store, user_id, target):
        other = store.create_user(UserProfile(email="b@example.com"))
        other_target = store.get_or_create_target(other, "https://example.org/")
        first = store.create_alert(_record(user_id, target.id))
        store.create_alert(_record(other, other_target.id, target_url=other_target.url))
        notifier = _FlakyNotifier(fail_for="owner@example.com")

        result = DigestDispatcher(store, notifier).dispatch()

        assert result.delivery_failures == 1
        assert result.emails_dispatched == 1
        assert [m.to for m in notifier.sent] == ["b@example.com"]
        assert store.get_alert(first).sent is False
    def test_nothing_pending(self, store):
        result = DigestDispatcher(store, LogNotifier()).dispatch()
        assert result.emails_dispatched == 0
        assert result.users_skipped == 0


# ---------------------------------------------------------------------------
# Notifiers
# ---------------------------------------------------------------------------


class TestNotifiers:
    def _message(self):
        return DigestMessage(to="a@example.com", subject="[HIGH] x", text_body="t", html_body="<p>h</p>", alert_ids=[1])

    def test_smtp_send(self):
        notifier = SmtpNotifier("smtp.example.com", 587, "user", "pw", "alerts@example.com")
        server = MagicMock()
        with patch("alerts.notifier.smtplib.SMTP") as smtp:
            smtp.return_value.__enter__.return_value = server
            notifier.send(self._message())
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("user", "pw")
        sent = server.send_message.call_args[0][0]
        assert sent["Subject"] == "[HIGH] x"
        assert sent["To"] == "a@example.com"

    def test_smtp_failure_raises_delivery_error(self):
        notifier = SmtpNotifier("smtp.example.com")
        with patch("alerts.notifier.smtplib.SMTP", side_effect=smtplib.SMTPConnectError(421, "busy")):
            with pytest.raises(DeliveryError):
                notifier.send(self._message())

    def test_factory_picks_transport(self):
        assert isinstance(notifier_from_settings(Settings(debug=True)), LogNotifier)
        smtp = notifier_from_settings(Settings(debug=True, smtp_host="smtp.example.com"))
        assert isinstance(smtp, SmtpNotifier)
        assert smtp.host == "smtp.example.com"
