"""
alerts/digest.py -- Batch unsent alerts into one message per user.

A dispatch pass reads every AlertRecord with sent = false and
is_dismissed = false, groups it by user and then by target domain, renders
an HTML and a plain-text body with jinja2, and hands each message to the
Notifier. Records are marked sent only after the notifier accepted the
message; a DeliveryError leaves them pending for the next pass.

Users who switched email notifications off have their pending records
marked sent without delivery, so they do not pile up. Preferences are
re-applied at send time: alerts the user no longer wants are settled the
same way, and a user left with nothing gets no message.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from alerts.engine import preference_gate
from alerts.notifier import DigestMessage, Notifier
from core.clock import to_iso, utc_now
from core.errors import DeliveryError
from core.models import Severity
from core.validation import domain_of
from monitor.models import AlertPreference, AlertRecord, AlertType, UserProfile, is_improvement, is_informational

logger = logging.getLogger("posturewatch.digest")

_env = Environment(
    loader=FileSystemLoader(str(Path(__file__).parent / "templates")),
    autoescape=select_autoescape(["html"]),
    trim_blocks=True,
    lstrip_blocks=True,
)


@dataclass
class DigestResult:
    emails_dispatched: int = 0
    alerts_sent: int = 0
    users_skipped: int = 0
    delivery_failures: int = 0


@dataclass
class DomainSection:
    domain: str
    regressions: list[AlertRecord]
    improvements: list[AlertRecord]
    notices: list[AlertRecord]


def group_by_domain(alerts: list[AlertRecord]) -> list[DomainSection]:
    """Split one user's alerts into per-domain sections, preserving first-seen order."""
    buckets: "OrderedDict[str, list[AlertRecord]]" = OrderedDict()
    for alert in alerts:
        buckets.setdefault(domain_of(alert.target_url) or "unknown", []).append(alert)
    return [
        DomainSection(
            domain=domain,
            regressions=[a for a in items if not is_improvement(a.alert_type) and not is_informational(a.alert_type)],
            improvements=[a for a in items if is_improvement(a.alert_type)],
            notices=[a for a in items if is_informational(a.alert_type)],
        )
        for domain, items in buckets.items()
    ]


def highest_severity(alerts: list[AlertRecord]) -> Severity:
    return max((Severity(a.severity) for a in alerts), key=lambda s: s.rank, default=Severity.low)


def digest_subject(alerts: list[AlertRecord]) -> str:
    if len(alerts) == 1:
        return f"[{Severity(alerts[0].severity).value.upper()}] {alerts[0].title}"
    return f"[{highest_severity(alerts).value.upper()}] {len(alerts)} security alerts for your domains"


def render_digest(user: UserProfile, alerts: list[AlertRecord], dashboard_url: str) -> DigestMessage:
    sections = group_by_domain(alerts)
    context = {
        "name": user.full_name or user.email,
        "sections": sections,
        "total": len(alerts),
        "dashboard_url": dashboard_url,
    }
    return DigestMessage(
        to=user.email,
        subject=digest_subject(alerts),
        text_body=_env.get_template("digest.txt").render(**context),
        html_body=_env.get_template("digest.html").render(**context),
        alert_ids=[a.id for a in alerts],
    )


class DigestDispatcher:
    def __init__(self, store, notifier: Notifier, dashboard_url: str = "") -> None:
        self.store = store
        self.notifier = notifier
        self.dashboard_url = dashboard_url

    def filter_by_preferences(self, user_id: int, alerts: list[AlertRecord]) -> tuple[list[AlertRecord], list[AlertRecord]]:
        """Split pending alerts into (deliverable, filtered) by the user's current preferences.

        Preferences may have changed since the alert was created; the send
        decision uses the ones in force now.
        """
        prefs: dict[AlertType, AlertPreference] = {}
        allowed: list[AlertRecord] = []
        filtered: list[AlertRecord] = []
        for alert in alerts:
            alert_type = AlertType(alert.alert_type)
            if alert_type not in prefs:
                prefs[alert_type] = self.store.get_preference(user_id, alert_type)
            if preference_gate(alert_type, Severity(alert.severity), prefs[alert_type]) is None:
                allowed.append(alert)
            else:
                filtered.append(alert)
        return allowed, filtered

    def _dispatch_user(self, user_id: int, alerts: list[AlertRecord], sent_at: str, result: DigestResult) -> None:
        user = self.store.get_user(user_id)
        if user is None or not user.email_notifications:
            self.store.mark_alerts_sent([a.id for a in alerts], sent_at)
            result.users_skipped += 1
            return

        allowed, filtered = self.filter_by_preferences(user_id, alerts)
        if filtered:
            # Filtered records are settled without delivery, like a muted user's.
            self.store.mark_alerts_sent([a.id for a in filtered], sent_at)
        if not allowed:
            result.users_skipped += 1
            return

        self.notifier.send(render_digest(user, allowed, self.dashboard_url))
        result.alerts_sent += self.store.mark_alerts_sent([a.id for a in allowed], sent_at)
        result.emails_dispatched += 1

    def dispatch(self, now: Optional[datetime] = None) -> DigestResult:
        """Send one digest per user with pending alerts. Safe to call repeatedly.

        Each user is handled on its own: a failure for one user leaves that
        user's alerts pending and moves on to the next.
        """
        sent_at = to_iso(now or utc_now())
        result = DigestResult()

        by_user: "OrderedDict[int, list[AlertRecord]]" = OrderedDict()
        for alert in self.store.list_pending_alerts():
            by_user.setdefault(alert.user_id, []).append(alert)

        for user_id, alerts in by_user.items():
            try:
                self._dispatch_user(user_id, alerts, sent_at, result)
            except DeliveryError as e:
                logger.error("Digest delivery failed for user %s: %s", user_id, e)
                result.delivery_failures += 1
            except Exception:
                logger.exception("Digest failed for user %s", user_id)
                result.delivery_failures += 1

        if by_user:
            logger.info(
                "Digest pass: %d sent, %d skipped, %d failed",
                result.emails_dispatched,
                result.users_skipped,
                result.delivery_failures,
            )
        return result
