"""
core/pipeline.py -- Fetch -> fingerprint -> score, and the stateful scan run around it.

assess_url() is pure apart from the network reads: no persistence, no
print statements. Both the CLI (main.py) and the REST API reuse it.

ScanService wraps assess_url() with the persistent side: target lookup, the
per-target lease, the assessment row lifecycle, the risk trend point, drift
detection against the previous completed assessment, and alert evaluation.
It receives the store and the alert engine from the caller, so this module
does not import monitor/ or alerts/.
"""

import logging
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterator, Optional

from core.config import Settings, get_settings
from core.drift import build_report
from core.errors import LeaseUnavailableError
from core.fetcher import fetch_target
from core.fingerprint import DEFAULT_RULES, FingerprintRules, fingerprint, server_banner
from core.models import Assessment, DriftReport, FetchResult, ScanStatus
from core.remediation import build_fixes
from core.scoring import DEFAULT_SCORING, ScoringTable, calculate_risk_breakdown, headers_score, split_headers
from core.validation import domain_of, validate_url

logger = logging.getLogger("posturewatch.scan")

SCAN_FAILED_MESSAGE = "Scan could not be completed."

Fetch = Callable[[str, Settings], FetchResult]


def _ordered(headers: Optional[frozenset], checklist: tuple[str, ...]) -> list[str]:
    if not headers:
        return []
    return [h for h in checklist if h in headers]


def assess_url(
    url: str,
    settings: Optional[Settings] = None,
    fetch: Optional[Fetch] = None,
    rules: FingerprintRules = DEFAULT_RULES,
    table: ScoringTable = DEFAULT_SCORING,
) -> Assessment:
    """Probe a pre-validated URL and return a completed, unsaved Assessment.

    Network problems degrade the result instead of raising. When the header
    probe failed, present/missing stay None and contribute nothing to the
    score.
    """
    settings = settings or get_settings()
    fetch = fetch or fetch_target
    result = fetch(url, settings)

    fp = fingerprint(result.fingerprint_headers or result.headers, result.body, rules)
    banner = server_banner(result.headers, rules) or fp.server_info
    present, missing = split_headers(result.headers, table.checklist)

    breakdown = calculate_risk_breakdown(
        ssl_valid=result.ssl_valid,
        ssl_days_left=result.ssl_days_left,
        missing_headers=_ordered(missing, table.checklist),
        present_headers=_ordered(present, table.checklist),
        detected_cms=fp.cms,
        server_info=banner,
        table=table,
    )
    fixes = build_fixes(
        _ordered(missing, table.checklist),
        result.ssl_valid,
        result.ssl_days_left,
        fp.cms,
        banner,
    )

    return Assessment(
        target_url=url,
        status=ScanStatus.completed,
        ssl_valid=result.ssl_valid,
        ssl_days_left=result.ssl_days_left,
        ssl_issuer=result.ssl_issuer,
        ssl_expires_at=result.ssl_expires_at,
        present_headers=present,
        missing_headers=missing,
        detected_technologies=fp.technologies,
        detected_cms=fp.cms,
        server_info=banner,
        risk_score=breakdown.total_score,
        risk_level=breakdown.level,
        headers_score=headers_score(present or (), table.checklist),
        factors=breakdown.factors,
        summary=breakdown.summary,
        recommended_fixes=fixes,
        scan_duration_ms=result.elapsed_ms,
    )


@dataclass
class ScanOutcome:
    """Result of one ScanService run. decisions holds AlertDecision values."""

    assessment: Assessment
    drift: Optional[DriftReport] = None
    decisions: list = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.assessment.status == ScanStatus.completed


class ScanService:
    """Run the full per-target chain under a lease.

    store is a monitor.store.MonitorStore; alert_engine an
    alerts.engine.AlertEngine. One in-flight run per target: a second
    caller gets LeaseUnavailableError instead of racing the first.
    """

    def __init__(self, store, alert_engine, settings: Optional[Settings] = None, fetch: Optional[Fetch] = None) -> None:
        self.store = store
        self.alert_engine = alert_engine
        self.settings = settings or get_settings()
        self.fetch = fetch

    def scan_url(self, raw_url: object, user_id: int, now: Optional[datetime] = None) -> ScanOutcome:
        """Validate, resolve the user's target, and run it.

        Raises InvalidTargetError before any network access when the URL is
        rejected.
        """
        url = validate_url(raw_url)
        target = self.store.get_or_create_target(user_id, url)
        return self.run_target(target, now=now)

    @contextmanager
    def lease(self, target) -> Iterator[None]:
        """Hold the per-target lease for the duration of the block.

        Raises LeaseUnavailableError when another run holds it. Callers that
        must check or update state atomically with the scan (the scheduler's
        due check and advance) do so inside the block.
        """
        owner = uuid.uuid4().hex
        if not self.store.acquire_lease(target.id, owner, self.settings.scan_lease_seconds):
            raise LeaseUnavailableError("A scan for this target is already in progress.")
        try:
            yield
        finally:
            self.store.release_lease(target.id, owner)

    def run_target(self, target, now: Optional[datetime] = None) -> ScanOutcome:
        with self.lease(target):
            return self.run_locked(target, now)

    def run_locked(self, target, now: Optional[datetime]) -> ScanOutcome:
        """Run the chain for a target whose lease the caller already holds."""
        domain = domain_of(target.url)
        assessment_id = self.store.create_assessment(target)
        start = time.perf_counter()
        try:
            result = assess_url(target.url, self.settings, fetch=self.fetch)
            self.store.complete_assessment(assessment_id, result)
            assessment = self.store.get_assessment(assessment_id)
            self.store.add_trend_point(assessment)
        except Exception:
            logger.exception("Scan failed for %s (assessment %s)", domain, assessment_id)
            self.store.fail_assessment(
                assessment_id, SCAN_FAILED_MESSAGE, int((time.perf_counter() - start) * 1000)
            )
            return ScanOutcome(assessment=self.store.get_assessment(assessment_id))

        logger.info(
            "Scanned %s: score=%d level=%s in %dms",
            domain,
            assessment.risk_score,
            assessment.risk_level.value,
            assessment.scan_duration_ms,
        )

        outcome = ScanOutcome(assessment=assessment)
        try:
            self._evaluate_pending(target, assessment_id, outcome, now)
        except Exception:
            # The assessment itself is complete; unevaluated rows are picked
            # up again on the next run for this target.
            logger.exception("Alert evaluation failed for %s", domain)
        return outcome

    def _evaluate_pending(self, target, current_id: int, outcome: ScanOutcome, now: Optional[datetime]) -> None:
        """Run drift + alerts for every completed assessment not yet evaluated, oldest first."""
        for pending in self.store.list_unevaluated_assessments(target.id):
            previous = self.store.get_previous_assessment(pending)
            report = build_report(previous, pending, self.settings.score_delta_threshold)
            decisions = self.alert_engine.evaluate(report.events, pending, target, now=now)
            self.store.mark_alerts_evaluated(pending.id)
            if pending.id == current_id:
                outcome.drift = report
                outcome.decisions = decisions
