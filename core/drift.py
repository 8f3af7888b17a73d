"""
core/drift.py -- Change detection between two consecutive assessments.

detect_drift() is pure: given the previous and current Assessment of the same
target it returns a list of typed DriftEvents. A first scan has no previous
assessment and therefore no drift.

Each comparison is independent, so one pair can yield several events:
  ssl-changed          validity flipped
  risk-level-changed   categorical level moved (rank decides direction)
  score-delta          |new - old| >= threshold (smaller moves are noise)
  header-added         missing -> present (improvement)
  header-removed       present -> missing (regression)
  tech-added           newly detected (neutral)
  tech-removed         no longer detected (neutral; may be hidden, not gone)

Header events are only produced when both assessments actually have header
data. An "unavailable" probe is not evidence that headers were removed.
"""

from typing import Optional

from core.models import Assessment, Direction, DriftEvent, DriftKind, DriftReport

DEFAULT_SCORE_DELTA_THRESHOLD = 10


def _valid_label(valid: bool) -> str:
    return "valid" if valid else "invalid"


def _ssl_events(prev: Assessment, curr: Assessment) -> list[DriftEvent]:
    if prev.ssl_valid == curr.ssl_valid:
        return []
    improved = curr.ssl_valid
    return [
        DriftEvent(
            kind=DriftKind.ssl_changed,
            direction=Direction.improvement if improved else Direction.regression,
            before=_valid_label(prev.ssl_valid),
            after=_valid_label(curr.ssl_valid),
            description=(
                "TLS is valid again; traffic is encrypted in transit."
                if improved
                else "TLS became invalid; traffic is exposed to interception."
            ),
        )
    ]


def _risk_level_events(prev: Assessment, curr: Assessment) -> list[DriftEvent]:
    if prev.risk_level == curr.risk_level:
        return []
    improved = curr.risk_level.rank < prev.risk_level.rank
    verb = "improved" if improved else "worsened"
    return [
        DriftEvent(
            kind=DriftKind.risk_level_changed,
            direction=Direction.improvement if improved else Direction.regression,
            before=prev.risk_level.value,
            after=curr.risk_level.value,
            description=f"Risk level {verb} from {prev.risk_level.value} to {curr.risk_level.value}.",
        )
    ]


def _score_events(prev: Assessment, curr: Assessment, threshold: int) -> list[DriftEvent]:
    delta = curr.risk_score - prev.risk_score
    if abs(delta) < threshold:
        return []
    improved = delta < 0
    return [
        DriftEvent(
            kind=DriftKind.score_delta,
            direction=Direction.improvement if improved else Direction.regression,
            before=str(prev.risk_score),
            after=str(curr.risk_score),
            delta=delta,
            description=(
                f"Risk score decreased by {-delta} points."
                if improved
                else f"Risk score increased by {delta} points."
            ),
        )
    ]


def _header_events(prev: Assessment, curr: Assessment) -> list[DriftEvent]:
    if not (prev.headers_available and curr.headers_available):
        return []
    added = sorted(prev.missing_headers & curr.present_headers)
    removed = sorted(prev.present_headers & curr.missing_headers)
    events = [
        DriftEvent(
            kind=DriftKind.header_added,
            direction=Direction.improvement,
            before="missing",
            after="present",
            subject=h,
            description=f"Security header {h} is now configured.",
        )
        for h in added
    ]
    events.extend(
        DriftEvent(
            kind=DriftKind.header_removed,
            direction=Direction.regression,
            before="present",
            after="missing",
            subject=h,
            description=f"Security header {h} was removed. This may indicate a server misconfiguration.",
        )
        for h in removed
    )
    return events


def _tech_events(prev: Assessment, curr: Assessment) -> list[DriftEvent]:
    before = set(prev.detected_technologies)
    after = set(curr.detected_technologies)
    events = [
        DriftEvent(
            kind=DriftKind.tech_added,
            direction=Direction.neutral,
            before=None,
            after=t,
            subject=t,
            description=f"{t} is now detectable. New technologies may introduce new attack surface.",
        )
        for t in curr.detected_technologies
        if t not in before
    ]
    events.extend(
        DriftEvent(
            kind=DriftKind.tech_removed,
            direction=Direction.neutral,
            before=t,
            after=None,
            subject=t,
            description=f"{t} is no longer detected. It may have been removed or it may now be hidden.",
        )
        for t in prev.detected_technologies
        if t not in after
    )
    return events


def detect_drift(
    previous: Optional[Assessment],
    current: Assessment,
    score_delta_threshold: int = DEFAULT_SCORE_DELTA_THRESHOLD,
) -> list[DriftEvent]:
    """Return every drift event between two consecutive assessments.

    previous=None (first scan) yields an empty list.
    """
    if previous is None:
        return []
    return [
        *_ssl_events(previous, current),
        *_risk_level_events(previous, current),
        *_score_events(previous, current, score_delta_threshold),
        *_header_events(previous, current),
        *_tech_events(previous, current),
    ]


def build_report(
    previous: Optional[Assessment],
    current: Assessment,
    score_delta_threshold: int = DEFAULT_SCORE_DELTA_THRESHOLD,
) -> DriftReport:
    return DriftReport(
        previous_id=previous.id if previous is not None else None,
        current_id=current.id,
        events=detect_drift(previous, current, score_delta_threshold),
    )
