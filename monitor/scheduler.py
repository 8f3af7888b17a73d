"""
monitor/scheduler.py -- Run due scheduled scans on a bounded worker pool.

One pass (run_due) selects every active schedule whose next_due_at is at or
before `now`, runs the scan chain for each target concurrently, and
advances the schedule only when the scan completed. A failing target is
recorded and never cancels its siblings.

next_due_at moves to now + frequency rather than previous_due + frequency,
so a scheduler that was down for a week runs each target once instead of
replaying every missed slot.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from core.clock import utc_now
from core.errors import LeaseUnavailableError
from core.pipeline import SCAN_FAILED_MESSAGE, ScanOutcome, ScanService
from core.validation import domain_of
from monitor.models import Schedule, Target

logger = logging.getLogger("posturewatch.scheduler")


@dataclass
class SchedulerRunResult:
    due: int = 0
    succeeded: int = 0
    skipped: int = 0
    failures: list[dict] = field(default_factory=list)


class Scheduler:
    def __init__(self, store, scan_service: ScanService, max_workers: int = 4) -> None:
        self.store = store
        self.scan_service = scan_service
        self.max_workers = max_workers

    def _run_one(self, schedule: Schedule, target: Target, now: datetime) -> str:
        """Run one scheduled target. Returns "ok", "skipped" or a safe error string.

        The due check, the scan and the schedule update all happen under the
        target lease. A pass working from a stale due list finds the slot
        already advanced by the pass that ran it, and skips.
        """
        try:
            with self.scan_service.lease(target):
                if not self.store.schedule_is_due(schedule.id, now):
                    logger.info("Schedule %s already handled, skipping", schedule.id)
                    return "skipped"
                outcome = self.scan_service.run_locked(target, now)
                return self._record(schedule, outcome, now)
        except LeaseUnavailableError:
            return "skipped"
        except Exception:
            logger.exception("Scheduled scan crashed for %s", domain_of(target.url))
            self.store.mark_schedule_failed(schedule.id, now, SCAN_FAILED_MESSAGE)
            return SCAN_FAILED_MESSAGE

    def _record(self, schedule: Schedule, outcome: ScanOutcome, now: datetime) -> str:
        if not outcome.succeeded:
            error = outcome.assessment.error or SCAN_FAILED_MESSAGE
            self.store.mark_schedule_failed(schedule.id, now, error)
            return error

        self.store.mark_schedule_run(
            schedule.id, now, now + schedule.frequency.interval, outcome.assessment.id
        )
        return "ok"

    def run_due(self, now: Optional[datetime] = None) -> SchedulerRunResult:
        now = now or utc_now()
        due = self.store.list_due_schedules(now)
        result = SchedulerRunResult(due=len(due))
        if not due:
            return result

        logger.info("Scheduler pass: %d targets due", len(due))
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="scan") as pool:
            futures = {pool.submit(self._run_one, s, t, now): (s, t) for s, t in due}
            for future in as_completed(futures):
                schedule, target = futures[future]
                status = future.result()
                if status == "ok":
                    result.succeeded += 1
                elif status == "skipped":
                    result.skipped += 1
                else:
                    result.failures.append(
                        {"schedule_id": schedule.id, "target_url": target.url, "error": status}
                    )

        logger.info(
            "Scheduler pass done: %d succeeded, %d skipped, %d failed",
            result.succeeded,
            result.skipped,
            len(result.failures),
        )
        return result
