"""
api/routes/v1/jobs.py -- Cron-facing triggers for the scheduler and the digest.

Routes:
  POST /jobs/scheduler  -- run one scheduler pass over due targets
  POST /jobs/digest     -- send pending alerts as one digest per user

Both require X-Job-Token (see auth/tokens.py) instead of a user JWT. Both
are safe to call repeatedly: schedules only advance on success and alerts
are only sent once.
"""

from fastapi import APIRouter, Depends, Request

from api.models import DigestRunResponse, SchedulerRunResponse
from auth.dependencies import require_job_token

router = APIRouter(dependencies=[Depends(require_job_token)])


@router.post("/jobs/scheduler", response_model=SchedulerRunResponse)
def run_scheduler(request: Request) -> SchedulerRunResponse:
    return SchedulerRunResponse.from_result(request.app.state.scheduler.run_due())


@router.post("/jobs/digest", response_model=DigestRunResponse)
def run_digest(request: Request) -> DigestRunResponse:
    return DigestRunResponse.from_result(request.app.state.dispatcher.dispatch())
