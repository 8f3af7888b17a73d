"""
api/routes/v1/scans.py -- Ad-hoc scan route for the PostureWatch REST API.

Routes:
  POST /scans  -- validate a URL, scan it now, return the assessment plus
                  the drift and alert decisions it produced

Rate limiting:
  Scans make outbound requests on the caller's behalf, so the route is
  limited per client address (SCAN_RATE_LIMIT, default 10 per 15 minutes).
  The limit string is read through a callable so deployments can change it
  via settings.

The route is a plain def: the scan blocks on network I/O and FastAPI runs it
in its threadpool.
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from api.limiter import limiter
from api.models import AlertDecisionRow, AssessmentResponse, DriftEventRow, ErrorDetail, ScanRequest, ScanResponse
from auth.dependencies import get_current_user
from core.config import get_settings
from core.errors import InvalidTargetError, LeaseUnavailableError
from core.pipeline import ScanService
from monitor.models import UserProfile

router = APIRouter()


def _scan_rate_limit() -> str:
    return get_settings().scan_rate_limit


@router.post("/scans", response_model=ScanResponse, status_code=201)
@limiter.limit(_scan_rate_limit)
def create_scan(
    request: Request,
    body: ScanRequest,
    user: UserProfile = Depends(get_current_user),
) -> ScanResponse:
    """Scan a URL now and attach the result to the caller's target for it.

    400 when the URL is rejected (never fetched), 409 when a scan of the
    same target is already running, 500 with a safe message when the scan
    itself failed. The failed assessment is still persisted.
    """
    service: ScanService = request.app.state.scan_service
    try:
        outcome = service.scan_url(body.url, user.id)
    except InvalidTargetError as e:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(code="invalid_url", message=str(e)).model_dump(),
        )
    except LeaseUnavailableError as e:
        raise HTTPException(
            status_code=409,
            detail=ErrorDetail(code="scan_in_progress", message=str(e)).model_dump(),
        )

    if not outcome.succeeded:
        raise HTTPException(
            status_code=500,
            detail=ErrorDetail(
                code="scan_failed",
                message=outcome.assessment.error or "Scan could not be completed.",
            ).model_dump(),
        )

    events = outcome.drift.events if outcome.drift is not None else []
    return ScanResponse(
        assessment=AssessmentResponse.from_assessment(outcome.assessment),
        drift=[
            DriftEventRow(
                kind=e.kind.value,
                direction=e.direction.value,
                subject=e.subject,
                before=e.before,
                after=e.after,
                description=e.description,
            )
            for e in events
        ],
        alerts=[
            AlertDecisionRow(
                alert_type=d.candidate.alert_type,
                severity=d.candidate.severity,
                title=d.candidate.title,
                emitted=d.emitted,
                reason=d.reason,
                alert_id=d.alert_id,
            )
            for d in outcome.decisions
        ],
    )
