"""
api/routes/v1/targets.py -- Monitored target routes for the PostureWatch REST API.

Routes:
  GET    /targets                          -- list the caller's targets
  POST   /targets                          -- register a URL (no scan)
  GET    /targets/{target_id}              -- target detail with schedule and latest score
  GET    /targets/{target_id}/assessments  -- scan history, newest first
  GET    /targets/{target_id}/drift        -- drift between the two latest completed scans
  GET    /targets/{target_id}/trend        -- risk trend points, oldest first
  PUT    /targets/{target_id}/schedule     -- create or update the recurring scan
  DELETE /targets/{target_id}/schedule     -- stop the recurring scan

Another user's target is reported as 404, not 403, so target ids cannot be
probed.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import (
    AssessmentResponse,
    DriftResponse,
    ErrorDetail,
    ScanRequest,
    ScheduleResponse,
    ScheduleUpdate,
    TargetResponse,
    TrendPointRow,
)
from auth.dependencies import get_current_user
from core.config import get_settings
from core.drift import build_report
from core.errors import InvalidTargetError
from core.models import DriftReport
from core.validation import validate_url
from monitor.models import Target, UserProfile
from monitor.store import MonitorStore

router = APIRouter()


def _owned_target(store: MonitorStore, target_id: int, user: UserProfile) -> Target:
    target = store.get_target(target_id)
    if target is None or target.user_id != user.id:
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message=f"Target {target_id} not found.").model_dump(),
        )
    return target


def _target_response(store: MonitorStore, target: Target) -> TargetResponse:
    latest = store.list_completed_assessments(target.id, limit=1)
    return TargetResponse.from_target(target, store.get_schedule(target.id), latest[0] if latest else None)


@router.get("/targets", response_model=list[TargetResponse])
def list_targets(request: Request, user: UserProfile = Depends(get_current_user)) -> list[TargetResponse]:
    store: MonitorStore = request.app.state.store
    return [_target_response(store, t) for t in store.list_targets(user.id)]


@router.post("/targets", response_model=TargetResponse, status_code=201)
def create_target(
    request: Request,
    body: ScanRequest,
    user: UserProfile = Depends(get_current_user),
) -> TargetResponse:
    """Register a URL for monitoring. Idempotent per (user, normalized URL)."""
    store: MonitorStore = request.app.state.store
    try:
        url = validate_url(body.url)
    except InvalidTargetError as e:
        raise HTTPException(
            status_code=400,
            detail=ErrorDetail(code="invalid_url", message=str(e)).model_dump(),
        )
    return _target_response(store, store.get_or_create_target(user.id, url))


@router.get("/targets/{target_id}", response_model=TargetResponse)
def get_target(request: Request, target_id: int, user: UserProfile = Depends(get_current_user)) -> TargetResponse:
    store: MonitorStore = request.app.state.store
    return _target_response(store, _owned_target(store, target_id, user))


@router.get("/targets/{target_id}/assessments", response_model=list[AssessmentResponse])
def list_assessments(
    request: Request,
    target_id: int,
    limit: int = Query(default=20, ge=1, le=200),
    user: UserProfile = Depends(get_current_user),
) -> list[AssessmentResponse]:
    store: MonitorStore = request.app.state.store
    target = _owned_target(store, target_id, user)
    return [AssessmentResponse.from_assessment(a) for a in store.list_assessments(target.id, limit=limit)]


@router.get("/targets/{target_id}/drift", response_model=DriftResponse)
def get_drift(request: Request, target_id: int, user: UserProfile = Depends(get_current_user)) -> DriftResponse:
    """Recompute drift between the newest completed assessment and its predecessor."""
    store: MonitorStore = request.app.state.store
    target = _owned_target(store, target_id, user)
    recent = store.list_completed_assessments(target.id, limit=2)
    if not recent:
        return DriftResponse.from_report(DriftReport(previous_id=None, current_id=None))
    current = recent[0]
    previous = recent[1] if len(recent) > 1 else None
    return DriftResponse.from_report(build_report(previous, current, get_settings().score_delta_threshold))


@router.get("/targets/{target_id}/trend", response_model=list[TrendPointRow])
def get_trend(
    request: Request,
    target_id: int,
    limit: int = Query(default=90, ge=1, le=365),
    user: UserProfile = Depends(get_current_user),
) -> list[TrendPointRow]:
    store: MonitorStore = request.app.state.store
    target = _owned_target(store, target_id, user)
    return [TrendPointRow.from_point(p) for p in store.list_trend(target.id, limit=limit)]


@router.put("/targets/{target_id}/schedule", response_model=ScheduleResponse)
def put_schedule(
    request: Request,
    target_id: int,
    body: ScheduleUpdate,
    user: UserProfile = Depends(get_current_user),
) -> ScheduleResponse:
    """Create or update the schedule. A new schedule is due immediately."""
    store: MonitorStore = request.app.state.store
    target = _owned_target(store, target_id, user)
    schedule = store.upsert_schedule(target.id, body.frequency, is_active=body.is_active)
    return ScheduleResponse.from_schedule(schedule)


@router.delete("/targets/{target_id}/schedule", status_code=204)
def delete_schedule(request: Request, target_id: int, user: UserProfile = Depends(get_current_user)) -> None:
    """Deactivate the schedule. History and alerts are kept."""
    store: MonitorStore = request.app.state.store
    target = _owned_target(store, target_id, user)
    if not store.deactivate_schedule(target.id):
        raise HTTPException(
            status_code=404,
            detail=ErrorDetail(code="not_found", message="Target has no schedule.").model_dump(),
        )
