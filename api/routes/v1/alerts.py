"""
api/routes/v1/alerts.py -- Alert inbox routes for the PostureWatch REST API.

Routes:
  GET  /alerts                      -- caller's alerts, newest first
  POST /alerts/{alert_id}/read      -- mark read
  POST /alerts/{alert_id}/dismiss   -- dismiss (also drops it from the next digest)

Alerts are never deleted. Both transitions are idempotent.
"""

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from api.models import AlertResponse, ErrorDetail
from auth.dependencies import get_current_user
from monitor.models import UserProfile
from monitor.store import MonitorStore

router = APIRouter()


def _not_found(alert_id: int) -> HTTPException:
    return HTTPException(
        status_code=404,
        detail=ErrorDetail(code="not_found", message=f"Alert {alert_id} not found.").model_dump(),
    )


@router.get("/alerts", response_model=list[AlertResponse])
def list_alerts(
    request: Request,
    unread: bool = False,
    include_dismissed: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    user: UserProfile = Depends(get_current_user),
) -> list[AlertResponse]:
    store: MonitorStore = request.app.state.store
    alerts = store.list_alerts(user.id, unread_only=unread, include_dismissed=include_dismissed, limit=limit)
    return [AlertResponse.from_record(a) for a in alerts]


@router.post("/alerts/{alert_id}/read", response_model=AlertResponse)
def mark_read(request: Request, alert_id: int, user: UserProfile = Depends(get_current_user)) -> AlertResponse:
    store: MonitorStore = request.app.state.store
    if not store.mark_alert_read(alert_id, user.id):
        raise _not_found(alert_id)
    return AlertResponse.from_record(store.get_alert(alert_id))


@router.post("/alerts/{alert_id}/dismiss", response_model=AlertResponse)
def dismiss(request: Request, alert_id: int, user: UserProfile = Depends(get_current_user)) -> AlertResponse:
    store: MonitorStore = request.app.state.store
    if not store.dismiss_alert(alert_id, user.id):
        raise _not_found(alert_id)
    return AlertResponse.from_record(store.get_alert(alert_id))
