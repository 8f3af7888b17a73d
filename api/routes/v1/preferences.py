"""
api/routes/v1/preferences.py -- Per alert-type notification preferences.

Routes:
  GET /preferences                 -- every alert type, defaults filled in
  GET /preferences/{alert_type}    -- one alert type
  PUT /preferences/{alert_type}    -- set enabled / min_severity / cooldown_hours

An alert type with no stored row behaves as enabled, min severity medium,
24 hour cooldown; responses flag those entries with is_default.
"""

from fastapi import APIRouter, Depends, Request

from api.models import PreferenceResponse, PreferenceUpdate
from auth.dependencies import get_current_user
from monitor.models import AlertPreference, AlertType, UserProfile
from monitor.store import MonitorStore

router = APIRouter()


@router.get("/preferences", response_model=list[PreferenceResponse])
def list_preferences(request: Request, user: UserProfile = Depends(get_current_user)) -> list[PreferenceResponse]:
    store: MonitorStore = request.app.state.store
    return [PreferenceResponse.from_preference(p) for p in store.list_preferences(user.id)]


@router.get("/preferences/{alert_type}", response_model=PreferenceResponse)
def get_preference(
    request: Request, alert_type: AlertType, user: UserProfile = Depends(get_current_user)
) -> PreferenceResponse:
    store: MonitorStore = request.app.state.store
    return PreferenceResponse.from_preference(store.get_preference(user.id, alert_type))


@router.put("/preferences/{alert_type}", response_model=PreferenceResponse)
def put_preference(
    request: Request,
    alert_type: AlertType,
    body: PreferenceUpdate,
    user: UserProfile = Depends(get_current_user),
) -> PreferenceResponse:
    store: MonitorStore = request.app.state.store
    saved = store.set_preference(
        AlertPreference(
            user_id=user.id,
            alert_type=alert_type,
            enabled=body.enabled,
            min_severity=body.min_severity,
            cooldown_hours=body.cooldown_hours,
        )
    )
    return PreferenceResponse.from_preference(saved)
