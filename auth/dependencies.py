"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

get_current_user() reads "Authorization: Bearer <jwt>", verifies it, and
loads the UserProfile from the store on app.state. Any failure is a 401
with the standard error envelope.

require_job_token() guards the cron-facing /jobs endpoints.

Layer rule: auth/dependencies.py may import from fastapi (for
Depends/HTTPException/Request) because it is part of the FastAPI dependency
injection system. It reads the store from app.state and never imports api/.
"""

from __future__ import annotations

from fastapi import HTTPException, Request

from auth.tokens import decode_access_token, job_token_valid
from monitor.models import UserProfile


def try_get_current_user(request: Request) -> UserProfile | None:
    """Return the authenticated user, or None. Never raises."""
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    payload = decode_access_token(auth_header[7:])
    if payload is None:
        return None
    return request.app.state.store.get_user(payload["user_id"])


def get_current_user(request: Request) -> UserProfile:
    """Require authentication. Raises HTTP 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(user: UserProfile = Depends(get_current_user)): ...
    """
    user = try_get_current_user(request)
    if user is None:
        raise HTTPException(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )
    return user


def require_job_token(request: Request) -> None:
    """Raise HTTP 403 unless X-Job-Token matches the configured JOB_TOKEN."""
    if not job_token_valid(request.headers.get("X-Job-Token")):
        raise HTTPException(
            status_code=403,
            detail={"code": "forbidden", "message": "A valid job token is required."},
        )
