"""
auth/tokens.py -- JWT verification and job-token checks.

Security design decisions:
  JWT: python-jose with HS256. Tokens are issued by the identity service and
       signed with SECRET_KEY; they carry user_id and expiry. Verification
       returns None on any failure -- the route layer turns that into a 401.
       create_access_token() exists for the CLI and tests; PostureWatch has
       no login flow of its own.

  Job token: the scheduler and digest endpoints are meant for cron, not
       users. They require X-Job-Token to equal JOB_TOKEN, compared with
       hmac.compare_digest so response time does not leak how many leading
       characters matched. An empty JOB_TOKEN disables the endpoints.

  SECRET_KEY: sourced from core.config.get_settings(), which validates it at
       startup.

Layer rule: no imports from api/, monitor/, or alerts/. Import from core/
is allowed.
"""

from __future__ import annotations

import hmac
import logging
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from core.config import get_settings

logger = logging.getLogger("posturewatch.auth")

_ALGORITHM = "HS256"


def create_access_token(user_id: int, expire_seconds: int = 0) -> str:
    """Encode a signed JWT for user_id. expire_seconds=0 uses TOKEN_EXPIRE_SECONDS."""
    settings = get_settings()
    duration = expire_seconds if expire_seconds > 0 else settings.token_expire_seconds
    payload = {
        "sub": str(user_id),
        "user_id": user_id,
        "exp": datetime.now(timezone.utc) + timedelta(seconds=duration),
    }
    return jwt.encode(payload, settings.secret_key, algorithm=_ALGORITHM)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify a JWT. Returns the payload dict or None on any failure."""
    try:
        payload = jwt.decode(token, get_settings().secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if not isinstance(payload.get("user_id"), int):
        return None
    return payload


def job_token_valid(presented: str | None) -> bool:
    """Constant-time comparison against JOB_TOKEN. Always False when unset."""
    expected = get_settings().job_token
    if not expected or not presented:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))
