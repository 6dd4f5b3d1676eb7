# reservations_service/rate_limiter.py
import time
from typing import Any, Dict, List

from fastapi import Depends, HTTPException, status

from .auth import get_current_user_claims
from .config import RATE_LIMIT_MAX_REQUESTS, RATE_LIMIT_WINDOW_SECONDS

_user_request_log: Dict[int, List[float]] = {}


def reset_rate_limits() -> None:
    _user_request_log.clear()


def write_rate_limiter(claims: Dict[str, Any] = Depends(get_current_user_claims)):
    """
    Rate limit reservation and check-in writes per authenticated user.

    Sliding window of RATE_LIMIT_WINDOW_SECONDS holding at most
    RATE_LIMIT_MAX_REQUESTS calls; the next call gets HTTP 429.
    """
    user_id = claims["user_id"]
    now = time.time()
    window_start = now - RATE_LIMIT_WINDOW_SECONDS

    timestamps = [ts for ts in _user_request_log.get(user_id, []) if ts >= window_start]

    if len(timestamps) >= RATE_LIMIT_MAX_REQUESTS:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many reservation operations in a short time",
        )

    timestamps.append(now)
    _user_request_log[user_id] = timestamps
