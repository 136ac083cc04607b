"""
Simple Memory-based Rate Limiter.
State is per process; run behind a shared limiter when scaling out.
"""
import time
from fastapi import Request
from typing import Dict, Tuple

from ajo.errors import AjoError

# In-memory storage: {scope:ip: (timestamp, count)}
_rate_limit_store: Dict[str, Tuple[float, int]] = {}


class RateLimitExceededError(AjoError):
    status_code = 429
    code = "rate_limited"
    retryable = True


def reset_rate_limits() -> None:
    _rate_limit_store.clear()


def rate_limit(requests: int, window: int, scope: str = "default"):
    """
    Dependency for rate limiting.
    Example: Depends(rate_limit(requests=5, window=60, scope="verify"))
    """
    def limiter(request: Request):
        ip = request.client.host if request.client else "unknown"
        key = f"{scope}:{ip}"
        now = time.time()

        if key not in _rate_limit_store:
            _rate_limit_store[key] = (now, 1)
            return True

        last_ts, count = _rate_limit_store[key]

        # Reset window if expired
        if now - last_ts > window:
            _rate_limit_store[key] = (now, 1)
            return True

        if count >= requests:
            raise RateLimitExceededError(
                f"Rate limit exceeded. Try again in {int(window - (now - last_ts))} seconds."
            )

        _rate_limit_store[key] = (last_ts, count + 1)
        return True

    return limiter
