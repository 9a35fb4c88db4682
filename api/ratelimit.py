import logging
import time
from collections import defaultdict

from fastapi import HTTPException

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0


class RateLimiter:
    """Simple in-memory sliding window rate limiter.

    The limit is supplied per call (the gate's effective per-minute limit for
    the key), so one limiter serves keys on every tier. State lives in this
    process only; deployments with several workers need a shared counter store.
    """

    def __init__(self):
        self._windows: dict[str, list[float]] = defaultdict(list)

    def check(self, client_id: str, limit: int) -> int:
        """Count one request for *client_id*.

        Returns the requests remaining in the current window. Raises
        HTTPException(429) if the limit is already reached.
        """
        now = time.time()
        window_start = now - WINDOW_SECONDS

        # Clean old entries
        timestamps = self._windows[client_id]
        self._windows[client_id] = [t for t in timestamps if t > window_start]

        if len(self._windows[client_id]) >= limit:
            logger.info(f"Rate limit hit for {client_id} ({limit}/min)")
            raise HTTPException(
                status_code=429,
                detail={
                    "error": "rate_limited",
                    "message": f"Rate limit exceeded ({limit} requests/minute)",
                },
                headers={
                    "Retry-After": "60",
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                },
            )

        self._windows[client_id].append(now)
        return limit - len(self._windows[client_id])

    def reset(self) -> None:
        self._windows.clear()


rate_limiter = RateLimiter()
