"""Per-user, per-endpoint request quota backed by the rate_limit_events table."""

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from achei import storage
from achei.config import env_int

logger = logging.getLogger("achei_leads")

DEFAULT_MAX_REQUESTS = 60
DEFAULT_WINDOW_SECONDS = 60


class RateLimitExceeded(RuntimeError):
    def __init__(self, message: str = "Limite de requisições excedido. Aguarde um momento.", retry_after: int = 60):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    def __init__(self, max_requests: Optional[int] = None, window_seconds: Optional[int] = None) -> None:
        self._lock = threading.Lock()
        self.max_requests = max_requests
        self.window_seconds = window_seconds

    @property
    def limit(self) -> int:
        if self.max_requests is not None:
            return self.max_requests
        return env_int("RATE_LIMIT_MAX_REQUESTS", DEFAULT_MAX_REQUESTS)

    @property
    def window(self) -> int:
        if self.window_seconds is not None:
            return self.window_seconds
        return max(1, env_int("RATE_LIMIT_WINDOW_SECONDS", DEFAULT_WINDOW_SECONDS))

    def take(self, user_id: str, endpoint: str) -> bool:
        """Record one call and return False when the quota for the window is spent."""
        now = time.time()
        since = now - self.window
        with self._lock:
            storage.purge_rate_events(since, user_id, endpoint)
            used = storage.count_rate_events(user_id, endpoint, since)
            if used >= self.limit:
                return False
            storage.insert_rate_event(user_id, endpoint, now)
        return True

    def check(self, user_id: str, endpoint: str) -> None:
        if self.take(user_id, endpoint):
            return
        logger.warning(
            "Limite de requisicoes atingido",
            extra={"event_type": "rate_limit", "endpoint": endpoint, "limit": self.limit},
        )
        storage.log_event("warning", "rate_limited", {"user_id": user_id, "endpoint": endpoint})
        raise RateLimitExceeded(retry_after=self.window)


_limiter = RateLimiter()


def get_limiter() -> RateLimiter:
    return _limiter
