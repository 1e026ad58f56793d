"""
Rate limiting and login lockout.

All state here is process-local and volatile: it resets on restart and is
an abuse deterrent, not a durable security control.
"""
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

LOGGER = logging.getLogger("messenger.ratelimit")


class RateLimiter:
    """
    Token bucket rate limiter with configurable limits
    """

    def __init__(
        self,
        requests_per_minute: int = 60,
        burst_size: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.requests_per_minute = requests_per_minute
        self.burst_size = burst_size
        self.refill_rate = requests_per_minute / 60.0  # tokens per second
        self._clock = clock
        self._lock = threading.Lock()

        # {identifier: {'tokens': float, 'last_update': float}}
        self.buckets: Dict[str, dict] = {}

    def _get_bucket(self, identifier: str, now: float) -> dict:
        if identifier not in self.buckets:
            self.buckets[identifier] = {"tokens": float(self.burst_size), "last_update": now}
        return self.buckets[identifier]

    def _refill_tokens(self, bucket: dict, now: float) -> None:
        elapsed = now - bucket["last_update"]
        bucket["tokens"] = min(self.burst_size, bucket["tokens"] + elapsed * self.refill_rate)
        bucket["last_update"] = now

    def is_allowed(self, identifier: str, cost: float = 1.0) -> bool:
        """
        Check if request is allowed and consume tokens

        Args:
            identifier: Unique identifier (IP, username, etc.)
            cost: Number of tokens to consume (default 1.0)

        Returns:
            True if request is allowed, False otherwise
        """
        with self._lock:
            now = self._clock()
            bucket = self._get_bucket(identifier, now)
            self._refill_tokens(bucket, now)
            if bucket["tokens"] >= cost:
                bucket["tokens"] -= cost
                return True
            return False

    def cleanup_old_buckets(self, max_age_seconds: int = 3600):
        """Remove buckets that haven't been used recently"""
        with self._lock:
            now = self._clock()
            to_remove = [
                identifier for identifier, bucket in self.buckets.items()
                if now - bucket["last_update"] > max_age_seconds
            ]
            for identifier in to_remove:
                del self.buckets[identifier]


@dataclass
class _AttemptState:
    failures: int = 0
    locked_until: Optional[float] = None


class LoginLockout:
    """
    Per-username failed-login counter.

    Once `max_failures` consecutive failures accumulate the username is
    locked for `lockout_seconds`, regardless of whether later passwords are
    correct. The counter resets on a successful login or when the lock expires.
    """

    def __init__(
        self,
        max_failures: int = 5,
        lockout_seconds: int = 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_failures = max_failures
        self.lockout_seconds = lockout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._attempts: Dict[str, _AttemptState] = {}

    def retry_after(self, username: str) -> Optional[int]:
        """Seconds until the lock lifts, or None when attempts are allowed"""
        with self._lock:
            state = self._attempts.get(username)
            if state is None or state.locked_until is None:
                return None
            remaining = state.locked_until - self._clock()
            if remaining <= 0:
                del self._attempts[username]
                return None
            return max(1, int(remaining + 0.999))

    def record_failure(self, username: str) -> bool:
        """Count a failed attempt; returns True when this failure triggers the lock"""
        with self._lock:
            state = self._attempts.setdefault(username, _AttemptState())
            state.failures += 1
            if state.failures >= self.max_failures and state.locked_until is None:
                state.locked_until = self._clock() + self.lockout_seconds
                LOGGER.warning(
                    "Locked %s for %ss after %s failed logins",
                    username, self.lockout_seconds, state.failures,
                )
                return True
            return False

    def clear(self, username: str) -> None:
        with self._lock:
            self._attempts.pop(username, None)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Per-IP token bucket for the REST endpoints
    """

    def __init__(self, app, requests_per_minute: int = 60, burst_size: int = 20):
        super().__init__(app)
        self.api_limiter = RateLimiter(requests_per_minute=requests_per_minute, burst_size=burst_size)
        self.exempt_paths = {"/health", "/system-status"}

    async def dispatch(self, request: Request, call_next):
        if request.url.path in self.exempt_paths or not request.url.path.startswith("/api"):
            return await call_next(request)

        client_ip = request.client.host if request.client else "unknown"
        if not self.api_limiter.is_allowed(client_ip):
            # Exceptions raised in middleware bypass FastAPI's handlers
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={"detail": "Rate limit exceeded. Please try again later."},
                headers={"Retry-After": "60"},
            )

        response = await call_next(request)

        if random.random() < 0.01:
            self.api_limiter.cleanup_old_buckets()

        return response


class WebSocketRateLimiter:
    """
    Rate limiter for WebSocket events
    """

    def __init__(self, messages_per_minute: int = 30, clock: Callable[[], float] = time.monotonic):
        self.message_limiter = RateLimiter(
            requests_per_minute=messages_per_minute, burst_size=10, clock=clock
        )
        # Typing indicators are more lenient
        self.typing_limiter = RateLimiter(requests_per_minute=60, burst_size=5, clock=clock)

    def check_message(self, username: str) -> bool:
        return self.message_limiter.is_allowed(f"msg:{username}")

    def check_typing(self, username: str) -> bool:
        return self.typing_limiter.is_allowed(f"typing:{username}")

    def cleanup(self):
        self.message_limiter.cleanup_old_buckets()
        self.typing_limiter.cleanup_old_buckets()
