"""In-process fixed-window rate limiting.

Bounds merge, unlink, bookmark and upload attempt rates per caller key
(user id or client IP).

Semantics (per key):
- No window yet, or the window has expired: start a new window with
  count = 1 and allow.
- Otherwise increment the count; allow iff count <= max_requests.

Counters live in a plain dict guarded by a single mutex, so the
read-check-increment sequence is atomic across concurrent requests handled
by the same process. Each worker process has its own table; limits are
therefore per process, not global.

Memory:
    The table grows by one entry per distinct key and is never trimmed on
    the hot path. Call evict_expired() periodically (the app does it from a
    background sweep in lifespan) to drop entries whose window has ended.
"""

import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Request

from stash.errors import RateLimitedError
from stash.logging import get_logger

logger = get_logger(__name__)

# Defaults used when a limiter is built without explicit settings
DEFAULT_MAX_REQUESTS = 10
DEFAULT_WINDOW_SECONDS = 60.0


@dataclass(frozen=True)
class RateLimitResult:
    """Outcome of a single check().

    Attributes:
        allowed: Whether the request may proceed.
        remaining: Requests left in the current window (never negative).
        reset_at: Clock time (seconds) at which the current window ends.
    """

    allowed: bool
    remaining: int
    reset_at: float


@dataclass
class _Window:
    count: int
    started_at: float


class RateLimiter:
    """Fixed-window counter keyed by caller identity.

    Thread-safe. Construct once per process and hand it to the handlers
    that need it (see stash.api.deps).
    """

    def __init__(
        self,
        max_requests: int = DEFAULT_MAX_REQUESTS,
        window_seconds: float = DEFAULT_WINDOW_SECONDS,
        *,
        name: str = "default",
        clock: Callable[[], float] | None = None,
    ):
        """Initialize rate limiter.

        Args:
            max_requests: Maximum allowed checks per key per window.
            window_seconds: Window length in seconds.
            name: Label used in log events.
            clock: Monotonic time source (injectable for tests).
        """
        if max_requests < 1:
            raise ValueError("max_requests must be >= 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")

        self.name = name
        self.max_requests = max_requests
        self.window_seconds = float(window_seconds)
        self._clock = clock or time.monotonic
        self._windows: dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, key: str) -> RateLimitResult:
        """Count one request for key and report whether it is allowed."""
        now = self._clock()
        with self._lock:
            window = self._windows.get(key)
            if window is None or now - window.started_at >= self.window_seconds:
                window = _Window(count=1, started_at=now)
                self._windows[key] = window
            else:
                window.count += 1

            allowed = window.count <= self.max_requests
            remaining = max(0, self.max_requests - window.count)
            reset_at = window.started_at + self.window_seconds

        return RateLimitResult(allowed=allowed, remaining=remaining, reset_at=reset_at)

    def enforce(self, key: str) -> RateLimitResult:
        """check() that raises instead of returning a denial.

        Raises:
            RateLimitedError: If the key has exhausted its window.
        """
        result = self.check(key)
        if not result.allowed:
            logger.warning("rate_limit.blocked", limiter=self.name)
            raise RateLimitedError()
        return result

    def reset(self, key: str) -> None:
        """Forget the window for a key."""
        with self._lock:
            self._windows.pop(key, None)

    def evict_expired(self) -> int:
        """Drop every window that has ended. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [
                key
                for key, window in self._windows.items()
                if now - window.started_at >= self.window_seconds
            ]
            for key in expired:
                del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)


@dataclass
class RateLimiters:
    """The process-wide limiter set, stored on app.state.rate_limiters."""

    account: RateLimiter
    bookmark: RateLimiter
    upload_user: RateLimiter
    upload_ip: RateLimiter

    def all(self) -> list[RateLimiter]:
        return [self.account, self.bookmark, self.upload_user, self.upload_ip]

    def evict_expired(self) -> int:
        return sum(limiter.evict_expired() for limiter in self.all())


def build_rate_limiters(settings, clock: Callable[[], float] | None = None) -> RateLimiters:
    """Create the limiter set from settings."""
    return RateLimiters(
        account=RateLimiter(
            settings.rate_limit_account_max,
            settings.rate_limit_account_window_s,
            name="account",
            clock=clock,
        ),
        bookmark=RateLimiter(
            settings.rate_limit_bookmark_max,
            settings.rate_limit_bookmark_window_s,
            name="bookmark",
            clock=clock,
        ),
        upload_user=RateLimiter(
            settings.rate_limit_upload_user_max,
            settings.rate_limit_upload_user_window_s,
            name="upload_user",
            clock=clock,
        ),
        upload_ip=RateLimiter(
            settings.rate_limit_upload_ip_max,
            settings.rate_limit_upload_ip_window_s,
            name="upload_ip",
            clock=clock,
        ),
    )


def get_client_ip(request: Request) -> str:
    """Best-effort client address for IP-keyed limits.

    Prefers the first X-Forwarded-For hop set by the fronting proxy.
    """
    forwarded_for = request.headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"
