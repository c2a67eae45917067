# backend/services/guards.py
import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable, FrozenSet
from urllib.parse import urlparse

from services.errors import RateLimitError, ValidationError

logger = logging.getLogger(__name__)

# Never built from request input
ALLOWED_HOSTS: FrozenSet[str] = frozenset({
    'api.openweathermap.org',
    'tile.openweathermap.org',
})

ALLOWED_SCHEME = 'https'

RATE_WINDOW_SECONDS = 60


class UrlGuard:
    """SSRF check run before every outbound request."""

    def validate(self, url: str) -> None:
        try:
            parsed = urlparse(url)
            host = parsed.hostname
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Invalid URL: {e}")

        if parsed.scheme != ALLOWED_SCHEME:
            raise ValidationError('Invalid URL: only HTTPS requests are allowed')
        if not host or host not in ALLOWED_HOSTS:
            raise ValidationError('Invalid URL: host not in allow-list')
        if parsed.username or parsed.password:
            raise ValidationError('Invalid URL: credentials are not allowed')


@dataclass
class RateWindow:
    count: int
    window_start: float


class RateGate:
    def __init__(self, max_requests: int = 60, window: float = RATE_WINDOW_SECONDS,
                 time_func: Callable[[], float] = time.monotonic):
        if max_requests < 1:
            raise ValueError('max_requests must be at least 1')
        self.max_requests = max_requests
        self.window = window
        self._time_func = time_func
        self._state = RateWindow(count=0, window_start=time_func())
        self._lock = threading.Lock()

    def check_and_consume(self) -> None:
        with self._lock:
            now = self._time_func()
            elapsed = now - self._state.window_start
            if elapsed > self.window:
                self._state = RateWindow(count=0, window_start=now)
                elapsed = 0.0

            if self._state.count >= self.max_requests:
                retry_after = max(1, math.ceil(self.window - elapsed))
                logger.warning(f"Rate limit of {self.max_requests}/{self.window:.0f}s reached, retry in {retry_after}s")
                raise RateLimitError('Rate limit exceeded. Please wait before making more requests.',
                                     retry_after=retry_after)

            self._state.count += 1

    @property
    def remaining(self) -> int:
        if self._time_func() - self._state.window_start > self.window:
            return self.max_requests
        return max(0, self.max_requests - self._state.count)
