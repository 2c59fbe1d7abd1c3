"""Bounded exponential retry for remote AI and network calls.

Every remote call in the render pipeline goes through a BackoffExecutor so the
retry policy lives in one place. Retryable failures (rate limits, quotas,
network trouble) are retried with ``base * 2**attempt`` delays; anything else is
raised immediately. Observers receive a ThrottleEvent before each sleep.
"""
import asyncio
import logging
import re
from typing import Callable, List, Optional

import httpx
import openai

from .errors import ConfigurationError, ContractViolation
from .models import ThrottleEvent
from .settings import BACKOFF_RETRIES, BACKOFF_BASE_MS

logger = logging.getLogger(__name__)

RATE_LIMIT = "rate-limit"
NETWORK = "network"

_RATE_LIMIT_RE = re.compile(r"\brate\b|rate.?limit|429|quota|too many requests|resource exhausted")
_NETWORK_RE = re.compile(r"timeout|timed out|network|connection|fetch")


def classify_error(exc: BaseException) -> Optional[str]:
    """Return the retry reason for ``exc``, or None when it is fatal."""
    if isinstance(exc, (ConfigurationError, ContractViolation)):
        return None
    if isinstance(exc, openai.RateLimitError):
        return RATE_LIMIT
    if isinstance(exc, (openai.APIConnectionError, openai.InternalServerError)):
        return NETWORK
    if isinstance(exc, openai.APIStatusError):
        return None
    if isinstance(exc, httpx.HTTPStatusError):
        code = exc.response.status_code
        if code == 429:
            return RATE_LIMIT
        if code in (502, 503, 504):
            return NETWORK
        return None
    if isinstance(exc, (httpx.TransportError, asyncio.TimeoutError, TimeoutError)):
        return NETWORK

    msg = str(exc).lower()
    if _RATE_LIMIT_RE.search(msg):
        return RATE_LIMIT
    if _NETWORK_RE.search(msg):
        return NETWORK
    return None


ThrottleListener = Callable[[ThrottleEvent], None]


class BackoffExecutor:
    def __init__(self, retries: Optional[int] = None, base_delay_ms: Optional[int] = None, sleep=None):
        self.retries = BACKOFF_RETRIES if retries is None else retries
        self.base_delay_ms = BACKOFF_BASE_MS if base_delay_ms is None else base_delay_ms
        self._sleep = sleep or asyncio.sleep
        self._listeners: List[ThrottleListener] = []

    def subscribe(self, listener: ThrottleListener) -> Callable[[], None]:
        """Register a throttle observer; returns a function that removes it."""
        self._listeners.append(listener)

        def unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)
        return unsubscribe

    def _emit(self, event: ThrottleEvent):
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Throttle listener failed")

    async def run(self, func, *args, **kwargs):
        """Await ``func(*args, **kwargs)`` with retries on transient failures.

        Exhausting the retry budget re-raises the last error unchanged.
        """
        attempt = 0
        while True:
            try:
                return await func(*args, **kwargs)
            except Exception as e:
                reason = classify_error(e)
                if reason is None or attempt >= self.retries:
                    raise
                delay_ms = self.base_delay_ms * 2 ** attempt
                attempt += 1
                logger.warning(f"Retry attempt {attempt}/{self.retries} ({reason}). Error: {e}. Retrying in {delay_ms}ms...")
                self._emit(ThrottleEvent(attempt=attempt, delay_ms=delay_ms, reason=reason))
                await self._sleep(delay_ms / 1000.0)
