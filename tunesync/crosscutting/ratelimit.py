import logging
import threading
import time
from typing import Any, Callable, Dict, Optional

import backoff

from tunesync.crosscutting.reporting import MetricsCollector
from tunesync.domain.errors import RETRYABLE_ERRORS, RateLimited


logger = logging.getLogger(__name__)

# Requests per second each catalog tolerates without answering 429.
DEFAULT_RATES: Dict[str, float] = {
    "spotify": 5.0,
    "tidal": 3.0,
    "ytmusic": 1.0,
    "yandex": 3.0,
}


class NoopLimiter:
    """Limiter that never waits. Used for local sources and in tests."""

    def acquire(self, tokens: int = 1) -> float:
        return 0.0


class TokenBucket:
    """Token bucket shared by all outbound calls of one adapter.

    ``acquire`` blocks the calling flow until enough tokens are available.
    Clock and sleep are injectable so waits can be asserted deterministically.
    """

    def __init__(self,
                 rate: float,
                 capacity: Optional[float] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep,
                 metrics: Optional[MetricsCollector] = None):
        if rate <= 0:
            raise ValueError(f"rate must be positive, got {rate}")
        self.rate = float(rate)
        self.capacity = float(capacity) if capacity is not None else max(1.0, self.rate)
        self._clock = clock
        self._sleep = sleep
        self._metrics = metrics
        self._tokens = self.capacity
        self._updated_at = clock()
        self._lock = threading.Lock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._updated_at
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._updated_at = now

    def acquire(self, tokens: int = 1) -> float:
        if tokens > self.capacity:
            raise ValueError(f"Cannot acquire {tokens} tokens from a bucket of {self.capacity}")

        waited = 0.0
        with self._lock:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    break
                delay = (tokens - self._tokens) / self.rate
                self._sleep(delay)
                waited += delay

        if waited > 0:
            logger.debug(f"Rate limiter waited {waited:.3f}s")
            if self._metrics is not None:
                self._metrics.record_rl_wait_ms(int(waited * 1000))
        return waited


def limiter_for(platform: str,
                rates: Optional[Dict[str, float]] = None,
                metrics: Optional[MetricsCollector] = None):
    """Build the limiter for one platform session."""
    rate = (rates or {}).get(platform, DEFAULT_RATES.get(platform))
    if not rate:
        return NoopLimiter()
    return TokenBucket(rate=rate, metrics=metrics)


def _retry_wait(base_delay: float = 1.0, max_delay: float = 30.0):
    """Wait generator for ``backoff.on_exception``.

    backoff sends the raised exception into the generator, so a server
    ``Retry-After`` hint wins over the capped exponential delay with full jitter.
    """
    exc = yield
    attempt = 0
    while True:
        hint = getattr(exc, "retry_after_ms", None)
        if hint is not None and hint >= 0:
            delay = hint / 1000.0
        else:
            delay = backoff.full_jitter(min(max_delay, base_delay * (2 ** attempt)))
        attempt += 1
        exc = yield delay


class RetryPolicy:
    """Bounded retries for RateLimited and TemporaryFailure.

    Any other error propagates immediately. When the budget is spent the last
    error is re-raised as the outcome of the call.
    """

    def __init__(self,
                 max_tries: int = 5,
                 base_delay: float = 1.0,
                 max_delay: float = 30.0,
                 metrics: Optional[MetricsCollector] = None):
        if max_tries < 1:
            raise ValueError(f"max_tries must be >= 1, got {max_tries}")
        self.max_tries = max_tries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.metrics = metrics if metrics is not None else MetricsCollector()

    def _on_backoff(self, description: str):
        def handler(details: Dict[str, Any]) -> None:
            exc = details.get("exception")
            wait = details.get("wait") or 0.0
            self.metrics.record_retry_count(1)
            if isinstance(exc, RateLimited):
                self.metrics.record_rl_wait_ms(int(wait * 1000))
            logger.warning(f"{description} failed ({type(exc).__name__}: {exc}), "
                           f"retry {details['tries']}/{self.max_tries - 1} in {wait:.2f}s")
        return handler

    def _on_giveup(self, description: str):
        def handler(details: Dict[str, Any]) -> None:
            exc = details.get("exception")
            logger.error(f"{description} gave up after {details['tries']} attempts: {exc}")
        return handler

    def call(self, func: Callable, *args, description: Optional[str] = None, **kwargs):
        name = description or getattr(func, "__name__", "call")
        retrying = backoff.on_exception(
            _retry_wait,
            RETRYABLE_ERRORS,
            max_tries=self.max_tries,
            jitter=None,
            logger=None,
            on_backoff=self._on_backoff(name),
            on_giveup=self._on_giveup(name),
            base_delay=self.base_delay,
            max_delay=self.max_delay,
        )(func)
        return retrying(*args, **kwargs)
