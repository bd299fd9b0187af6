"""
Resilience Patterns
Retry with backoff and a circuit breaker around metric and billing backends
"""

import logging
import time
from functools import wraps
from threading import Lock
from typing import Callable, Optional, TypeVar

from costlens.errors import SourceUnavailableError

logger = logging.getLogger(__name__)

T = TypeVar('T')


class CircuitBreaker:
    """
    Stops calling a failing backend for `timeout` seconds after
    `failure_threshold` consecutive failures.

    While open, calls fail fast with SourceUnavailableError so the engine can
    count the entity as skipped instead of waiting on a dead backend.
    """

    def __init__(self, failure_threshold: int = 5, timeout: float = 60, name: str = "circuit"):
        self.failure_threshold = failure_threshold
        self.timeout = timeout
        self.name = name
        self.failure_count = 0
        self.last_failure_time: Optional[float] = None
        self.state = 'closed'  # closed, open, half_open
        self.trial_in_flight = False  # half_open admits one trial call at a time
        self.lock = Lock()

    def call(self, func: Callable[..., T], *args, **kwargs) -> T:
        with self.lock:
            if self.state == 'open':
                if not self._reset_due():
                    raise SourceUnavailableError(f"Circuit breaker {self.name} is open")
                logger.info(f"Circuit breaker {self.name}: half-open, sending one trial call")
                self.state = 'half_open'
            elif self.state == 'half_open' and self.trial_in_flight:
                raise SourceUnavailableError(f"Circuit breaker {self.name} is half-open, trial call in flight")
            if self.state == 'half_open':
                self.trial_in_flight = True

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._record_failure()
            logger.debug(f"Circuit breaker {self.name}: call failed: {e}")
            raise
        self._record_success()
        return result

    def _record_success(self):
        with self.lock:
            if self.state == 'half_open':
                logger.info(f"Circuit breaker {self.name}: closed after successful trial call")
            self.failure_count = 0
            self.state = 'closed'
            self.trial_in_flight = False

    def _record_failure(self):
        with self.lock:
            self.failure_count += 1
            self.last_failure_time = time.time()
            self.trial_in_flight = False
            if self.state == 'half_open' or self.failure_count >= self.failure_threshold:
                if self.state != 'open':
                    logger.error(
                        f"Circuit breaker {self.name}: opened after {self.failure_count} failures, "
                        f"retrying in {self.timeout}s"
                    )
                self.state = 'open'

    def _reset_due(self) -> bool:
        if self.last_failure_time is None:
            return True
        return time.time() - self.last_failure_time >= self.timeout

    def reset(self):
        with self.lock:
            self.failure_count = 0
            self.last_failure_time = None
            self.state = 'closed'
            self.trial_in_flight = False


def retry_with_backoff(
    max_retries: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    exceptions: tuple = (Exception,),
):
    """
    Retry decorator with exponential backoff.

    Only exceptions listed in `exceptions` are retried; anything else propagates
    on the first attempt. The last error is re-raised once retries run out.
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            delay = initial_delay
            for attempt in range(max_retries + 1):
                try:
                    return func(*args, **kwargs)
                except exceptions as e:
                    if attempt >= max_retries:
                        logger.error(f"{func.__name__}: all {max_retries + 1} attempts failed: {e}")
                        raise
                    logger.warning(
                        f"{func.__name__}: attempt {attempt + 1}/{max_retries + 1} failed: {e}. "
                        f"Retrying in {delay:.1f}s"
                    )
                    time.sleep(delay)
                    delay = min(delay * exponential_base, max_delay)
        return wrapper
    return decorator
