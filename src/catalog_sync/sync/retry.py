"""Retry with exponential backoff for fallible pipeline stages."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass, replace
from typing import Protocol, TypeVar

from catalog_sync.sync.errors import is_rate_limited

logger = logging.getLogger(__name__)

T = TypeVar("T")

RetryPredicate = Callable[[BaseException, int], bool]

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_DELAY_SECONDS = 1.0
DEFAULT_MAX_DELAY_SECONDS = 30.0
DEFAULT_BACKOFF_MULTIPLIER = 2.0


class RetryObserver(Protocol):
    """Notified before each backoff sleep."""

    def on_retry(self, error: BaseException, attempt: int, delay_seconds: float) -> None:
        """Attempt ``attempt`` failed with ``error``; next try in ``delay_seconds``."""
        raise NotImplementedError


class LoggingRetryObserver:
    """Default observer: one warning line per retry."""

    def __init__(self, label: str = "operation") -> None:
        self.label = label

    def on_retry(self, error: BaseException, attempt: int, delay_seconds: float) -> None:
        logger.warning(
            "Retrying %s in %.1fs after attempt %d failed: %s",
            self.label,
            delay_seconds,
            attempt,
            error,
        )


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """How many times to try and how long to wait between tries.

    ``should_retry`` is consulted after every failed attempt except the last;
    ``None`` means every error is retried.
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    initial_delay_seconds: float = DEFAULT_INITIAL_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS
    backoff_multiplier: float = DEFAULT_BACKOFF_MULTIPLIER
    should_retry: RetryPredicate | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.initial_delay_seconds < 0 or self.max_delay_seconds < 0:
            raise ValueError("retry delays must be >= 0")
        if self.backoff_multiplier < 1:
            raise ValueError("backoff_multiplier must be >= 1")

    def allows_retry(self, error: BaseException, attempt: int) -> bool:
        if attempt >= self.max_attempts:
            return False
        if self.should_retry is None:
            return True
        return self.should_retry(error, attempt)


def delay_schedule(policy: RetryPolicy) -> Iterator[float]:
    """Yield the infinite sequence of backoff delays for ``policy``."""

    delay = min(policy.initial_delay_seconds, policy.max_delay_seconds)
    while True:
        yield delay
        delay = min(delay * policy.backoff_multiplier, policy.max_delay_seconds)


def run_with_retry(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    observer: RetryObserver | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` until it succeeds or ``policy`` gives up.

    The error from the final attempt is re-raised as-is.
    """

    delays = delay_schedule(policy)
    attempt = 1
    while True:
        try:
            return operation()
        except Exception as error:
            if not policy.allows_retry(error, attempt):
                raise
            delay = next(delays)
            if observer is not None:
                observer.on_retry(error, attempt, delay)
            sleep(delay)
            attempt += 1


def with_rate_limit_retry(policy: RetryPolicy) -> RetryPolicy:
    """Compose ``policy`` so rate-limit errors are always retried.

    Other errors go to the caller's predicate; without one they are not retried.
    """

    caller_predicate = policy.should_retry

    def _should_retry(error: BaseException, attempt: int) -> bool:
        if is_rate_limited(error):
            return True
        if caller_predicate is None:
            return False
        return caller_predicate(error, attempt)

    return replace(policy, should_retry=_should_retry)
