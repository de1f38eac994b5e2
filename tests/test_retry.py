from __future__ import annotations

import itertools

import allure
import pytest

from catalog_sync.sync.errors import ErrorKind, ProviderError
from catalog_sync.sync.retry import (
    RetryPolicy,
    delay_schedule,
    run_with_retry,
    with_rate_limit_retry,
)

pytestmark = [
    allure.epic("Sync Runtime"),
    allure.feature("Backoff Executor"),
]


class Flaky:
    def __init__(self, failures: list[BaseException], result: str = "ok") -> None:
        self._failures = list(failures)
        self.calls = 0
        self.result = result

    def __call__(self) -> str:
        self.calls += 1
        if self._failures:
            raise self._failures.pop(0)
        return self.result


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[tuple[int, float]] = []

    def on_retry(self, error: BaseException, attempt: int, delay_seconds: float) -> None:  # noqa: ARG002
        self.events.append((attempt, delay_seconds))


def test_returns_first_success_without_sleeping(no_sleep) -> None:
    operation = Flaky([])

    assert run_with_retry(operation, RetryPolicy(), sleep=no_sleep) == "ok"
    assert operation.calls == 1
    assert no_sleep.delays == []


def test_retries_until_success_with_exponential_delays(no_sleep) -> None:
    operation = Flaky([RuntimeError("boom"), RuntimeError("boom")])
    observer = RecordingObserver()
    policy = RetryPolicy(max_attempts=3, initial_delay_seconds=1.0, backoff_multiplier=2.0)

    assert run_with_retry(operation, policy, observer=observer, sleep=no_sleep) == "ok"
    assert operation.calls == 3
    assert no_sleep.delays == [1.0, 2.0]
    assert observer.events == [(1, 1.0), (2, 2.0)]


def test_reraises_last_error_unchanged_after_max_attempts(no_sleep) -> None:
    last = RuntimeError("third")
    operation = Flaky([RuntimeError("first"), RuntimeError("second"), last])

    with pytest.raises(RuntimeError) as excinfo:
        run_with_retry(operation, RetryPolicy(max_attempts=3), sleep=no_sleep)

    assert excinfo.value is last
    assert operation.calls == 3
    assert len(no_sleep.delays) == 2


def test_predicate_rejection_stops_immediately(no_sleep) -> None:
    error = ValueError("bad input")
    operation = Flaky([error])
    policy = RetryPolicy(max_attempts=5, should_retry=lambda _error, _attempt: False)

    with pytest.raises(ValueError) as excinfo:
        run_with_retry(operation, policy, sleep=no_sleep)

    assert excinfo.value is error
    assert operation.calls == 1
    assert no_sleep.delays == []


def test_single_attempt_policy_never_sleeps(no_sleep) -> None:
    operation = Flaky([RuntimeError("boom")])

    with pytest.raises(RuntimeError):
        run_with_retry(operation, RetryPolicy(max_attempts=1), sleep=no_sleep)

    assert operation.calls == 1
    assert no_sleep.delays == []


def test_delay_schedule_is_capped() -> None:
    policy = RetryPolicy(initial_delay_seconds=1.0, max_delay_seconds=5.0, backoff_multiplier=2.0)

    assert list(itertools.islice(delay_schedule(policy), 5)) == [1.0, 2.0, 4.0, 5.0, 5.0]


def test_default_schedule_doubles_up_to_thirty_seconds() -> None:
    assert list(itertools.islice(delay_schedule(RetryPolicy()), 7)) == [
        1.0,
        2.0,
        4.0,
        8.0,
        16.0,
        30.0,
        30.0,
    ]


def test_executor_sleeps_the_default_schedule_between_attempts(no_sleep) -> None:
    operation = Flaky([RuntimeError(f"attempt {number}") for number in range(1, 8)])

    assert run_with_retry(operation, RetryPolicy(max_attempts=8), sleep=no_sleep) == "ok"
    assert operation.calls == 8
    assert no_sleep.delays == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_initial_delay_above_cap_is_clamped() -> None:
    policy = RetryPolicy(initial_delay_seconds=10.0, max_delay_seconds=3.0)

    assert next(delay_schedule(policy)) == 3.0


@pytest.mark.parametrize(
    ("kwargs", "message"),
    [
        ({"max_attempts": 0}, "max_attempts"),
        ({"initial_delay_seconds": -1.0}, "delays"),
        ({"backoff_multiplier": 0.5}, "backoff_multiplier"),
    ],
)
def test_policy_rejects_invalid_values(kwargs: dict[str, float], message: str) -> None:
    with pytest.raises(ValueError, match=message):
        RetryPolicy(**kwargs)


def test_rate_limit_composition_retries_rate_limits_only(no_sleep) -> None:
    policy = with_rate_limit_retry(RetryPolicy(max_attempts=3))
    throttled = Flaky([ProviderError(message="slow down", status=429)])

    assert run_with_retry(throttled, policy, sleep=no_sleep) == "ok"
    assert throttled.calls == 2

    invalid = Flaky([ProviderError(message="bad request", status=400)])
    with pytest.raises(ProviderError):
        run_with_retry(invalid, policy, sleep=no_sleep)
    assert invalid.calls == 1


def test_rate_limit_composition_does_not_retry_ids_containing_429(no_sleep) -> None:
    policy = with_rate_limit_retry(RetryPolicy(max_attempts=5))
    operation = Flaky([ValueError("invalid price for variant 14290")])

    with pytest.raises(ValueError, match="14290"):
        run_with_retry(operation, policy, sleep=no_sleep)

    assert operation.calls == 1
    assert no_sleep.delays == []


def test_rate_limit_composition_defers_to_caller_predicate(no_sleep) -> None:
    seen: list[int] = []

    def _caller(error: BaseException, attempt: int) -> bool:
        seen.append(attempt)
        return isinstance(error, ProviderError) and error.kind is ErrorKind.UNREACHABLE

    policy = with_rate_limit_retry(RetryPolicy(max_attempts=4, should_retry=_caller))
    operation = Flaky(
        [
            ProviderError(message="quota", kind=ErrorKind.RATE_LIMITED),
            ProviderError(message="down", kind=ErrorKind.UNREACHABLE),
        ],
    )

    assert run_with_retry(operation, policy, sleep=no_sleep) == "ok"
    assert operation.calls == 3
    assert seen == [2]
