from __future__ import annotations

import allure
import httpx
import pytest

from catalog_sync.sync.errors import (
    ERROR_CLASSIFIER_VERSION,
    AdapterUnreachable,
    ErrorKind,
    InvalidConfiguration,
    PersistenceError,
    ProviderError,
    classify_error,
    is_rate_limited,
    is_transient,
)

pytestmark = [
    allure.epic("Sync Runtime"),
    allure.feature("Error Classification"),
]


def _status_error(status: int) -> httpx.HTTPStatusError:
    request = httpx.Request("POST", "https://api.example.com/v1/chat/completions")
    response = httpx.Response(status, request=request)
    return httpx.HTTPStatusError("failed", request=request, response=response)


def test_classifier_version_is_stable() -> None:
    assert ERROR_CLASSIFIER_VERSION == 2


def test_explicit_kind_wins_over_message() -> None:
    error = ProviderError(message="rate limit exceeded", kind=ErrorKind.INVALID)

    classified = classify_error(error)

    assert classified.kind is ErrorKind.INVALID
    assert classified.matched_rule == "explicit_kind"


@pytest.mark.parametrize(
    ("status", "kind"),
    [
        (429, ErrorKind.RATE_LIMITED),
        (408, ErrorKind.UNREACHABLE),
        (503, ErrorKind.UNREACHABLE),
        (401, ErrorKind.INVALID),
        (404, ErrorKind.INVALID),
    ],
)
def test_status_codes_map_to_kinds(status: int, kind: ErrorKind) -> None:
    assert classify_error(_status_error(status)).kind is kind
    assert classify_error(PersistenceError(message="x", status=status)).kind is kind


def test_transport_errors_are_unreachable() -> None:
    error = httpx.ConnectError("connection refused")

    assert classify_error(error).kind is ErrorKind.UNREACHABLE
    assert classify_error(TimeoutError()).matched_rule == "os_transport_error"


def test_message_fallback_detects_rate_limits() -> None:
    classified = classify_error(RuntimeError("Too Many Requests, try later"))

    assert classified.kind is ErrorKind.RATE_LIMITED
    assert classified.matched_rule == "rate_limit_text"
    assert classified.matched_pattern == "too many requests"


@pytest.mark.parametrize(
    "message",
    [
        "invalid price for variant 14290",
        "sku 429-RED has no title",
        "product gid://shopify/Product/8429 missing",
    ],
)
def test_digits_429_inside_ids_are_not_rate_limits(message: str) -> None:
    assert not is_rate_limited(ValueError(message))
    assert classify_error(ValueError(message)).kind is ErrorKind.UNKNOWN


@pytest.mark.parametrize(
    "message",
    ["upstream returned HTTP 429", "status: 429 from gateway", "error code=429"],
)
def test_status_like_429_tokens_are_rate_limits(message: str) -> None:
    classified = classify_error(RuntimeError(message))

    assert classified.kind is ErrorKind.RATE_LIMITED
    assert classified.matched_rule == "rate_limit_text"


def test_message_fallback_detects_transient_failures() -> None:
    classified = classify_error(RuntimeError("database is locked: deadlock detected"))

    assert classified.kind is ErrorKind.UNREACHABLE
    assert classified.matched_pattern == "deadlock"


def test_unrecognized_errors_are_unknown() -> None:
    classified = classify_error(ValueError("title must not be empty"))

    assert classified.kind is ErrorKind.UNKNOWN
    assert classified.matched_rule == "fallback_unknown"


def test_predicates() -> None:
    assert is_rate_limited(ProviderError(message="x", status=429))
    assert is_transient(ProviderError(message="x", status=429))
    assert is_transient(AdapterUnreachable(message="shop down"))
    assert not is_transient(InvalidConfiguration(message="bad options"))
    assert not is_rate_limited(ValueError("nope"))


def test_sync_errors_render_their_message() -> None:
    assert str(ProviderError(message="openai /embeddings returned HTTP 500")) == (
        "openai /embeddings returned HTTP 500"
    )
