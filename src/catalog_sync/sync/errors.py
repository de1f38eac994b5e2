"""Error taxonomy and deterministic classification for sync retry policy."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

import httpx

from catalog_sync.sync.models import ItemStage

ERROR_CLASSIFIER_VERSION = 2

HTTP_TOO_MANY_REQUESTS = 429
HTTP_REQUEST_TIMEOUT = 408
HTTP_CLIENT_ERROR_MIN = 400
HTTP_SERVER_ERROR_MIN = 500

_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "rate limit",
    "ratelimit",
    "throttl",
    "too many requests",
    "resource_exhausted",
)
# Status-like tokens only ("http 429", "status: 429"); bare digits occur in SKUs and ids.
_RATE_LIMIT_STATUS_RE = re.compile(r"\b(?:http|status|code|error)[\s:=]*429\b")
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "timed out",
    "could not resolve host",
    "deadlock",
)


class ErrorKind(str, Enum):
    """Closed tag set the retry predicates match on."""

    RATE_LIMITED = "rate_limited"
    UNREACHABLE = "unreachable"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@dataclass(slots=True, eq=False)
class SyncError(Exception):
    """Base error for the sync pipeline."""

    message: str
    code: str = "sync_error"
    kind: ErrorKind | None = None

    def __str__(self) -> str:
        return self.message


@dataclass(slots=True, eq=False)
class ProviderError(SyncError):
    """AI provider call failed."""

    code: str = "provider_error"
    status: int | None = None


@dataclass(slots=True, eq=False)
class AdapterError(SyncError):
    """Adapter could not transform or fetch one item."""

    code: str = "adapter_error"


@dataclass(slots=True, eq=False)
class PersistenceError(SyncError):
    """Catalog or blob store write failed."""

    code: str = "persistence_error"
    status: int | None = None


@dataclass(slots=True, eq=False)
class PricingNotFound(SyncError):
    """No price row for a provider/model pair."""

    code: str = "pricing_not_found"
    provider: str = ""
    model: str = ""


@dataclass(slots=True, eq=False)
class RunFault(SyncError):
    """Run-level failure: the run aborts and ends as failed."""

    code: str = "run_fault"


@dataclass(slots=True, eq=False)
class AdapterUnreachable(RunFault):
    """Adapter did not answer the initial listing."""

    code: str = "adapter_unreachable"
    kind: ErrorKind | None = ErrorKind.UNREACHABLE


@dataclass(slots=True, eq=False)
class PersistenceUnavailable(RunFault):
    """Persistence layer is unreachable at run start."""

    code: str = "persistence_unavailable"
    kind: ErrorKind | None = ErrorKind.UNREACHABLE


@dataclass(slots=True, eq=False)
class InvalidConfiguration(RunFault):
    """Run options are not usable."""

    code: str = "invalid_configuration"
    kind: ErrorKind | None = ErrorKind.INVALID


@dataclass(slots=True, eq=False)
class ItemFault(SyncError):
    """One item failed at one stage after retries were exhausted."""

    code: str = "item_fault"
    item_id: str = ""
    stage: ItemStage = ItemStage.TRANSFORM


@dataclass(slots=True)
class ErrorClassification:
    """Normalized classification result."""

    kind: ErrorKind
    matched_rule: str
    matched_pattern: str | None = None


def classify_error(error: BaseException) -> ErrorClassification:
    """Classify an exception into the closed error-kind set.

    Structured information wins: an explicit ``kind`` on a :class:`SyncError`,
    then an HTTP status code, then ``httpx`` transport failures. Message
    substrings are the last resort.
    """

    if isinstance(error, SyncError) and error.kind is not None:
        return ErrorClassification(kind=error.kind, matched_rule="explicit_kind")

    status = _status_of(error)
    if status is not None:
        return _classify_status(status)

    if isinstance(error, httpx.TransportError):
        return ErrorClassification(kind=ErrorKind.UNREACHABLE, matched_rule="transport_error")
    if isinstance(error, TimeoutError | ConnectionError):
        return ErrorClassification(kind=ErrorKind.UNREACHABLE, matched_rule="os_transport_error")

    haystack = str(error).lower()
    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is None:
        token = _RATE_LIMIT_STATUS_RE.search(haystack)
        pattern = token.group(0) if token is not None else None
    if pattern is not None:
        return ErrorClassification(
            kind=ErrorKind.RATE_LIMITED,
            matched_rule="rate_limit_text",
            matched_pattern=pattern,
        )
    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return ErrorClassification(
            kind=ErrorKind.UNREACHABLE,
            matched_rule="transient_text",
            matched_pattern=pattern,
        )
    return ErrorClassification(kind=ErrorKind.UNKNOWN, matched_rule="fallback_unknown")


def is_rate_limited(error: BaseException) -> bool:
    return classify_error(error).kind is ErrorKind.RATE_LIMITED


def is_transient(error: BaseException) -> bool:
    """Rate limits and unreachable backends are worth another attempt."""

    return classify_error(error).kind in {ErrorKind.RATE_LIMITED, ErrorKind.UNREACHABLE}


def _status_of(error: BaseException) -> int | None:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    status = getattr(error, "status", None)
    if isinstance(status, int):
        return status
    return None


def _classify_status(status: int) -> ErrorClassification:
    if status == HTTP_TOO_MANY_REQUESTS:
        return ErrorClassification(kind=ErrorKind.RATE_LIMITED, matched_rule="status_429")
    if status == HTTP_REQUEST_TIMEOUT or status >= HTTP_SERVER_ERROR_MIN:
        return ErrorClassification(kind=ErrorKind.UNREACHABLE, matched_rule="status_transient")
    if status >= HTTP_CLIENT_ERROR_MIN:
        return ErrorClassification(kind=ErrorKind.INVALID, matched_rule="status_client_error")
    return ErrorClassification(kind=ErrorKind.UNKNOWN, matched_rule="status_other")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
