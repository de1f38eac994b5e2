"""Text helpers shared by platform adapters."""

from __future__ import annotations

import html
import re
from collections.abc import Iterable

_SCRIPT_STYLE_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<[^>]+>")
_WHITESPACE_RE = re.compile(r"\s+")


def html_to_text(raw_html: str | None) -> str:
    """Convert HTML markup into normalized plain text."""

    if not raw_html:
        return ""
    no_scripts = _SCRIPT_STYLE_RE.sub(" ", raw_html)
    stripped = _TAG_RE.sub(" ", no_scripts)
    unescaped = html.unescape(stripped)
    normalized = _WHITESPACE_RE.sub(" ", unescaped)
    return normalized.strip()


def extract_numeric_id(graphql_id: str | None) -> str:
    """`gid://shopify/Product/123` -> `123`; plain ids pass through."""

    if not graphql_id:
        return ""
    return str(graphql_id).rsplit("/", 1)[-1]


def split_tags(raw: str | Iterable[str] | None) -> list[str]:
    if raw is None:
        return []
    values = raw.split(",") if isinstance(raw, str) else list(raw)
    return [str(value).strip() for value in values if str(value).strip()]


def parse_price(raw: object) -> float | None:
    if raw is None or raw == "":
        return None
    try:
        return float(str(raw))
    except ValueError:
        return None
