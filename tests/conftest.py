"""Shared test fixtures."""

from __future__ import annotations

import os

import pytest


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Drop CATALOG_SYNC_* and OpenAI variables so host settings never leak into tests."""
    for name in list(os.environ):
        if name.startswith("CATALOG_SYNC_") or name == "OPENAI_API_KEY":
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def no_sleep():
    """Sleep replacement that records requested delays instead of waiting."""
    delays: list[float] = []

    def _sleep(seconds: float) -> None:
        delays.append(seconds)

    _sleep.delays = delays  # type: ignore[attr-defined]
    return _sleep
