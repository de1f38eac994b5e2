from __future__ import annotations

from pathlib import Path

import allure
import pytest

from catalog_sync.config import AiSettings, Settings, ShopifySettings, SyncSettings

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults() -> None:
    settings = Settings.from_env()

    assert settings.db_path == Path(".catalog_sync.db")
    assert settings.ai.provider == "offline"
    assert settings.sync.to_options().concurrency == 5
    assert settings.retry.to_policy().max_attempts == 3
    assert settings.progress_webhook_url is None


def test_from_env_reads_overrides(monkeypatch) -> None:
    monkeypatch.setenv("CATALOG_SYNC_CONCURRENCY", "8")
    monkeypatch.setenv("CATALOG_SYNC_ONLY_NEW", "yes")
    monkeypatch.setenv("CATALOG_SYNC_DEADLINE_SECONDS", "90")
    monkeypatch.setenv("CATALOG_SYNC_RETRY_MAX_ATTEMPTS", "5")
    monkeypatch.setenv("CATALOG_SYNC_AI_PROVIDER", " OpenAI ")
    monkeypatch.setenv("OPENAI_API_KEY", "sk-fallback")

    settings = Settings.from_env(db_path=Path("explicit.db"))
    options = settings.sync.to_options()

    assert settings.db_path == Path("explicit.db")
    assert options.concurrency == 8
    assert options.only_new is True
    assert options.deadline_seconds == 90.0
    assert settings.retry.max_attempts == 5
    assert settings.ai.provider == "openai"
    assert settings.ai.api_key == "sk-fallback"


def test_invalid_boolean_names_the_variable(monkeypatch) -> None:
    monkeypatch.setenv("CATALOG_SYNC_UPLOAD_IMAGES", "maybe")

    with pytest.raises(ValueError, match="CATALOG_SYNC_UPLOAD_IMAGES"):
        Settings.from_env()


def test_validate_accepts_defaults_for_json_adapter() -> None:
    Settings().validate_for_sync(adapter="json")


@pytest.mark.parametrize(
    ("settings", "adapter", "message"),
    [
        (Settings(sync=SyncSettings(concurrency=0)), "json", "CATALOG_SYNC_CONCURRENCY"),
        (Settings(sync=SyncSettings(deadline_seconds=-1)), "json", "CATALOG_SYNC_DEADLINE_SECONDS"),
        (Settings(ai=AiSettings(provider="llama")), "json", "CATALOG_SYNC_AI_PROVIDER"),
        (Settings(ai=AiSettings(provider="openai")), "json", "CATALOG_SYNC_OPENAI_API_KEY"),
        (
            Settings(ai=AiSettings(provider="openai", api_key="k", base_url="ftp://x")),
            "json",
            "CATALOG_SYNC_OPENAI_BASE_URL",
        ),
        (Settings(), "magento", "Unknown adapter"),
        (Settings(), "shopify", "CATALOG_SYNC_SHOPIFY_DOMAIN"),
        (
            Settings(shopify=ShopifySettings(shop_domain="demo.myshopify.com", access_token="t", page_size=500)),
            "shopify",
            "CATALOG_SYNC_SHOPIFY_PAGE_SIZE",
        ),
        (Settings(progress_webhook_url="localhost:8080"), "json", "CATALOG_SYNC_PROGRESS_WEBHOOK_URL"),
    ],
)
def test_validate_rejects_bad_settings(settings: Settings, adapter: str, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate_for_sync(adapter=adapter)
