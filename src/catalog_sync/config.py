"""Runtime configuration for catalog sync."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

from catalog_sync.sync.models import SyncOptions
from catalog_sync.sync.retry import RetryPolicy

ADAPTERS = ("json", "shopify")
PROVIDERS = ("offline", "openai")


@dataclass(slots=True)
class SyncSettings:
    """Per-run defaults; CLI flags override them."""

    concurrency: int = 5
    batch_size: int = 10
    generate_embeddings: bool = True
    classify_products: bool = True
    generate_descriptions: bool = True
    upload_images: bool = False
    only_new: bool = False
    deadline_seconds: float | None = None

    def to_options(self) -> SyncOptions:
        return SyncOptions(
            generate_embeddings=self.generate_embeddings,
            classify_products=self.classify_products,
            upload_images=self.upload_images,
            generate_descriptions=self.generate_descriptions,
            only_new=self.only_new,
            concurrency=self.concurrency,
            batch_size=self.batch_size,
            deadline_seconds=self.deadline_seconds,
        )


@dataclass(slots=True)
class RetrySettings:
    """Backoff executor defaults."""

    max_attempts: int = 3
    initial_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    backoff_multiplier: float = 2.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            initial_delay_seconds=self.initial_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            backoff_multiplier=self.backoff_multiplier,
        )


@dataclass(slots=True)
class AiSettings:
    """AI provider selection and credentials."""

    provider: str = "offline"
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    chat_model: str = "gpt-4o-mini"
    embedding_model: str = "text-embedding-3-small"
    max_requests_per_minute: int = 0
    request_timeout_seconds: float = 60.0


@dataclass(slots=True)
class ShopifySettings:
    """Shopify Admin API access."""

    shop_domain: str = ""
    access_token: str = ""
    api_version: str = "2024-10"
    page_size: int = 50


@dataclass(slots=True)
class StorageSettings:
    """SQLite and image storage locations."""

    busy_timeout_ms: int = 5_000
    blob_dir: Path = Path(".catalog_sync_blobs")
    blob_base_url: str | None = None


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = Path(".catalog_sync.db")
    sync: SyncSettings = field(default_factory=SyncSettings)
    retry: RetrySettings = field(default_factory=RetrySettings)
    ai: AiSettings = field(default_factory=AiSettings)
    shopify: ShopifySettings = field(default_factory=ShopifySettings)
    storage: StorageSettings = field(default_factory=StorageSettings)
    progress_webhook_url: str | None = None

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        deadline_raw = os.getenv("CATALOG_SYNC_DEADLINE_SECONDS", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("CATALOG_SYNC_DB_PATH", ".catalog_sync.db")),
            sync=SyncSettings(
                concurrency=int(os.getenv("CATALOG_SYNC_CONCURRENCY", "5")),
                batch_size=int(os.getenv("CATALOG_SYNC_BATCH_SIZE", "10")),
                generate_embeddings=_env_bool("CATALOG_SYNC_GENERATE_EMBEDDINGS", default=True),
                classify_products=_env_bool("CATALOG_SYNC_CLASSIFY_PRODUCTS", default=True),
                generate_descriptions=_env_bool(
                    "CATALOG_SYNC_GENERATE_DESCRIPTIONS",
                    default=True,
                ),
                upload_images=_env_bool("CATALOG_SYNC_UPLOAD_IMAGES", default=False),
                only_new=_env_bool("CATALOG_SYNC_ONLY_NEW", default=False),
                deadline_seconds=float(deadline_raw) if deadline_raw else None,
            ),
            retry=RetrySettings(
                max_attempts=int(os.getenv("CATALOG_SYNC_RETRY_MAX_ATTEMPTS", "3")),
                initial_delay_seconds=float(
                    os.getenv("CATALOG_SYNC_RETRY_INITIAL_DELAY_SECONDS", "1.0"),
                ),
                max_delay_seconds=float(os.getenv("CATALOG_SYNC_RETRY_MAX_DELAY_SECONDS", "30.0")),
                backoff_multiplier=float(os.getenv("CATALOG_SYNC_RETRY_MULTIPLIER", "2.0")),
            ),
            ai=AiSettings(
                provider=os.getenv("CATALOG_SYNC_AI_PROVIDER", "offline").strip().lower(),
                api_key=os.getenv("CATALOG_SYNC_OPENAI_API_KEY", os.getenv("OPENAI_API_KEY", "")),
                base_url=os.getenv("CATALOG_SYNC_OPENAI_BASE_URL", "https://api.openai.com/v1"),
                chat_model=os.getenv("CATALOG_SYNC_CHAT_MODEL", "gpt-4o-mini"),
                embedding_model=os.getenv("CATALOG_SYNC_EMBEDDING_MODEL", "text-embedding-3-small"),
                max_requests_per_minute=int(os.getenv("CATALOG_SYNC_AI_MAX_RPM", "0")),
                request_timeout_seconds=float(
                    os.getenv("CATALOG_SYNC_AI_REQUEST_TIMEOUT_SECONDS", "60.0"),
                ),
            ),
            shopify=ShopifySettings(
                shop_domain=os.getenv("CATALOG_SYNC_SHOPIFY_DOMAIN", "").strip(),
                access_token=os.getenv("CATALOG_SYNC_SHOPIFY_ACCESS_TOKEN", ""),
                api_version=os.getenv("CATALOG_SYNC_SHOPIFY_API_VERSION", "2024-10"),
                page_size=int(os.getenv("CATALOG_SYNC_SHOPIFY_PAGE_SIZE", "50")),
            ),
            storage=StorageSettings(
                busy_timeout_ms=int(os.getenv("CATALOG_SYNC_SQLITE_BUSY_TIMEOUT_MS", "5000")),
                blob_dir=Path(os.getenv("CATALOG_SYNC_BLOB_DIR", ".catalog_sync_blobs")),
                blob_base_url=os.getenv("CATALOG_SYNC_BLOB_BASE_URL") or None,
            ),
            progress_webhook_url=os.getenv("CATALOG_SYNC_PROGRESS_WEBHOOK_URL") or None,
        )

    def validate_for_sync(self, *, adapter: str) -> None:
        """Raise configuration error naming the offending variable."""

        if self.sync.concurrency < 1:
            raise ValueError("CATALOG_SYNC_CONCURRENCY must be >= 1.")
        if self.sync.batch_size < 1:
            raise ValueError("CATALOG_SYNC_BATCH_SIZE must be >= 1.")
        if self.sync.deadline_seconds is not None and self.sync.deadline_seconds <= 0:
            raise ValueError("CATALOG_SYNC_DEADLINE_SECONDS must be > 0.")
        if self.retry.max_attempts < 1:
            raise ValueError("CATALOG_SYNC_RETRY_MAX_ATTEMPTS must be >= 1.")
        if self.retry.initial_delay_seconds < 0 or self.retry.max_delay_seconds < 0:
            raise ValueError("CATALOG_SYNC_RETRY_*_DELAY_SECONDS must be >= 0.")
        if self.retry.backoff_multiplier < 1:
            raise ValueError("CATALOG_SYNC_RETRY_MULTIPLIER must be >= 1.")
        if self.ai.max_requests_per_minute < 0:
            raise ValueError("CATALOG_SYNC_AI_MAX_RPM must be >= 0.")

        if self.ai.provider not in PROVIDERS:
            raise ValueError(
                f"CATALOG_SYNC_AI_PROVIDER must be one of {', '.join(PROVIDERS)}: "
                f"{self.ai.provider!r}",
            )
        if self.ai.provider == "openai":
            if not self.ai.api_key:
                raise ValueError(
                    "CATALOG_SYNC_OPENAI_API_KEY (or OPENAI_API_KEY) is required "
                    "for the openai provider.",
                )
            _validate_http_url("CATALOG_SYNC_OPENAI_BASE_URL", self.ai.base_url)

        if adapter not in ADAPTERS:
            raise ValueError(f"Unknown adapter {adapter!r}; expected one of {', '.join(ADAPTERS)}.")
        if adapter == "shopify":
            if not self.shopify.shop_domain:
                raise ValueError("CATALOG_SYNC_SHOPIFY_DOMAIN is required for the shopify adapter.")
            if not self.shopify.access_token:
                raise ValueError(
                    "CATALOG_SYNC_SHOPIFY_ACCESS_TOKEN is required for the shopify adapter.",
                )
            if self.shopify.page_size < 1 or self.shopify.page_size > 250:
                raise ValueError("CATALOG_SYNC_SHOPIFY_PAGE_SIZE must be between 1 and 250.")

        if self.progress_webhook_url:
            _validate_http_url("CATALOG_SYNC_PROGRESS_WEBHOOK_URL", self.progress_webhook_url)


def _validate_http_url(name: str, value: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
