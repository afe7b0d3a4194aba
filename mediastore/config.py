"""Media store configuration via pydantic-settings."""

from __future__ import annotations

from pydantic_settings import BaseSettings


class MediaStoreSettings(BaseSettings):
    environment: str = "development"
    database_url: str = "sqlite+aiosqlite:///mediastore.db"
    echo_sql: bool = False
    app_title: str = "Media Store"

    # Object store ("s3" or "memory"; memory is for local dev only)
    object_store_backend: str = "s3"
    s3_bucket: str = "blog-storage"
    s3_endpoint_url: str | None = None
    s3_region: str = "auto"
    s3_access_key_id: str | None = None
    s3_secret_access_key: str | None = None
    storage_key_prefix: str = ""

    # Transient object-store failures are retried with exponential backoff.
    object_store_max_attempts: int = 4
    object_store_backoff_min_seconds: float = 0.5
    object_store_backoff_max_seconds: float = 8.0

    # Changing this after data exists splits identities; md5 matches legacy ids.
    digest_algorithm: str = "sha256"

    max_upload_bytes: int = 20 * 1024 * 1024
    batch_max_items: int = 20
    fetch_timeout_seconds: float = 30.0
    fetch_max_bytes: int = 20 * 1024 * 1024

    # Orphan reconciliation
    reconcile_enabled: bool = True
    # Daily wall-clock time (UTC, HH:MM). Empty falls back to the interval.
    reconcile_at: str = "00:00"
    reconcile_interval_seconds: int = 86400
    reconcile_stray_objects: bool = True
    reconcile_stray_grace_seconds: int = 3600

    model_config = {"env_prefix": "MEDIASTORE_", "env_file": ".env", "extra": "ignore"}

    @property
    def key_prefix(self) -> str:
        prefix = self.storage_key_prefix.strip().strip("/")
        return f"{prefix}/" if prefix else ""

    @property
    def is_production(self) -> bool:
        return self.environment.strip().lower() in {"prod", "production"}


settings = MediaStoreSettings()
