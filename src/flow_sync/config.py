from __future__ import annotations

import logging
from typing import ClassVar, final

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFLICT_STRATEGIES = frozenset(
    {"client-wins", "server-wins", "last-modified", "merge", "user-choice"}
)


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Flow Sync"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"

    # REST backend consumed by the sync client. The client appends api_prefix.
    api_base_url: str = "http://localhost:31031"
    api_prefix: str = "/api"
    api_token: str = ""
    # Upper bound for a single network save; a slower request counts as failed.
    request_timeout_seconds: float = 30.0

    # Durable store: SQLite primary, JSON files as fallback, memory as last resort.
    store_database_url: str = "sqlite:///./.data/flow-sync.db"
    store_fallback_dir: str = ".data/flow-sync-fallback"

    # Queue drain cadence (connectivity/timer driven, no backoff).
    sync_interval_seconds: float = 30.0
    sync_max_attempts: int = 3
    failed_sync_retention_days: int = 7
    failed_sync_cleanup_interval_seconds: float = 60 * 60

    # Intent-based save scheduler.
    save_inactivity_seconds: float = 30.0
    save_safety_seconds: float = 2 * 60.0
    save_min_interval_ms: int = 500
    # Backoff only applies when the scheduler owns the write (no queue fallback).
    save_retry_max_attempts: int = 3
    save_retry_base_delay_seconds: float = 1.0
    save_retry_max_delay_seconds: float = 30.0

    # Legacy debounced auto-save.
    autosave_debounce_ms: int = 1500

    conflict_default_strategy: str = "last-modified"

    log_level: str = "INFO"

    @model_validator(mode="after")
    def _validate_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        errors: list[str] = []

        if self.conflict_default_strategy not in CONFLICT_STRATEGIES:
            errors.append(
                "CONFLICT_DEFAULT_STRATEGY must be one of "
                + ",".join(sorted(CONFLICT_STRATEGIES))
            )
        if self.sync_max_attempts < 1:
            errors.append("SYNC_MAX_ATTEMPTS must be >= 1")

        if self.environment.strip().lower() == "production":
            if not self.api_base_url.strip().lower().startswith("https://"):
                errors.append("API_BASE_URL must use https in production")
            if not self.api_token.strip():
                errors.append("API_TOKEN must be set in production")

        if errors:
            raise ValueError("Invalid settings: " + "; ".join(errors))
        return self

    def api_root(self) -> str:
        prefix = self.api_prefix.strip().strip("/")
        base = self.api_base_url.rstrip("/")
        return f"{base}/{prefix}" if prefix else base

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if self.api_base_url.strip().lower().startswith("http://"):
            warnings.append("API_BASE_URL uses plain http")
        if not self.api_token.strip():
            warnings.append("API_TOKEN is empty; requests are sent unauthenticated")
        if self.conflict_default_strategy == "client-wins":
            warnings.append("CONFLICT_DEFAULT_STRATEGY=client-wins silently overwrites server edits")
        return warnings


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=getattr(logging, (level or settings.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


settings = Settings()
