from __future__ import annotations

from typing import ClassVar, final

from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


_CORS_ALLOW_ORIGINS_VALIDATION_ALIAS = AliasChoices("CORS_ALLOW_ORIGINS", "CORS_ORIGINS")


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [x.strip() for x in value.split(",") if x.strip()]


@final
class Settings(BaseSettings):
    model_config: ClassVar[SettingsConfigDict] = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )
    app_name: str = "Field Sync"
    api_prefix: str = "/api/v1"

    # Environment (ENVIRONMENT): development | production
    environment: str = "development"

    database_url: str = "sqlite:///./dev.db"
    # SQLite only: how long a writer waits on a concurrent ingest before giving up (503).
    database_busy_timeout_seconds: float = 30.0

    # Primary env: CORS_ALLOW_ORIGINS; also accept CORS_ORIGINS as alias.
    cors_allow_origins: str = Field(
        default="*",
        validation_alias=_CORS_ALLOW_ORIGINS_VALIDATION_ALIAS,
    )

    log_level: str = "INFO"

    # Ingestion: target -> allowed idempotency key domain tags.
    # Format: "target:domain|domain,target:domain"
    ingest_target_domains: str = (
        "batch_upload:batch,scan_job:job,site_visit:visit,rating:rating"
    )
    # LWW guard for entity targets: clamp client timestamps that run ahead of the server.
    sync_max_client_clock_skew_seconds: int = 300

    # Device side (offline queue). The client store is a separate database from the server's.
    client_database_url: str = "sqlite:///./.data/outbox.db"
    sync_base_url: str = "http://localhost:31031"
    sync_request_timeout_seconds: float = 15.0
    sync_max_in_flight: int = 4
    sync_backoff_base_seconds: float = 1.0
    sync_backoff_max_seconds: float = 300.0
    # Transient failures tolerated before an operation is surfaced as failed.
    sync_max_retries: int = 8
    # Auto-sync interval while online.
    sync_interval_seconds: float = 30.0
    device_id: str = ""

    # Validate production settings early to fail fast on unsafe defaults.
    @model_validator(mode="after")
    def _validate_production_settings(self) -> "Settings":  # pyright: ignore[reportUnusedFunction]
        if self.environment.strip().lower() != "production":
            return self

        errors: list[str] = []

        cors_v = self.cors_allow_origins.strip()
        if not cors_v or cors_v == "*":
            errors.append("CORS_ALLOW_ORIGINS must be explicit (not '*') in production")

        if self.database_url.strip().lower().startswith("sqlite"):
            errors.append("DATABASE_URL must point to a shared database in production")

        if not self.target_domains():
            errors.append("INGEST_TARGET_DOMAINS must not be empty")

        if errors:
            raise ValueError("Invalid production settings: " + "; ".join(errors))
        return self

    def cors_origins_list(self) -> list[str]:
        v = self.cors_allow_origins.strip()
        if not v:
            return []
        if v == "*":
            return ["*"]
        return _split_csv(v)

    def target_domains(self) -> dict[str, frozenset[str]]:
        out: dict[str, frozenset[str]] = {}
        for entry in _split_csv(self.ingest_target_domains):
            target, _, domains = entry.partition(":")
            target = target.strip()
            if not target:
                continue
            out[target] = frozenset(d.strip() for d in domains.split("|") if d.strip())
        return out

    def security_warnings(self) -> list[str]:
        warnings: list[str] = []
        if self.cors_allow_origins.strip() == "*":
            warnings.append("CORS_ALLOW_ORIGINS='*' is permissive")
        return warnings


settings = Settings()
