from functools import lru_cache
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from pydantic import AnyUrl, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _ensure_sqlalchemy_postgres_scheme(value: str) -> str:
    if not value.lower().startswith("postgres"):
        return value

    parsed = urlparse(value)
    query_params = dict(parse_qsl(parsed.query, keep_blank_values=True))
    query_params.setdefault("target_session_attrs", "read-write")
    new_query = urlencode(query_params, doseq=True)

    # The engine is synchronous; every Postgres URL goes through psycopg.
    return urlunparse(parsed._replace(scheme="postgresql+psycopg", query=new_query))


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    debug: bool = Field(False, description="Enable SQL echo and FastAPI debug mode")
    environment: str = Field(
        default="development",
        description="Runtime environment (development|staging|production)",
    )
    database_url: AnyUrl | str = Field(
        default="sqlite:///../data/predictsync.db",
        description="SQLAlchemy compatible database URL",
    )
    production_db_url: AnyUrl | str | None = Field(
        default=None,
        description="Postgres connection string used when ENVIRONMENT=production",
    )
    projection_batch_size: int = Field(
        default=500,
        description="Maximum raw events polled per event type on each projection pass",
        ge=1,
    )
    projection_workers: int = Field(
        default=1,
        description="Worker threads used by the projection run; one market is always handled by one worker",
        ge=1,
    )
    pipeline_db_retry_attempts: int = Field(
        default=3,
        description="Number of attempts to project an event when lock contention or transient database errors occur",
        ge=1,
    )
    pipeline_db_retry_backoff_seconds: list[float] | tuple[float, ...] | str = Field(
        default_factory=lambda: [1.0, 2.0, 4.0],
        description="Comma-separated list or array of backoff delays (seconds) between database retry attempts",
    )
    watched_contracts: dict[str, str] = Field(
        default_factory=dict,
        description="Contract address to contract name mapping seeded into the sync cursor table",
    )

    @field_validator("database_url", "production_db_url", mode="before")
    @classmethod
    def _normalize_postgres_urls(cls, value: Any) -> Any:
        if value is None or not isinstance(value, str):
            return value

        if value.startswith("postgresql+psycopg://"):
            return value

        normalized = value
        if normalized.startswith("postgres://"):
            normalized = "postgresql://" + normalized[len("postgres://") :]

        return normalized

    @field_validator("production_db_url")
    @classmethod
    def _require_postgres_scheme(cls, value: Any) -> Any:
        if value is None:
            return value
        scheme = str(value).split(":", 1)[0].lower()
        valid_schemes = {
            "postgres",
            "postgresql",
            "postgresql+psycopg",
        }
        if scheme not in valid_schemes:
            raise ValueError(
                "PRODUCTION_DB_URL must be a PostgreSQL connection string (e.g. postgresql://...)."
            )
        return value

    @field_validator("watched_contracts", mode="after")
    @classmethod
    def _lowercase_contract_addresses(cls, value: dict[str, str]) -> dict[str, str]:
        return {address.strip().lower(): name for address, name in value.items()}

    @field_validator("pipeline_db_retry_backoff_seconds", mode="before")
    @classmethod
    def _parse_retry_backoff(cls, value: Any) -> list[float]:
        if value in (None, "", []):
            return [1.0, 2.0, 4.0]
        if isinstance(value, str):
            tokens = [token.strip() for token in value.split(",") if token.strip()]
            if not tokens:
                raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS must contain at least one value")
            value = tokens
        if isinstance(value, (list, tuple)):
            backoff: list[float] = []
            for item in value:
                try:
                    delay = float(item)
                except (TypeError, ValueError) as exc:
                    raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS entries must be numeric") from exc
                if delay <= 0:
                    raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS entries must be positive")
                backoff.append(delay)
            if not backoff:
                raise ValueError("PIPELINE_DB_RETRY_BACKOFF_SECONDS must contain at least one value")
            return backoff
        raise ValueError(
            "PIPELINE_DB_RETRY_BACKOFF_SECONDS must be provided as a comma-separated string or list of numbers"
        )

    @property
    def resolved_database_url(self) -> str:
        environment = self.environment.lower()
        if environment == "production":
            if not self.production_db_url:
                raise ValueError(
                    "PRODUCTION_DB_URL must be set when ENVIRONMENT=production"
                )
            return _ensure_sqlalchemy_postgres_scheme(str(self.production_db_url))
        return _ensure_sqlalchemy_postgres_scheme(str(self.database_url))

    @property
    def pipeline_db_retry_backoff_schedule(self) -> tuple[float, ...]:
        sequence = tuple(float(value) for value in self.pipeline_db_retry_backoff_seconds)
        if not sequence:
            return (1.0,)
        return sequence


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
