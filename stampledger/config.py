"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_read_url: str | None = None  # Optional read replica
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "StampLedger API"
    api_version: str = "0.1.0"
    api_description: str = "Credit ledger and timestamp anchoring service"

    # Security - shared key for the trusted gateway that fronts this service
    api_key: str = ""

    # Payment gateway webhooks
    webhook_secret: str = ""  # Shared token the gateway sends with every event
    webhook_token_header: str = "asaas-access-token"

    # Payment gateway API (polling path)
    gateway_base_url: str = "https://api.asaas.com/v3"
    gateway_api_key: str = ""
    gateway_timeout_seconds: float = 10.0

    # Timestamping authorities, tried in order
    timestamp_authorities: str = (
        "https://a.pool.opentimestamps.org,"
        "https://b.pool.opentimestamps.org,"
        "https://a.pool.eternitywall.com"
    )
    timestamp_timeout_seconds: float = 10.0
    max_submission_attempts: int = 3
    # PROCESSING untouched this long is treated as abandoned (crashed or cancelled)
    stale_processing_minutes: int = 15

    # Uploaded files live here (written by the upload collaborator)
    content_root: str = "/var/lib/stampledger/uploads"

    @property
    def authority_urls(self) -> list[str]:
        """Get ordered list of timestamping authority base URLs."""
        urls = []
        for url in self.timestamp_authorities.split(","):
            url = url.strip().rstrip("/")
            if url and url not in urls:
                urls.append(url)
        return urls

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "stampledger-api"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        """
        errors: list[str] = []

        if not self.database_url:
            errors.append("DATABASE_URL is required but empty or missing")
        elif not self.database_url.startswith(("postgresql", "postgres", "sqlite")):
            errors.append(
                f"DATABASE_URL must be a PostgreSQL or SQLite URL, got: {self.database_url[:20]}..."
            )

        if self.max_submission_attempts < 1:
            errors.append("MAX_SUBMISSION_ATTEMPTS must be at least 1")

        if self.stale_processing_minutes < 1:
            errors.append("STALE_PROCESSING_MINUTES must be at least 1")

        if self.timestamp_timeout_seconds <= 0:
            errors.append("TIMESTAMP_TIMEOUT_SECONDS must be positive")

        not_http = [u for u in self.authority_urls if not u.startswith(("https://", "http://"))]
        if not_http:
            errors.append(f"TIMESTAMP_AUTHORITIES must be http(s) URLs, got: {not_http}")

        if self.log_format not in ("json", "console"):
            errors.append(f"LOG_FORMAT must be json or console, got: {self.log_format}")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def read_database_url(self) -> str:
        """Get read database URL (fallback to primary if no replica)."""
        return self.database_read_url or self.database_url


# Global settings instance - validates at import time
settings = Settings()


def get_settings() -> Settings:
    """Get application settings instance."""
    return settings
