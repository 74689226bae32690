"""Application configuration using Pydantic Settings.

Configuration is loaded from environment variables. Optionally, point
`ENV_FILE` at a local env file for development; it is read by
pydantic-settings and never takes precedence over real environment variables.
"""

import os
import re
from enum import Enum

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class AppEnvironment(str, Enum):
    """Application environment values."""

    LOCAL = "local"
    TEST = "test"
    PROD = "prod"


class Settings(BaseSettings):
    """
    Application settings with type validation.

    Business limits and policies live here so that deployments can tune them
    without code changes; the defaults are the documented contract.
    """

    model_config = SettingsConfigDict(
        env_file=os.getenv("ENV_FILE") or None, env_prefix="", extra="ignore"
    )

    # Application
    app_env: AppEnvironment = AppEnvironment.LOCAL
    app_name: str = "tracechain-registry"
    app_log_level: str = "INFO"
    app_region: str = "local"

    # Observability
    observability_enabled: bool = True
    observability_structured_logs: bool = True
    observability_request_id_header: str = "X-Request-ID"

    # OpenTelemetry Configuration
    otel_enabled: bool = False
    otel_service_name: str = "tracechain-registry"
    otel_exporter_otlp_endpoint: str = "http://localhost:4317"
    otel_exporter_otlp_headers: str | None = None
    otel_traces_sampler_arg: float = 1.0

    # Database
    database_url_app: str = "sqlite+aiosqlite:///./tracechain.db"
    database_echo: bool = False

    # Global administrator override for every authorization gate
    admin_actor: str = "admin"

    # Bearer token verification
    secret_key: str | None = None
    algorithm: str = "HS256"

    # SECURITY: ONLY allowed in LOCAL environment. The caller identity is then
    # taken from the X-Actor-Id header without verification.
    skip_jwt_validation: bool = Field(
        default=False, validation_alias="SECURITY_SKIP_JWT_VALIDATION"
    )

    # Metrics token for protecting /metrics endpoint
    metrics_token: str | None = None

    # CORS Configuration
    cors_origins: str = "http://localhost:3000,http://localhost:5173"

    # Batch limits (per call)
    max_batch_register: int = 50
    max_batch_checkpoints: int = 20
    max_batch_checks: int = 20

    # Field limits
    max_name_length: int = 200
    max_location_length: int = 255
    max_note_length: int = 1000
    max_evidence_length: int = 1000
    max_attributes: int = 50

    # Compliance gate: rules at or above this severity need a minimum confidence
    critical_severity_threshold: int = 4
    min_critical_confidence: int = 80

    # Policies
    checkpoint_updates_enabled: bool = False
    compliance_checks_require_authorization: bool = False

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse CORS origins string into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def async_url(self) -> str:
        """Database URL with an async driver selected."""
        url = self.database_url_app
        if url.startswith("postgresql://"):
            return url.replace("postgresql://", "postgresql+asyncpg://", 1)
        if url.startswith("sqlite:///"):
            return url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        return url

    @field_validator("skip_jwt_validation", mode="before")
    @classmethod
    def parse_skip_jwt_validation(cls, v: bool | str) -> bool:
        """Parse skip_jwt_validation from string or bool."""
        if isinstance(v, bool):
            return v
        if isinstance(v, str):
            return v.lower() in ("true", "1", "yes", "on")
        return bool(v)

    @field_validator("app_env", mode="before")
    @classmethod
    def validate_app_env(cls, v: str | AppEnvironment) -> AppEnvironment:
        """Validate and parse app_env to AppEnvironment enum."""
        if isinstance(v, AppEnvironment):
            return v
        try:
            return AppEnvironment(v.lower())
        except ValueError:
            raise ValueError(
                f"app_env must be one of {[e.value for e in AppEnvironment]}, got '{v}'"
            )

    @field_validator("app_region")
    @classmethod
    def validate_app_region(cls, v: str) -> str:
        """Validate app_region follows expected format."""
        if not v or not v.strip():
            raise ValueError("app_region must be set")
        region = v.strip().upper()
        if not re.match(r"^[A-Z0-9][A-Z0-9_-]{0,19}$", region):
            raise ValueError(
                "app_region must be 1-20 alphanumeric characters "
                f"(hyphens/underscores allowed), got '{v}'"
            )
        return region

    @field_validator("admin_actor")
    @classmethod
    def validate_admin_actor(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("admin_actor must be set")
        return v.strip()

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject limit combinations that make the documented contract meaningless."""
        for name in ("max_batch_register", "max_batch_checkpoints", "max_batch_checks"):
            if getattr(self, name) < 1:
                raise ValueError(f"{name} must be at least 1")
        if not 1 <= self.critical_severity_threshold <= 5:
            raise ValueError("critical_severity_threshold must be between 1 and 5")
        if not 0 <= self.min_critical_confidence <= 100:
            raise ValueError("min_critical_confidence must be between 0 and 100")
        return self

    @model_validator(mode="after")
    def validate_production_settings(self) -> "Settings":
        """
        Validate production-specific settings.

        These checks prevent insecure configurations from being deployed to production.
        """
        # SECURITY: JWT validation bypass is ONLY allowed in LOCAL environment
        if self.skip_jwt_validation and self.app_env != AppEnvironment.LOCAL:
            raise ValueError(
                "SECURITY_SKIP_JWT_VALIDATION can only be set in local environment. "
                f"Current environment: {self.app_env.value}"
            )

        if self.app_env == AppEnvironment.PROD:
            if not self.secret_key or len(self.secret_key) < 32:
                raise ValueError("SECRET_KEY must be set and at least 32 characters in production")

            if not self.database_url_app.startswith(("postgresql://", "postgresql+asyncpg://")):
                raise ValueError("DATABASE_URL_APP must use PostgreSQL in production")

            for origin in self.cors_origins_list:
                if "localhost" in origin or "127.0.0.1" in origin:
                    raise ValueError(
                        f"CORS origins must not contain localhost in production: {origin}"
                    )

        return self


settings = Settings()
