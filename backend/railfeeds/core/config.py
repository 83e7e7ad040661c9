"""Application configuration.

Environment variables are loaded from .env file and can be overridden.
All settings have sensible defaults for local development; feeds whose
credentials are missing stay disabled instead of failing startup.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Annotated, Any, Literal

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict

# Values shipped in sample .env files; treated as "not configured".
PLACEHOLDER_CREDENTIALS = frozenset(
    {
        "your_darwin_username",
        "your_darwin_password",
        "your_darwin_api_key",
        "your_network_rail_username",
        "your_network_rail_password",
    }
)


def _valkey_alias(env_name: str) -> AliasChoices:
    """Support both VALKEY_* and REDIS_* env var names for compatibility."""
    redis_name = env_name.replace("VALKEY_", "REDIS_")
    return AliasChoices(redis_name, env_name)


def is_configured(*values: str | None) -> bool:
    """Return True when every value is present and not a sample placeholder."""
    return all(
        value and value.strip() and value.strip() not in PLACEHOLDER_CREDENTIALS
        for value in values
    )


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # ==========================================================================
    # Infrastructure
    # ==========================================================================

    # Environment mode - set to 'production' in production deployments
    environment: str = Field(
        default="development",
        alias="ENVIRONMENT",
        description="Deployment environment: 'development', 'staging', or 'production'.",
    )

    valkey_url: str = Field(
        default="valkey://localhost:6379/0",
        validation_alias=_valkey_alias("VALKEY_URL"),
    )

    # ==========================================================================
    # Network Rail open data feeds (STOMP + supporting files)
    # ==========================================================================

    network_rail_username: str | None = Field(
        default=None, alias="NETWORK_RAIL_USERNAME"
    )
    network_rail_password: str | None = Field(
        default=None, alias="NETWORK_RAIL_PASSWORD"
    )
    network_rail_stomp_host: str = Field(
        default="publicdatafeeds.networkrail.co.uk", alias="NETWORK_RAIL_STOMP_HOST"
    )
    network_rail_stomp_port: int = Field(
        default=61618, alias="NETWORK_RAIL_STOMP_PORT", gt=0, le=65535
    )
    network_rail_stomp_vhost: str = Field(
        default="/", alias="NETWORK_RAIL_STOMP_VHOST"
    )
    network_rail_api_url: str = Field(
        default="https://publicdatafeeds.networkrail.co.uk",
        alias="NETWORK_RAIL_API_URL",
    )

    feed_movements_enabled: bool = Field(default=True, alias="FEED_MOVEMENTS_ENABLED")
    feed_vstp_enabled: bool = Field(default=True, alias="FEED_VSTP_ENABLED")
    feed_td_enabled: bool = Field(default=True, alias="FEED_TD_ENABLED")
    feed_tsr_enabled: bool = Field(default=True, alias="FEED_TSR_ENABLED")
    feed_rtppm_enabled: bool = Field(default=True, alias="FEED_RTPPM_ENABLED")
    td_areas: Annotated[list[str], NoDecode] = Field(
        default_factory=lambda: ["ALL"], alias="TD_AREAS"
    )

    # ==========================================================================
    # Darwin push port (persistent STOMP connection)
    # ==========================================================================

    darwin_enabled: bool = Field(default=False, alias="DARWIN_ENABLED")
    darwin_username: str | None = Field(default=None, alias="DARWIN_USERNAME")
    darwin_password: str | None = Field(default=None, alias="DARWIN_PASSWORD")
    darwin_stomp_host: str = Field(
        default="datafeeds.nationalrail.co.uk", alias="DARWIN_STOMP_HOST"
    )
    darwin_stomp_port: int = Field(
        default=61617, alias="DARWIN_STOMP_PORT", gt=0, le=65535
    )
    darwin_stomp_ssl: bool = Field(default=True, alias="DARWIN_STOMP_SSL")
    darwin_topic: str = Field(
        default="/topic/darwin.pushport-v16", alias="DARWIN_TOPIC"
    )

    # ==========================================================================
    # Darwin pub/sub bridge (HTTP relay in front of the push port)
    # ==========================================================================

    darwin_broker_url: str | None = Field(default=None, alias="DARWIN_BROKER_URL")
    darwin_broker_timeout_seconds: float = Field(
        default=10.0, alias="DARWIN_BROKER_TIMEOUT_SECONDS", gt=0.0
    )

    # ==========================================================================
    # Legacy departure board service (OpenLDBWS SOAP)
    # ==========================================================================

    ldb_api_url: str = Field(
        default="https://lite.realtime.nationalrail.co.uk/OpenLDBWS/ldb12.asmx",
        alias="LDB_API_URL",
    )
    ldb_api_token: str | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "LDB_API_TOKEN", "DARWIN_API_KEY", "DARWIN_API_TOKEN"
        ),
    )
    ldb_timeout_seconds: float = Field(
        default=10.0, alias="LDB_TIMEOUT_SECONDS", gt=0.0
    )

    # ==========================================================================
    # Departure board facade
    # ==========================================================================

    board_cache_ttl_seconds: int = Field(
        default=20, alias="BOARD_CACHE_TTL_SECONDS", ge=0
    )
    board_strategy_timeout_seconds: float = Field(
        default=15.0, alias="BOARD_STRATEGY_TIMEOUT_SECONDS", gt=0.0
    )

    # ==========================================================================
    # STOMP reconnect behaviour
    # ==========================================================================

    stomp_reconnect_base_ms: int = Field(
        default=1000, alias="STOMP_RECONNECT_BASE_MS", gt=0
    )
    stomp_reconnect_max_ms: int = Field(
        default=30000, alias="STOMP_RECONNECT_MAX_MS", gt=0
    )
    stomp_reconnect_max_attempts: int = Field(
        default=10, alias="STOMP_RECONNECT_MAX_ATTEMPTS", ge=0
    )
    stomp_connect_timeout_seconds: float = Field(
        default=30.0, alias="STOMP_CONNECT_TIMEOUT_SECONDS", gt=0.0
    )
    stomp_debug_logging: bool = Field(default=False, alias="STOMP_DEBUG_LOGGING")

    # ==========================================================================
    # Realtime fan-out
    # ==========================================================================

    realtime_backend: Literal["memory", "valkey"] = Field(
        default="memory", alias="REALTIME_BACKEND"
    )
    realtime_valkey_url: str | None = Field(default=None, alias="REALTIME_VALKEY_URL")
    realtime_recent_limit: int = Field(
        default=200, alias="REALTIME_RECENT_LIMIT", ge=1, le=5000
    )

    # ==========================================================================
    # Background jobs
    # ==========================================================================

    feed_stats_interval_seconds: int = Field(
        default=60, alias="FEED_STATS_INTERVAL_SECONDS", ge=1
    )
    reference_refresh_interval_hours: int = Field(
        default=24, alias="REFERENCE_REFRESH_INTERVAL_HOURS", ge=1
    )
    reference_data_timeout_seconds: float = Field(
        default=30.0, alias="REFERENCE_DATA_TIMEOUT_SECONDS", gt=0.0
    )
    reference_load_on_startup: bool = Field(
        default=True, alias="REFERENCE_LOAD_ON_STARTUP"
    )

    # ==========================================================================
    # CORS
    # ==========================================================================

    cors_allow_origins: list[str] = Field(
        default_factory=lambda: [
            "http://localhost:5173",
            "http://localhost:3000",
            "http://127.0.0.1:5173",
            "http://127.0.0.1:3000",
        ],
        alias="CORS_ALLOW_ORIGINS",
    )
    cors_allow_origin_regex: str | None = Field(
        default=None, alias="CORS_ALLOW_ORIGIN_REGEX"
    )

    # ==========================================================================
    # OpenTelemetry (optional)
    # ==========================================================================

    otel_enabled: bool = Field(default=False, alias="OTEL_ENABLED")
    otel_service_name: str = Field(default="railfeeds-backend", alias="OTEL_SERVICE_NAME")
    otel_service_version: str = Field(default="0.1.0", alias="OTEL_SERVICE_VERSION")
    otel_exporter_otlp_endpoint: str = Field(
        default="http://jaeger:4317", alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    otel_exporter_otlp_headers: str | None = Field(
        default=None, alias="OTEL_EXPORTER_OTLP_HEADERS"
    )

    # ==========================================================================
    # Pydantic Settings Config
    # ==========================================================================

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ==========================================================================
    # Validators
    # ==========================================================================

    @field_validator("cors_allow_origins", mode="before")
    @classmethod
    def parse_cors_origins(cls, value: Any) -> list[str]:
        """Parse comma-separated CORS origins, rejecting wildcard '*'."""
        if isinstance(value, str):
            if not value:
                return []
            parsed = [item.strip() for item in value.split(",") if item.strip()]
        else:
            parsed = list(value) if value is not None else []

        if "*" in parsed:
            raise ValueError(
                "Wildcard CORS origin '*' is not allowed. "
                "Specify explicit origins like 'http://localhost:3000'."
            )
        return parsed

    @field_validator("td_areas", mode="before")
    @classmethod
    def parse_td_areas(cls, value: Any) -> list[str]:
        """Parse comma-separated train describer areas."""
        if isinstance(value, str):
            areas = [item.strip().upper() for item in value.split(",") if item.strip()]
        else:
            areas = [str(item).strip().upper() for item in value or []]
        return areas or ["ALL"]

    @model_validator(mode="after")
    def validate_production_credentials(self) -> "Settings":
        """Reject sample credentials when running in production."""
        if self.environment.lower() == "production":
            for name in (
                "network_rail_username",
                "network_rail_password",
                "darwin_username",
                "darwin_password",
                "ldb_api_token",
            ):
                value = getattr(self, name)
                if value and value.strip() in PLACEHOLDER_CREDENTIALS:
                    raise ValueError(
                        f"Placeholder value configured for {name} in production. "
                        "Set the real credential or leave it unset to disable the feed."
                    )
        return self

    # ==========================================================================
    # Derived flags
    # ==========================================================================

    @property
    def network_rail_configured(self) -> bool:
        return is_configured(self.network_rail_username, self.network_rail_password)

    @property
    def push_port_configured(self) -> bool:
        return self.darwin_enabled and is_configured(
            self.darwin_username, self.darwin_password
        )

    @property
    def bridge_configured(self) -> bool:
        return bool(self.darwin_broker_url and self.darwin_broker_url.strip())

    @property
    def ldb_configured(self) -> bool:
        return bool(self.ldb_api_url) and is_configured(self.ldb_api_token)

    @property
    def effective_realtime_valkey_url(self) -> str:
        return self.realtime_valkey_url or self.valkey_url


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
