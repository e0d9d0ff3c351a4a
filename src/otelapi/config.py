"""Environment-based configuration using pydantic-settings."""

from functools import lru_cache
from typing import Any

from pydantic import AliasChoices, BaseModel, Field, ValidationInfo, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

LOG_LEVELS = ("debug", "info", "warn", "error")

_COMMON_CONFIG = SettingsConfigDict(
    env_file=".env",
    env_file_encoding="utf-8",
    case_sensitive=False,
    extra="ignore",
    populate_by_name=True,
)


def _default_for(cls: type[BaseSettings], info: ValidationInfo) -> Any:
    if info.field_name is None:
        raise TypeError("field default lookup needs a field validator")
    return cls.model_fields[info.field_name].default


class TelemetrySettings(BaseSettings):
    """OpenTelemetry export settings (the ``OTEL_*`` variables)."""

    service_name: str = Field(
        default="otel-example-api", validation_alias="OTEL_SERVICE_NAME"
    )
    service_version: str = Field(default="1.0.0", validation_alias="OTEL_SERVICE_VERSION")
    environment: str = Field(
        default="development",
        validation_alias=AliasChoices("OTEL_ENVIRONMENT", "APP_ENV"),
    )
    otlp_endpoint: str = Field(
        default="localhost:4317", validation_alias="OTEL_EXPORTER_OTLP_ENDPOINT"
    )
    otlp_insecure: bool = Field(default=True, validation_alias="OTEL_EXPORTER_OTLP_INSECURE")
    enable_tracing: bool = Field(default=True, validation_alias="OTEL_ENABLE_TRACING")
    enable_metrics: bool = Field(default=True, validation_alias="OTEL_ENABLE_METRICS")
    enable_logging: bool = Field(default=True, validation_alias="OTEL_ENABLE_LOGGING")
    enable_runtime_metrics: bool = Field(
        default=True, validation_alias="OTEL_ENABLE_RUNTIME_METRICS"
    )
    metric_export_interval: float = Field(
        default=15.0, gt=0, validation_alias="OTEL_METRIC_EXPORT_INTERVAL"
    )
    shutdown_timeout: float = Field(default=10.0, gt=0, validation_alias="OTEL_SHUTDOWN_TIMEOUT")

    model_config = _COMMON_CONFIG

    @field_validator("metric_export_interval", "shutdown_timeout", mode="before")
    @classmethod
    def _fallback_on_malformed_number(cls, value: Any, info: ValidationInfo) -> Any:
        try:
            return float(value)
        except (TypeError, ValueError):
            return _default_for(cls, info)


class DatabaseSettings(BaseSettings):
    """SQLite location and connection-pool limits (the ``DB_*`` variables)."""

    path: str = Field(default="otel_example.db", validation_alias="DB_PATH")
    max_open_conns: int = Field(default=25, ge=1, validation_alias="DB_MAX_OPEN_CONNS")
    max_idle_conns: int = Field(default=5, ge=0, validation_alias="DB_MAX_IDLE_CONNS")
    conn_max_lifetime: float | None = Field(default=300.0, validation_alias="DB_CONN_MAX_LIFETIME")
    conn_max_idle_time: float | None = Field(default=None, validation_alias="DB_CONN_MAX_IDLE_TIME")
    acquire_timeout: float | None = Field(default=None, validation_alias="DB_ACQUIRE_TIMEOUT")
    monitor_interval: float = Field(default=30.0, gt=0, validation_alias="DB_MONITOR_INTERVAL")

    model_config = _COMMON_CONFIG

    @field_validator("max_open_conns", "max_idle_conns", mode="before")
    @classmethod
    def _fallback_on_malformed_int(cls, value: Any, info: ValidationInfo) -> Any:
        try:
            return int(value)
        except (TypeError, ValueError):
            return _default_for(cls, info)

    @field_validator(
        "conn_max_lifetime",
        "conn_max_idle_time",
        "acquire_timeout",
        "monitor_interval",
        mode="before",
    )
    @classmethod
    def _fallback_on_malformed_float(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None or value == "":
            return _default_for(cls, info)
        try:
            return float(value)
        except (TypeError, ValueError):
            return _default_for(cls, info)


class AppSettings(BaseSettings):
    """Process-level settings: environment name, log level, bind address."""

    environment: str = Field(default="development", validation_alias="APP_ENV")
    log_level: str = Field(default="info", validation_alias="LOG_LEVEL")
    host: str = Field(default="0.0.0.0", validation_alias="SERVER_HOST")
    port: int = Field(default=8080, validation_alias="SERVER_PORT")

    model_config = _COMMON_CONFIG

    @field_validator("log_level", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: Any) -> str:
        """Lower-case the level; anything unrecognised becomes ``info``."""
        level = str(value or "").strip().lower()
        if level == "warning":
            level = "warn"
        return level if level in LOG_LEVELS else "info"

    @field_validator("port", mode="before")
    @classmethod
    def _fallback_port(cls, value: Any, info: ValidationInfo) -> Any:
        try:
            return int(value)
        except (TypeError, ValueError):
            return _default_for(cls, info)

    @property
    def is_production(self) -> bool:
        return self.environment == "production"


class Settings(BaseModel):
    """All settings groups, loaded together at startup."""

    app: AppSettings = Field(default_factory=AppSettings)
    telemetry: TelemetrySettings = Field(default_factory=TelemetrySettings)
    database: DatabaseSettings = Field(default_factory=DatabaseSettings)


@lru_cache
def get_settings() -> Settings:
    """Load settings from the environment once per process."""
    return Settings()
