"""Configuration management for the query engine."""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ExecutionConfig(BaseModel):
    """Query execution configuration."""

    default_timeout_seconds: float | None = Field(
        default=None, gt=0, description="Timeout applied when the caller gives none"
    )
    on_unsupported: Literal["fallback", "error"] = Field(
        default="fallback",
        description="What to do when the target adapter cannot compile a plan",
    )


class TargetConfig(BaseModel):
    """SQL target adapter configuration."""

    dialect: str = Field(default="sqlite", description="sqlglot dialect to render")
    pretty: bool = Field(default=False, description="Pretty-print compiled SQL")
    identify: bool = Field(default=True, description="Quote every identifier")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Log level"
    )
    log_format: Literal["json", "console"] = Field(default="json", description="Log format")
    log_queries: bool = Field(default=False, description="Log compiled query text")
    metrics_enabled: bool = Field(default=True, description="Record Prometheus metrics")
    metrics_port: int = Field(default=8001, ge=1, le=65535, description="Prometheus metrics port")
    otel_endpoint: str | None = Field(
        default=None, description="OpenTelemetry collector endpoint"
    )
    otel_service_name: str = Field(default="linq_engine", description="Service name for tracing")


class Config(BaseSettings):
    """Main configuration for the query engine."""

    model_config = SettingsConfigDict(
        env_prefix="LINQ_ENGINE_",
        env_nested_delimiter="__",
        case_sensitive=False,
    )

    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    target: TargetConfig = Field(default_factory=TargetConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)


@lru_cache
def get_config() -> Config:
    """Get the global configuration instance."""
    return Config()
