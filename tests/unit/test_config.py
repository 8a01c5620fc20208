"""Unit tests for configuration module."""

from __future__ import annotations

import pytest

from linq_engine.infrastructure.config import (
    Config,
    ExecutionConfig,
    ObservabilityConfig,
    TargetConfig,
    get_config,
)


@pytest.mark.unit
class TestConfig:
    """Tests for Config class."""

    def test_default_config(self) -> None:
        """Test default configuration values."""
        config = Config()

        assert config.execution.default_timeout_seconds is None
        assert config.execution.on_unsupported == "fallback"
        assert config.target.dialect == "sqlite"
        assert config.target.identify is True
        assert config.observability.log_format == "json"
        assert config.observability.metrics_port == 8001

    def test_environment_overrides(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test nested settings read from LINQ_ENGINE_ variables."""
        monkeypatch.setenv("LINQ_ENGINE_EXECUTION__ON_UNSUPPORTED", "error")
        monkeypatch.setenv("LINQ_ENGINE_TARGET__DIALECT", "postgres")
        monkeypatch.setenv("LINQ_ENGINE_OBSERVABILITY__LOG_QUERIES", "true")

        config = Config()

        assert config.execution.on_unsupported == "error"
        assert config.target.dialect == "postgres"
        assert config.observability.log_queries is True

    def test_custom_sections(self) -> None:
        """Test building a configuration from explicit sections."""
        config = Config(
            execution=ExecutionConfig(default_timeout_seconds=2.5),
            target=TargetConfig(pretty=True),
        )

        assert config.execution.default_timeout_seconds == 2.5
        assert config.target.pretty is True

    def test_invalid_timeout(self) -> None:
        """Test that a non-positive timeout raises validation error."""
        with pytest.raises(ValueError):
            ExecutionConfig(default_timeout_seconds=0)

    def test_invalid_fallback_policy(self) -> None:
        """Test that an unknown fallback policy raises validation error."""
        with pytest.raises(ValueError):
            ExecutionConfig(on_unsupported="ignore")  # type: ignore[arg-type]

    def test_log_levels(self) -> None:
        """Test valid log levels."""
        for level in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
            observability = ObservabilityConfig(log_level=level)  # type: ignore[arg-type]
            assert observability.log_level == level


@pytest.mark.unit
class TestConfigSingleton:
    """Tests for get_config singleton."""

    def test_get_config_returns_same_instance(self) -> None:
        """Test that get_config returns the same instance."""
        config1 = get_config()
        config2 = get_config()
        assert config1 is config2
