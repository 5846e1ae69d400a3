"""Unit tests for configuration management.

Tests cover:
- Default configuration values
- TOML file loading, including unit and component tables
- Environment variable overrides
- Validation errors for invalid configurations
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from rollwright.config import (
    BuildConfig,
    DatabaseConfig,
    HealthConfig,
    LoggingConfig,
    PolicyAction,
    ReconcilerConfig,
    RegistryConfig,
    ReleaseConfig,
    RollwrightConfig,
    load_config,
)


class TestDatabaseConfig:
    """Test DatabaseConfig defaults and validation."""

    def test_default_values(self) -> None:
        """The ledger defaults to a local SQLite file."""
        config = DatabaseConfig()
        assert config.url == "sqlite+aiosqlite:///./rollwright.db"
        assert config.pool_size == 5
        assert config.enabled is True

    def test_pool_size_validation(self) -> None:
        with pytest.raises(ValidationError):
            DatabaseConfig(pool_size=0)
        with pytest.raises(ValidationError):
            DatabaseConfig(pool_size=101)


class TestLoggingConfig:
    """Test LoggingConfig validators."""

    def test_level_is_normalized(self) -> None:
        assert LoggingConfig(level="debug").level == "DEBUG"

    def test_invalid_level(self) -> None:
        with pytest.raises(ValidationError, match="Invalid log level"):
            LoggingConfig(level="chatty")

    def test_invalid_format(self) -> None:
        with pytest.raises(ValidationError, match="Invalid log format"):
            LoggingConfig(format="xml")


class TestBuildConfig:
    """Test scan policy configuration."""

    def test_default_policy_is_non_blocking(self) -> None:
        config = BuildConfig()
        assert config.scan_policy == {}
        assert config.default_action == PolicyAction.WARN

    def test_severity_keys_are_normalized(self) -> None:
        config = BuildConfig(scan_policy={"critical": "block", "High": "warn"})
        assert config.scan_policy == {
            "CRITICAL": PolicyAction.BLOCK,
            "HIGH": PolicyAction.WARN,
        }

    def test_unknown_severity_rejected(self) -> None:
        with pytest.raises(ValidationError, match="Unknown severity"):
            BuildConfig(scan_policy={"SEVERE": "block"})


class TestTimingConfig:
    """Test retry, reconcile and health timing bounds."""

    def test_reconciler_defaults(self) -> None:
        config = ReconcilerConfig()
        assert config.poll_interval_seconds == 180.0
        assert config.prune_enabled is False
        assert config.prune_allowed_kinds == []
        assert config.retry_base_seconds == 5.0
        assert config.retry_factor == 2.0
        assert config.retry_cap_seconds == 180.0

    def test_health_restart_threshold_must_be_positive(self) -> None:
        with pytest.raises(ValidationError):
            HealthConfig(restart_threshold=0)

    def test_registry_attempts_bounded(self) -> None:
        with pytest.raises(ValidationError):
            RegistryConfig(push_max_attempts=0)

    def test_history_window_needs_room_for_a_prior_release(self) -> None:
        with pytest.raises(ValidationError):
            ReleaseConfig(history_window=1)

    def test_stage_timeouts_positive(self) -> None:
        with pytest.raises(ValidationError):
            ReleaseConfig(timeouts={"building": 0})


class TestRollwrightConfig:
    """Test root configuration assembly."""

    def test_defaults(self) -> None:
        config = RollwrightConfig()
        assert config.units == {}
        assert config.release.auto_rollback is True
        assert config.web.port == 8080

    def test_extra_fields_forbidden(self) -> None:
        with pytest.raises(ValidationError):
            RollwrightConfig(unknown_section={})

    def test_env_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("ROLLWRIGHT_HEALTH__WINDOW_SECONDS", "42")
        monkeypatch.setenv("ROLLWRIGHT_CLUSTER__API_URL", "https://10.0.0.1:6443")
        config = RollwrightConfig()
        assert config.health.window_seconds == 42.0
        assert config.cluster.api_url == "https://10.0.0.1:6443"


class TestLoadConfig:
    """Test TOML loading."""

    def test_load_units_from_toml(self, tmp_path: Path) -> None:
        path = tmp_path / "rollwright.toml"
        path.write_text(
            """
[reconciler]
prune_enabled = true
prune_allowed_kinds = ["ConfigMap"]

[units.shop]
namespace = "shop"

[units.shop.components.backend]
context = "services/backend"
repository = "ghcr.io/acme/shop-backend"
""",
            encoding="utf-8",
        )

        config = load_config(path)

        assert config.reconciler.prune_enabled is True
        assert config.reconciler.prune_allowed_kinds == ["ConfigMap"]
        backend = config.units["shop"].components["backend"]
        assert config.units["shop"].namespace == "shop"
        assert backend.repository == "ghcr.io/acme/shop-backend"
        assert backend.context == Path("services/backend")
        assert backend.dockerfile == "Dockerfile"

    def test_missing_explicit_file(self, tmp_path: Path) -> None:
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "absent.toml")

    def test_invalid_toml_values(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.toml"
        path.write_text("[health]\nrestart_threshold = 0\n", encoding="utf-8")
        with pytest.raises(ValueError, match="Invalid configuration"):
            load_config(path)

    def test_no_file_uses_defaults(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config()
        assert config.units == {}
