"""Configuration management for Rollwright.

This module defines the configuration schema using Pydantic settings,
supporting TOML files, environment variables, and programmatic overrides.

Configuration loading priority (highest to lowest):
1. Programmatic overrides (passed to RollwrightConfig constructor)
2. Environment variables (ROLLWRIGHT_* prefix)
3. TOML configuration file
4. Default values defined in this module

Example TOML configuration:
    [reconciler]
    poll_interval_seconds = 180
    prune_enabled = true
    prune_allowed_kinds = ["Deployment", "Service"]

    [units.shop]
    namespace = "shop"

    [units.shop.components.backend]
    context = "services/backend"
    repository = "ghcr.io/acme/shop-backend"

Example environment variable override:
    ROLLWRIGHT_CLUSTER__API_URL="https://10.0.0.1:6443"
    ROLLWRIGHT_HEALTH__WINDOW_SECONDS=600
"""

from __future__ import annotations

from enum import Enum
from pathlib import Path
from typing import Any

import tomli
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DatabaseConfig(BaseSettings):
    """Release ledger database configuration.

    Attributes:
        url: SQLAlchemy async database URL
        pool_size: Number of connections to maintain in the pool
        max_overflow: Maximum number of connections beyond pool_size
        echo: Enable SQL query logging
        enabled: Record release events to the ledger
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_DATABASE__",
        extra="forbid",
    )

    url: str = Field(
        default="sqlite+aiosqlite:///./rollwright.db",
        description="Ledger database URL",
    )
    pool_size: int = Field(default=5, ge=1, le=100)
    max_overflow: int = Field(default=10, ge=0, le=100)
    echo: bool = Field(default=False)
    enabled: bool = Field(default=True)


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Attributes:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json or console)
        file: Optional log file path (None for stdout only)
        rotation_size_mb: Log file rotation size in megabytes
        retention_count: Number of rotated log files to keep
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_LOGGING__",
        extra="forbid",
    )

    level: str = Field(default="INFO")
    format: str = Field(default="json")
    file: Path | None = Field(default=None)
    rotation_size_mb: int = Field(default=50, ge=1, le=1000)
    retention_count: int = Field(default=10, ge=1, le=100)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level is recognized."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Invalid log level: {v}. Must be one of {valid_levels}")
        return v_upper

    @field_validator("format")
    @classmethod
    def validate_format(cls, v: str) -> str:
        """Validate log format is recognized."""
        valid_formats = {"json", "console"}
        v_lower = v.lower()
        if v_lower not in valid_formats:
            raise ValueError(f"Invalid log format: {v}. Must be one of {valid_formats}")
        return v_lower


class RegistryConfig(BaseSettings):
    """Artifact registry (Docker/OCI) configuration.

    Attributes:
        registry: Registry host used for login
        rootless: Use rootless Docker daemon
        push_max_attempts: Total publish attempts before PublishFailure
        push_initial_delay_seconds: Delay before the first publish retry
        push_backoff_multiplier: Exponential multiplier between retries
        push_max_delay_seconds: Cap on a single retry delay
        latest_alias: Mutable advisory tag pushed next to the commit tag
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_REGISTRY__",
        extra="forbid",
    )

    registry: str = Field(default="ghcr.io")
    rootless: bool = Field(default=False)
    push_max_attempts: int = Field(default=5, ge=1, le=20)
    push_initial_delay_seconds: float = Field(default=2.0, ge=0.0, le=300.0)
    push_backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0)
    push_max_delay_seconds: float = Field(default=60.0, ge=0.0, le=600.0)
    latest_alias: str = Field(default="latest")


class PolicyAction(str, Enum):
    """Action taken for a scan finding of a given severity.

    Attributes:
        BLOCK: Reject the artifact, nothing is published for it
        WARN: Publish, but record and log the finding
        IGNORE: Publish silently
    """

    BLOCK = "block"
    WARN = "warn"
    IGNORE = "ignore"


SEVERITIES = ("CRITICAL", "HIGH", "MEDIUM", "LOW", "UNKNOWN")


class BuildConfig(BaseSettings):
    """Build and compliance scan configuration.

    The scan policy is explicit configuration. Unlisted severities fall back
    to ``default_action``, which is non-blocking unless configured otherwise.

    Attributes:
        build_timeout_seconds: Docker build timeout
        source_repo: Git repository checked out per commit for builds
        scan_enabled: Run the vulnerability scan gate
        scanner_command: Scanner executable (Trivy compatible JSON output)
        scan_timeout_seconds: Timeout for a single image scan
        scan_policy: Severity name to policy action
        default_action: Action for severities absent from scan_policy
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_BUILD__",
        extra="forbid",
    )

    build_timeout_seconds: int = Field(default=1800, ge=60, le=14400)
    scan_enabled: bool = Field(default=True)
    source_repo: Path | None = Field(default=None)
    scanner_command: str = Field(default="trivy")
    scan_timeout_seconds: int = Field(default=600, ge=10, le=3600)
    scan_policy: dict[str, PolicyAction] = Field(default_factory=dict)
    default_action: PolicyAction = Field(default=PolicyAction.WARN)

    @field_validator("scan_policy")
    @classmethod
    def validate_severities(cls, v: dict[str, PolicyAction]) -> dict[str, PolicyAction]:
        """Normalize severity keys and reject unknown ones."""
        normalized: dict[str, PolicyAction] = {}
        for severity, action in v.items():
            key = severity.upper()
            if key not in SEVERITIES:
                raise ValueError(f"Unknown severity: {severity}. Must be one of {SEVERITIES}")
            normalized[key] = action
        return normalized


class ManifestConfig(BaseSettings):
    """Git-backed manifest store configuration.

    Attributes:
        repo_path: Local clone of the manifest repository
        branch: Branch holding the manifest history
        remote: Remote name to pull from and push to (None for local only)
        max_conflict_retries: Re-read attempts after an append conflict
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_MANIFEST__",
        extra="forbid",
    )

    repo_path: Path = Field(default=Path("/var/lib/rollwright/manifests"))
    branch: str = Field(default="main")
    remote: str | None = Field(default=None)
    max_conflict_retries: int = Field(default=10, ge=1, le=100)


class ClusterConfig(BaseSettings):
    """Kubernetes API server configuration.

    Attributes:
        api_url: API server base URL
        token: Bearer token (takes precedence over token_file)
        token_file: Path to a service account token
        ca_file: CA bundle for TLS verification
        verify_tls: Verify the API server certificate
        request_timeout_seconds: Timeout for a single API request
        field_manager: Server-side apply field manager name
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_CLUSTER__",
        extra="forbid",
    )

    api_url: str = Field(default="https://kubernetes.default.svc")
    token: str | None = Field(default=None)
    token_file: Path | None = Field(
        default=Path("/var/run/secrets/kubernetes.io/serviceaccount/token")
    )
    ca_file: Path | None = Field(default=None)
    verify_tls: bool = Field(default=True)
    request_timeout_seconds: float = Field(default=30.0, gt=0.0, le=300.0)
    field_manager: str = Field(default="rollwright")


class ReconcilerConfig(BaseSettings):
    """GitOps reconciliation loop configuration.

    Attributes:
        poll_interval_seconds: Interval between manifest head polls
        prune_enabled: Delete live resources absent from the target revision
        prune_allowed_kinds: Kinds eligible for pruning when enabled
        retry_base_seconds: Backoff before the first pass retry
        retry_factor: Backoff multiplier between pass retries
        retry_cap_seconds: Maximum single backoff delay
        max_retries: Pass retries before the sync is reported stuck
        history_size: SyncOperations retained per unit
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_RECONCILER__",
        extra="forbid",
    )

    poll_interval_seconds: float = Field(default=180.0, gt=0.0, le=3600.0)
    prune_enabled: bool = Field(default=False)
    prune_allowed_kinds: list[str] = Field(default_factory=list)
    retry_base_seconds: float = Field(default=5.0, ge=0.0, le=300.0)
    retry_factor: float = Field(default=2.0, ge=1.0, le=10.0)
    retry_cap_seconds: float = Field(default=180.0, ge=0.0, le=3600.0)
    max_retries: int = Field(default=5, ge=0, le=50)
    history_size: int = Field(default=50, ge=1, le=10000)


class HealthConfig(BaseSettings):
    """Post-sync health verification configuration.

    Attributes:
        window_seconds: Total patience before classifying Degraded
        stability_seconds: Continuous readiness required for Healthy
        poll_interval_seconds: Delay between health polls
        restart_threshold: Container restarts within the window that count
            as a crash loop
        probe_timeout_seconds: Timeout for HTTP/TCP readiness probes
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_HEALTH__",
        extra="forbid",
    )

    window_seconds: float = Field(default=300.0, gt=0.0, le=7200.0)
    stability_seconds: float = Field(default=30.0, ge=0.0, le=3600.0)
    poll_interval_seconds: float = Field(default=5.0, gt=0.0, le=300.0)
    restart_threshold: int = Field(default=3, ge=1, le=100)
    probe_timeout_seconds: float = Field(default=5.0, gt=0.0, le=120.0)


class StageTimeouts(BaseModel):
    """Per-stage timeouts in seconds.

    A stage exceeding its timeout fails the release before the manifest
    append and degrades it afterwards.
    """

    building: float = Field(default=1800.0, gt=0.0)
    scanning: float = Field(default=900.0, gt=0.0)
    publishing: float = Field(default=900.0, gt=0.0)
    manifest_updated: float = Field(default=120.0, gt=0.0)
    syncing: float = Field(default=1800.0, gt=0.0)
    health: float = Field(default=600.0, gt=0.0)


class ReleaseConfig(BaseSettings):
    """Release coordinator configuration.

    Attributes:
        history_window: Releases retained per unit for rollback selection
        auto_rollback: Roll back automatically on a degraded release
        timeouts: Per-stage timeouts
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_RELEASE__",
        env_nested_delimiter="__",
        extra="forbid",
    )

    history_window: int = Field(default=20, ge=2, le=1000)
    auto_rollback: bool = Field(default=True)
    timeouts: StageTimeouts = Field(default_factory=StageTimeouts)


class WebConfig(BaseSettings):
    """Operator API and webhook receiver configuration.

    Attributes:
        host: Bind host address
        port: Bind port number
        cors_origins: Allowed CORS origins
        webhook_secret: HMAC-SHA256 secret for inbound commit webhooks
        api_url: Base URL the CLI uses to reach a running server
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_WEB__",
        extra="forbid",
    )

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    cors_origins: list[str] = Field(default_factory=list)
    webhook_secret: str | None = Field(default=None)
    api_url: str = Field(default="http://localhost:8080")


class ComponentConfig(BaseModel):
    """A buildable component of a deployable unit.

    Attributes:
        context: Docker build context directory
        dockerfile: Dockerfile path relative to the context
        repository: Registry repository the component is published to
    """

    context: Path = Field(default=Path("."))
    dockerfile: str = Field(default="Dockerfile")
    repository: str


class UnitConfig(BaseModel):
    """A deployable unit: one manifest history, one release queue.

    Attributes:
        namespace: Cluster namespace the unit deploys into
        components: Component name to build settings
    """

    namespace: str
    components: dict[str, ComponentConfig] = Field(default_factory=dict)


class RollwrightConfig(BaseSettings):
    """Root configuration for Rollwright.

    Aggregates all subsystem configurations. Configuration can be loaded from:
    1. TOML files (using load_config function)
    2. Environment variables (ROLLWRIGHT_* prefix)
    3. Direct instantiation with keyword arguments

    Environment variable format for nested config:
        ROLLWRIGHT_<SECTION>__<KEY>=value
    """

    model_config = SettingsConfigDict(
        env_prefix="ROLLWRIGHT_",
        env_nested_delimiter="__",
        extra="forbid",
    )

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    manifest: ManifestConfig = Field(default_factory=ManifestConfig)
    cluster: ClusterConfig = Field(default_factory=ClusterConfig)
    reconciler: ReconcilerConfig = Field(default_factory=ReconcilerConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    release: ReleaseConfig = Field(default_factory=ReleaseConfig)
    web: WebConfig = Field(default_factory=WebConfig)
    units: dict[str, UnitConfig] = Field(default_factory=dict)


def load_config(config_path: Path | None = None) -> RollwrightConfig:
    """Load configuration from TOML file with environment variable overrides.

    Configuration search order (first found is used):
    1. config_path if explicitly provided
    2. ./rollwright.toml (current directory)
    3. ~/.config/rollwright/config.toml (user config directory)

    Args:
        config_path: Explicit path to TOML config file. If None, searches
                    default locations.

    Returns:
        RollwrightConfig: Fully resolved configuration instance.

    Raises:
        FileNotFoundError: If config_path is explicitly provided but doesn't exist.
        ValueError: If TOML file contains invalid configuration.
    """
    toml_data: dict[str, Any] = {}

    if config_path is not None:
        if not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        selected_path = config_path
    else:
        search_paths = [
            Path.cwd() / "rollwright.toml",
            Path.home() / ".config" / "rollwright" / "config.toml",
        ]
        selected_path = None
        for path in search_paths:
            if path.exists():
                selected_path = path
                break

    if selected_path is not None:
        with open(selected_path, "rb") as f:
            toml_data = tomli.load(f)

    # Pydantic overlays environment variables on top of the TOML data
    try:
        return RollwrightConfig(**toml_data)
    except Exception as e:
        if selected_path:
            raise ValueError(
                f"Invalid configuration in {selected_path}: {e}"
            ) from e
        else:
            raise ValueError(f"Invalid configuration: {e}") from e
