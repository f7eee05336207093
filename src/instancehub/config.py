"""Hub configuration using pydantic-settings.

Configuration hierarchy:
- InstancesConfig: Registry location, port range, reconcile loop
- IsolationConfig: Process resource limits and supervision
- DatabaseConfig: Storage backend selection
- WorkerConfig: How worker processes are launched
- LoggingConfig: Logging behavior
- ServerConfig: HTTP server
- HubConfig: Main config aggregating all sub-configs

Environment variable prefix: HUB_
Example: HUB_INSTANCES_BASE_PORT=5001
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class InstancesConfig(BaseSettings):
    """Instance registry configuration."""

    model_config = SettingsConfigDict(env_prefix="HUB_INSTANCES_")

    base_path: Path = Field(
        default=Path("storages/instances"),
        description="Directory holding the registry file and one directory per instance",
    )
    registry_file: str = Field(default="instances.json", description="Registry file name")

    # Port allocation when an instance is created with port=0
    base_port: int = Field(default=3001, description="First port scanned for auto-allocation")
    max_port: int = Field(default=3999, description="Last port scanned for auto-allocation")

    reconcile_interval: float = Field(
        default=30.0,
        description="Seconds between reconciliation cycles",
    )
    delete_settle_seconds: float = Field(
        default=2.0,
        description="Wait after stopping a running instance before tearing it down",
    )


class IsolationConfig(BaseSettings):
    """Process isolation limits.

    Scale guide (N = concurrent instances):
      10  -> memory_limit_mb=512, monitoring_interval=10s
      50  -> memory_limit_mb=256, monitoring_interval=15s
    """

    model_config = SettingsConfigDict(env_prefix="HUB_ISOLATION_")

    enable_resource_limits: bool = Field(default=True)
    memory_limit_mb: int = Field(default=512, description="Memory ceiling per process (MB)")
    cpu_limit_percent: float = Field(default=50.0, description="CPU ceiling per process (%)")
    timeout: float = Field(default=1800.0, description="Run timeout (seconds), 0 disables")
    monitoring_interval: float = Field(default=10.0, description="Liveness poll (seconds)")
    auto_restart: bool = Field(default=True)
    max_restarts: int = Field(default=3)

    # Supervision timings
    stop_grace_seconds: float = Field(
        default=10.0,
        description="Wait after SIGTERM before SIGKILL",
    )
    restart_delay_seconds: float = Field(
        default=2.0,
        description="Pause between stop and start on restart",
    )


class DatabaseConfig(BaseSettings):
    """Storage backend configuration.

    An empty url (or a sqlite one) selects the embedded-file backend.
    A postgres:// or postgresql:// url selects the networked backend and is
    used as the shared base URI for every instance database.
    """

    model_config = SettingsConfigDict(env_prefix="HUB_DATABASE_")

    url: str = Field(default="", description="Base database URI")
    echo: bool = False
    primary_prefix: str = Field(default="instance", description="Primary database name prefix")
    keys_prefix: str = Field(default="keys", description="Key-material database name prefix")

    @property
    def is_postgres(self) -> bool:
        return self.url.startswith(("postgres:", "postgresql:", "postgresql+"))


class WorkerConfig(BaseSettings):
    """Worker process launch configuration."""

    model_config = SettingsConfigDict(env_prefix="HUB_WORKER_")

    executable: str = Field(
        default="",
        description="Worker executable; required to start instances",
    )
    subcommand: str = Field(default="rest", description="Subcommand passed to the worker")
    env_prefix: str = Field(
        default="INSTANCE_",
        description="Prefix of instance-scoped environment variables",
    )


class LoggingConfig(BaseSettings):
    """Logging configuration.

    Supports both text and JSON formats for different environments:
    - text: Human-readable for local development
    - json: Structured logging for production (log aggregation)
    """

    model_config = SettingsConfigDict(env_prefix="HUB_LOGGING_")

    level: str = Field(default="INFO", description="Log level (DEBUG, INFO, WARNING, ERROR)")
    format: str = Field(default="text", description="Log format (text, json)")
    service_name: str = Field(default="instancehub", description="Service identifier in logs")
    slow_threshold_ms: float = Field(
        default=1000.0,
        description="Threshold for slow reconcile warnings (milliseconds)",
    )


class ServerConfig(BaseSettings):
    """HTTP server configuration."""

    model_config = SettingsConfigDict(env_prefix="HUB_SERVER_")

    host: str = Field(default="0.0.0.0", description="Server bind address")
    port: int = Field(default=3000, description="Server port")
    api_key: str = Field(default="", description="API key for authentication")
    cors_origins: list[str] = Field(
        default=["*"],
        description="Allowed CORS origins",
    )


class HubConfig(BaseSettings):
    """Main hub configuration aggregating all sub-configs.

    Environment variable prefix: HUB_
    Sub-configs use their own prefixes (HUB_INSTANCES_, HUB_DATABASE_, etc.)
    """

    model_config = SettingsConfigDict(
        env_prefix="HUB_",
        env_nested_delimiter="__",
    )

    instances: InstancesConfig = Field(default_factory=InstancesConfig)
    isolation: IsolationConfig = Field(default_factory=IsolationConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)


@lru_cache
def get_hub_config() -> HubConfig:
    """Get cached hub configuration singleton."""
    return HubConfig()
