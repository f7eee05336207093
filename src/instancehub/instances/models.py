"""Instance domain models."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field


class InstanceStatus(str, Enum):
    """Instance lifecycle status.

    stopped -> starting -> running -> stopping -> stopped
    running -> restarting -> running
    any non-terminal state -> error on failure
    """

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"
    RESTARTING = "restarting"


class InstanceConfig(BaseModel):
    """Worker launch configuration, persisted verbatim to config.json."""

    port: int = 0
    debug: bool = False
    os: str = ""
    basic_auth: list[str] = Field(default_factory=list)
    base_path: str = ""
    db_uri: str = ""
    db_keys_uri: str = ""
    auto_reply: str = ""
    auto_mark_read: bool = False
    webhooks: list[str] = Field(default_factory=list)
    webhook_secret: str = ""
    account_validation: bool = True
    environment: dict[str, str] = Field(default_factory=dict)


class Instance(BaseModel):
    """One managed worker."""

    id: str
    name: str
    phone: str = ""
    status: InstanceStatus = InstanceStatus.STOPPED
    port: int
    pid: int = 0
    working_dir: str
    config_path: str
    log_path: str
    created_at: datetime
    started_at: datetime | None = None
    last_seen: datetime | None = None
    config: InstanceConfig = Field(default_factory=InstanceConfig)
    metadata: dict[str, str] = Field(default_factory=dict)


class ResourceUsage(BaseModel):
    """Per-instance resource usage. CPU and memory are not sampled yet."""

    pid: int
    cpu_percent: float = 0.0
    memory_mb: int = 0


class InstanceStats(BaseModel):
    """Aggregate view over the registry."""

    total_instances: int = 0
    running_instances: int = 0
    stopped_instances: int = 0
    error_instances: int = 0
    instances_by_status: dict[InstanceStatus, int] = Field(default_factory=dict)
    resource_usage: dict[str, ResourceUsage] = Field(default_factory=dict)
    last_updated: datetime
