"""Configuration models."""

from typing import Literal, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


class AgentConfig(BaseModel):
    """Agent configuration."""
    socket_path: str = Field(default="./state/lxcforge-agent.sock")
    host: Optional[str] = Field(default=None, description="TCP bind address, unix socket only when unset")
    port: int = Field(default=8585)
    log_level: str = Field(default="INFO")
    config_dir: str = Field(default="./configs")
    state_dir: str = Field(default="./state")

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"Invalid log level: {v}")
        return v.upper()


class RedisConfig(BaseModel):
    """Redis connection used for queue, locks, caches and progress."""
    url: str = Field(default="redis://localhost:6379/0")


class ProxmoxConfig(BaseModel):
    """Proxmox VE API connection."""
    host: str = Field(default="localhost")
    port: int = Field(default=8006)
    token_id: str = Field(default="", description="API token id, e.g. root@pam!lxcforge")
    token_secret: str = Field(default="")
    verify_ssl: bool = Field(default=False)
    request_timeout: float = Field(default=30.0, gt=0)


class SSHConfig(BaseModel):
    """SSH credentials for the Proxmox node or the containers."""
    host: Optional[str] = Field(default=None, description="Defaults to proxmox.host")
    port: int = Field(default=22)
    username: str = Field(default="root")
    password: Optional[str] = None
    key_filename: Optional[str] = None
    connect_timeout: float = Field(default=10.0, gt=0)
    keepalive_interval: int = Field(default=15, ge=0)
    connect_attempts: int = Field(default=5, ge=1)
    connect_initial_delay: float = Field(default=2.0, ge=0)


class ExecutionConfig(BaseModel):
    """How commands reach the containers."""
    mode: Literal["relayed", "direct"] = Field(default="relayed")


class WorkerConfig(BaseModel):
    """Creation worker pool."""
    concurrency: int = Field(default=2, ge=1)
    dequeue_timeout: float = Field(default=5.0, gt=0)


class TimeoutsConfig(BaseModel):
    """Timing knobs for hypervisor tasks and provisioning, in seconds."""
    task_poll_interval: float = Field(default=2.0, gt=0)
    task_timeout: float = Field(default=60.0, gt=0)
    task_timeout_long: float = Field(default=120.0, gt=0)
    shutdown_timeout: int = Field(default=30, ge=1)
    shutdown_wait: float = Field(default=45.0, gt=0)
    delete_timeout: float = Field(default=120.0, gt=0)
    lock_ttl: int = Field(default=300, ge=1)
    filesystem_ready_attempts: int = Field(default=15, ge=1)
    filesystem_check_delay: float = Field(default=1.0, ge=0)


class SecurityConfig(BaseModel):
    """Credential encryption settings."""
    encryption_key: Optional[str] = Field(default=None, description="Fernet key (urlsafe base64, 32 bytes)")


class ForgeConfig(BaseModel):
    """Main configuration model."""
    model_config = ConfigDict(extra="ignore")

    agent: AgentConfig = Field(default_factory=AgentConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    proxmox: ProxmoxConfig = Field(default_factory=ProxmoxConfig)
    ssh: SSHConfig = Field(default_factory=SSHConfig)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    worker: WorkerConfig = Field(default_factory=WorkerConfig)
    timeouts: TimeoutsConfig = Field(default_factory=TimeoutsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
