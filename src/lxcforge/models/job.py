"""Creation job models."""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator


HOSTNAME_RE = re.compile(r"^[a-zA-Z0-9]([a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContainerConfig(BaseModel):
    """Hypervisor-facing container configuration."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    hostname: str
    vmid: int = Field(..., ge=100, le=999999999)
    memory: int = Field(default=512, ge=16, description="MiB")
    swap: int = Field(default=512, ge=0, description="MiB")
    cores: int = Field(default=1, ge=1)
    disk_size: int = Field(default=8, ge=1, description="GiB")
    storage: str = Field(default="local-lvm")
    bridge: str = Field(default="vmbr0")
    ip_config: str = Field(default="ip=dhcp", description="'dhcp', 'ip=dhcp' or 'ip=10.0.0.5/24,gw=10.0.0.1'")
    nameserver: Optional[str] = None
    root_password: str = Field(..., min_length=5)
    ssh_public_key: Optional[str] = None
    unprivileged: bool = Field(default=True)
    nesting: bool = Field(default=False)
    ostemplate: str = Field(..., min_length=1)
    tags: Optional[str] = None

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v):
        """Validate RFC 1123 hostname label."""
        if not HOSTNAME_RE.match(v):
            raise ValueError(f"Invalid hostname: {v}")
        return v

    def net0(self) -> str:
        """Proxmox net0 value for this config."""
        ip = self.ip_config if self.ip_config.startswith("ip=") else f"ip={self.ip_config}"
        return f"name=eth0,bridge={self.bridge},{ip}"

    def features(self) -> Optional[str]:
        """Proxmox features value, None when no feature is requested."""
        features = []
        if self.nesting:
            features.append("nesting=1")
        return ",".join(features) if features else None

    def create_params(self) -> dict:
        """Parameters for the hypervisor create call."""
        params = {
            "vmid": self.vmid,
            "ostemplate": self.ostemplate,
            "hostname": self.hostname,
            "memory": self.memory,
            "swap": self.swap,
            "cores": self.cores,
            "rootfs": f"{self.storage}:{self.disk_size}",
            "net0": self.net0(),
            "nameserver": self.nameserver,
            "password": self.root_password,
            "ssh-public-keys": self.ssh_public_key,
            "unprivileged": self.unprivileged,
            "features": self.features(),
            "storage": self.storage,
            "tags": self.tags,
        }
        return {k: v for k, v in params.items() if v is not None}


class ScriptSelection(BaseModel):
    """Per-job enable/disable override for a template script."""
    model_config = ConfigDict(frozen=True)

    id: Optional[str] = None
    name: Optional[str] = None
    enabled: bool = True


class ContainerJob(BaseModel):
    """Immutable creation job, consumed exactly once by a worker."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    container_id: str
    node_id: str
    node_name: str
    template_id: Optional[str] = None
    config: ContainerConfig
    enabled_buckets: List[str] = Field(default_factory=list)
    additional_packages: Optional[str] = None
    scripts: Optional[List[ScriptSelection]] = None


class JobResult(BaseModel):
    """Outcome returned by the creation pipeline."""
    success: bool
    container_id: str
    vmid: int
    error: Optional[str] = None


class JobState(str, Enum):
    """Queue job states."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


class QueuedJob(BaseModel):
    """Queue envelope around a job payload."""
    id: str
    name: str
    state: JobState = JobState.WAITING
    data: ContainerJob
    result: Optional[JobResult] = None
    error: Optional[str] = None
    enqueued_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
