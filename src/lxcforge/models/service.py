"""Discovered service models."""

from datetime import datetime
from typing import List, Literal, Optional
from pydantic import BaseModel, Field

from lxcforge.models.job import utcnow


class DiscoveredService(BaseModel):
    """Service found running (or provisioned) inside a container."""
    name: str
    type: Literal["systemd", "docker", "process"] = "systemd"
    port: Optional[int] = None
    status: Literal["running", "stopped", "installing", "error"] = "running"
    is_system: bool = False
    credentials: Optional[str] = Field(default=None, description="Encrypted JSON credential map")


class ServiceCache(BaseModel):
    """Full snapshot of discovered services for one container."""
    services: List[DiscoveredService] = Field(default_factory=list)
    container_ip: Optional[str] = None
    discovered_at: datetime = Field(default_factory=utcnow)
