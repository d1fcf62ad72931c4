"""Container record models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field

from lxcforge.models.job import utcnow


class ContainerLifecycle(str, Enum):
    """Provisioning lifecycle stored on the record."""
    CREATING = "creating"
    READY = "ready"
    ERROR = "error"


class EventType(str, Enum):
    """Audit event types."""
    CREATED = "created"
    STARTED = "started"
    STOPPED = "stopped"
    SHUTDOWN = "shutdown"
    RESTARTED = "restarted"
    DELETED = "deleted"
    SERVICE_READY = "service_ready"
    SCRIPT_COMPLETED = "script_completed"
    ERROR = "error"


class ContainerRecord(BaseModel):
    """Persistent container entity."""
    id: str
    vmid: int
    hostname: Optional[str] = None
    lifecycle: ContainerLifecycle = ContainerLifecycle.CREATING
    node_id: str
    node_name: str
    template_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ContainerEvent(BaseModel):
    """Audit log entry."""
    container_id: str
    type: EventType
    message: str
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=utcnow)
