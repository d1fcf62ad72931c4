"""Pydantic models for configuration, jobs and progress."""

from lxcforge.models.config import (
    ForgeConfig, AgentConfig, RedisConfig, ProxmoxConfig, SSHConfig,
    ExecutionConfig, WorkerConfig, TimeoutsConfig, SecurityConfig,
)
from lxcforge.models.container import ContainerRecord, ContainerLifecycle, ContainerEvent, EventType
from lxcforge.models.job import ContainerConfig, ContainerJob, ScriptSelection, JobResult, JobState, QueuedJob
from lxcforge.models.progress import ProgressEvent, ProgressEventType, ProgressSnapshot, StepName
from lxcforge.models.service import DiscoveredService, ServiceCache
from lxcforge.models.template import TemplateSpec, TemplateScript, TemplateFile, TemplatePackage

__all__ = [
    "ForgeConfig",
    "AgentConfig",
    "RedisConfig",
    "ProxmoxConfig",
    "SSHConfig",
    "ExecutionConfig",
    "WorkerConfig",
    "TimeoutsConfig",
    "SecurityConfig",
    "ContainerRecord",
    "ContainerLifecycle",
    "ContainerEvent",
    "EventType",
    "ContainerConfig",
    "ContainerJob",
    "ScriptSelection",
    "JobResult",
    "JobState",
    "QueuedJob",
    "ProgressEvent",
    "ProgressEventType",
    "ProgressSnapshot",
    "StepName",
    "DiscoveredService",
    "ServiceCache",
    "TemplateSpec",
    "TemplateScript",
    "TemplateFile",
    "TemplatePackage",
]
