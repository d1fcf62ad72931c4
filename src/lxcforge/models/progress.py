"""Progress event models."""

from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field

from lxcforge.models.job import utcnow


class StepName(str, Enum):
    """Pipeline phases, in execution order."""
    CREATING = "creating"
    STARTING = "starting"
    DEPLOYING = "deploying"
    SYNCING = "syncing"
    FINALIZING = "finalizing"


STEP_ORDER = [s.value for s in StepName]


class ProgressEventType(str, Enum):
    """Kinds of progress events."""
    STEP = "step"
    LOG = "log"
    COMPLETE = "complete"
    ERROR = "error"


class ProgressEvent(BaseModel):
    """Single progress event, published live and kept in the replay buffer."""
    model_config = ConfigDict(use_enum_values=True)

    type: ProgressEventType
    step: Optional[StepName] = None
    percent: Optional[int] = Field(default=None, ge=0, le=100)
    message: str = ""
    timestamp: datetime = Field(default_factory=utcnow)
    script_name: Optional[str] = None
    script_index: Optional[int] = None
    script_total: Optional[int] = None
    script_names: Optional[List[str]] = None

    @property
    def is_terminal(self) -> bool:
        return self.type in (ProgressEventType.COMPLETE.value, ProgressEventType.ERROR.value)


class ProgressSnapshot(BaseModel):
    """Folded view of a replay buffer."""
    step: Optional[str] = None
    percent: int = 0
    seen_steps: List[str] = Field(default_factory=list)
    is_complete: bool = False
    is_error: bool = False
    error_message: Optional[str] = None
    script_names: List[str] = Field(default_factory=list)
    completed_scripts: List[str] = Field(default_factory=list)
    active_script: Optional[str] = None
    script_total: Optional[int] = None

    @property
    def is_terminal(self) -> bool:
        return self.is_complete or self.is_error
