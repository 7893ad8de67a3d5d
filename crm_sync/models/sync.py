"""Sync run and remote mapping models."""

from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field
from enum import Enum
import uuid


class RunState(str, Enum):
    """Lifecycle state of a sync run."""
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SyncRunStatus(str, Enum):
    """Outcome of a finished sync run."""
    SUCCESS = "success"
    PARTIAL = "partial"
    FAILED = "failed"


class LocalEntityType(str, Enum):
    """Local entities that can be linked to a remote record."""
    CUSTOMER = "customer"
    CHECKIN = "checkin"


class SyncRunError(BaseModel):
    """A single item failure captured during a run."""
    item_id: Optional[str] = None
    message: str


class RunAlreadyFinalizedError(RuntimeError):
    """Raised when a finished run is finalized a second time."""
    pass


class SyncRun(BaseModel):
    """One execution of the orchestrator for a company and provider."""
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True, validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex, alias="_id")
    company_id: str
    provider: str
    state: RunState = RunState.IDLE
    status: Optional[SyncRunStatus] = None

    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None

    items_processed: int = 0
    items_skipped: int = 0
    error_count: int = 0
    errors: List[SyncRunError] = Field(default_factory=list)

    preflight_failed: bool = False
    cancelled: bool = False

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None

    def start(self) -> None:
        """Transition Idle -> Running."""
        if self.state != RunState.IDLE:
            raise RuntimeError(f"Run {self.id} cannot start from state {self.state}")
        self.state = RunState.RUNNING

    def record_error(self, item_id: Optional[str], message: str) -> None:
        self.errors.append(SyncRunError(item_id=item_id, message=message))
        self.error_count += 1

    def finalize(self, aborted: bool = False) -> "SyncRun":
        """Compute the final status and close the run. Allowed exactly once."""
        if self.is_finished:
            raise RunAlreadyFinalizedError(f"Run {self.id} is already finalized")

        if aborted or self.preflight_failed:
            status = SyncRunStatus.FAILED
        elif self.error_count == 0:
            status = SyncRunStatus.SUCCESS
        elif self.error_count < self.items_processed:
            status = SyncRunStatus.PARTIAL
        else:
            status = SyncRunStatus.FAILED

        self.status = status
        self.state = RunState.FAILED if status == SyncRunStatus.FAILED else RunState.COMPLETED
        self.finished_at = datetime.utcnow()
        return self


class RemoteMapping(BaseModel):
    """Link between a local entity and its record in the remote system."""
    model_config = ConfigDict(use_enum_values=True)

    company_id: str
    provider: str
    local_entity_type: LocalEntityType
    local_id: str
    remote_id: str
    requeued: bool = False
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
