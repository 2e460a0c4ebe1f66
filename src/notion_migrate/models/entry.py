"""Ledger entry models."""

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class EntryStatus(str, Enum):
    """Entry status, ordered along the pipeline."""

    PENDING = 'pending'
    FETCHING = 'fetching'
    TRANSFORMING = 'transforming'
    ENRICHING = 'enriching'
    UPLOADING = 'uploading'
    WRITING = 'writing'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (EntryStatus.COMPLETED, EntryStatus.FAILED)


class Stage(str, Enum):
    """Pipeline stages in execution order."""

    FETCH = 'fetch'
    TRANSFORM = 'transform'
    ENRICH = 'enrich'
    UPLOAD = 'upload'
    WRITE = 'write'

    @property
    def status(self) -> EntryStatus:
        """Status an entry carries while this stage runs."""
        return STAGE_STATUS[self]

    @classmethod
    def ordered(cls) -> List['Stage']:
        return list(cls)

    def following(self) -> List['Stage']:
        """Stages that run after this one."""
        stages = Stage.ordered()
        return stages[stages.index(self) + 1 :]


STAGE_STATUS = {
    Stage.FETCH: EntryStatus.FETCHING,
    Stage.TRANSFORM: EntryStatus.TRANSFORMING,
    Stage.ENRICH: EntryStatus.ENRICHING,
    Stage.UPLOAD: EntryStatus.UPLOADING,
    Stage.WRITE: EntryStatus.WRITING,
}

STATUS_ORDER = [
    EntryStatus.PENDING,
    EntryStatus.FETCHING,
    EntryStatus.TRANSFORMING,
    EntryStatus.ENRICHING,
    EntryStatus.UPLOADING,
    EntryStatus.WRITING,
    EntryStatus.COMPLETED,
]


class Entry(BaseModel):
    """One unit of source content moving through the pipeline."""

    id: str = Field(..., description='Stable source id')
    source_ref: Optional[str] = Field(default=None, description='Source URL or path')
    status: EntryStatus = Field(default=EntryStatus.PENDING, description='Status')
    attempts: int = Field(default=0, description='Pipeline attempts made')
    last_error: Optional[str] = Field(default=None, description='Last failure')
    stage_checkpoint: Optional[Stage] = Field(
        default=None, description='Last stage completed successfully'
    )
    revision: int = Field(default=0, description='Optimistic concurrency counter')
    next_retry_at: Optional[datetime] = Field(
        default=None, description='Earliest time a retrying entry is due'
    )
    artifacts: Dict[str, Any] = Field(
        default_factory=dict, description='Outputs of completed stages'
    )
    timestamps: Dict[str, datetime] = Field(
        default_factory=dict, description='created / updated / completed times'
    )

    def remaining_stages(self) -> List[Stage]:
        """Stages still to run after the checkpoint."""
        if self.stage_checkpoint is None:
            return Stage.ordered()
        return self.stage_checkpoint.following()

    def is_due(self, now: datetime) -> bool:
        return self.next_retry_at is None or self.next_retry_at <= now


class MigrationState(BaseModel):
    """The single persisted aggregate."""

    entries: Dict[str, Entry] = Field(default_factory=dict)
    version: int = Field(default=0, description='Bumped on every ledger write')
    last_run_at: Optional[datetime] = Field(default=None)
