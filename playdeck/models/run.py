from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import Field, SQLModel
from playdeck.models.base import UTCDateTime, new_id, utcnow

class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"

TERMINAL_STATUSES = {RunStatus.SUCCESS.value, RunStatus.FAILED.value}

class RunTrigger(str, Enum):
    MANUAL = "manual"
    SCHEDULE = "schedule"
    WEBHOOK = "webhook"
    ADHOC = "adhoc"
    QUICK_ACTION = "quick_action"

class Run(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    form_id: Optional[str] = Field(default=None, index=True)  # None for ad hoc runs
    playbook_id: str = Field(index=True)
    server_id: str = Field(index=True)
    variables: str = Field(default="{}")  # JSON of the bound variable set
    status: str = Field(default=RunStatus.PENDING.value, index=True)
    output: str = Field(default="")
    batch_id: Optional[str] = Field(default=None, index=True)
    trigger: str = Field(default=RunTrigger.MANUAL.value)
    username: Optional[str] = Field(default=None)  # who triggered the run
    exit_code: Optional[int] = Field(default=None)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    started_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)
    finished_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
