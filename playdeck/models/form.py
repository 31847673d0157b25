from datetime import datetime
from enum import Enum
from typing import Optional
from sqlmodel import Field, SQLModel
from playdeck.models.base import UTCDateTime, new_id, utcnow

class FieldType(str, Enum):
    TEXT = "text"
    NUMBER = "number"
    BOOL = "bool"
    SELECT = "select"

class Form(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="")
    playbook_id: str = Field(foreign_key="playbook.id")
    server_id: Optional[str] = Field(default=None, foreign_key="server.id")
    server_group_id: Optional[str] = Field(default=None, foreign_key="servergroup.id")
    vault_id: Optional[str] = Field(default=None, foreign_key="vault.id")
    is_quick_action: bool = Field(default=False)
    schedule_cron: str = Field(default="")  # "" = unscheduled
    schedule_enabled: bool = Field(default=False)
    next_run_at: Optional[datetime] = Field(default=None, index=True, sa_type=UTCDateTime)  # owned by the scheduler
    webhook_token: Optional[str] = Field(default=None, index=True)
    notify_webhook: str = Field(default="")
    notify_email: str = Field(default="")
    abort_on_failure: bool = Field(default=False)
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

class FormField(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    form_id: str = Field(foreign_key="form.id", index=True)
    name: str  # variable key passed to the playbook
    label: str = Field(default="")
    field_type: str = Field(default=FieldType.TEXT.value)
    default_value: str = Field(default="")
    options: str = Field(default="[]")  # JSON array, select only
    required: bool = Field(default=False)
    sort_order: int = Field(default=0)
