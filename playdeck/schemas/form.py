from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel
import json

class FieldSpec(BaseModel):
    name: str
    label: str = ""
    field_type: str = "text"
    default_value: Any = None
    options: list[str] = []
    required: bool = False
    sort_order: Optional[int] = None

class FieldRead(BaseModel):
    name: str
    label: str
    field_type: str
    default_value: str
    options: list[str]
    required: bool
    sort_order: int

    @classmethod
    def from_field(cls, field) -> "FieldRead":
        data = field.model_dump()
        data["options"] = json.loads(field.options or "[]")
        return cls(**data)

class FormCreate(BaseModel):
    name: str
    playbook_id: str
    description: str = ""
    server_id: Optional[str] = None
    server_group_id: Optional[str] = None
    vault_id: Optional[str] = None
    is_quick_action: bool = False
    notify_webhook: str = ""
    notify_email: str = ""
    abort_on_failure: bool = False
    fields: list[FieldSpec] = []

class FormUpdate(BaseModel):
    name: Optional[str] = None
    playbook_id: Optional[str] = None
    description: Optional[str] = None
    server_id: Optional[str] = None
    server_group_id: Optional[str] = None
    vault_id: Optional[str] = None
    is_quick_action: Optional[bool] = None
    notify_webhook: Optional[str] = None
    notify_email: Optional[str] = None
    abort_on_failure: Optional[bool] = None
    fields: Optional[list[FieldSpec]] = None  # replaces every field when given

class FormRead(BaseModel):
    id: str
    name: str
    description: str
    playbook_id: str
    server_id: Optional[str] = None
    server_group_id: Optional[str] = None
    vault_id: Optional[str] = None
    is_quick_action: bool
    schedule_cron: str
    schedule_enabled: bool
    next_run_at: Optional[datetime] = None
    has_webhook_token: bool
    notify_webhook: str
    notify_email: str
    abort_on_failure: bool
    created_at: datetime
    updated_at: datetime
    fields: list[FieldRead] = []

    @classmethod
    def from_form(cls, form, fields=()) -> "FormRead":
        data = form.model_dump(exclude={"webhook_token"})
        data["has_webhook_token"] = bool(form.webhook_token)
        data["fields"] = [FieldRead.from_field(f) for f in fields]
        return cls(**data)

class ScheduleUpdate(BaseModel):
    schedule_cron: str = ""
    schedule_enabled: bool = False

class ScheduleRead(BaseModel):
    form_id: str
    schedule_cron: str
    schedule_enabled: bool
    next_run_at: Optional[datetime] = None

class WebhookTokenRead(BaseModel):
    form_id: str
    webhook_token: Optional[str] = None

class WebhookResponse(BaseModel):
    status: str  # accepted | rejected
    run_ids: list[str] = []
    batch_id: Optional[str] = None
