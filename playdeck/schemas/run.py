from datetime import datetime
from typing import Any, Optional
from pydantic import BaseModel, Field
import json

class RunSubmit(BaseModel):
    form_id: str
    variables: dict[str, Any] = Field(default_factory=dict)
    abort_on_failure: Optional[bool] = None

class AdhocRunSubmit(BaseModel):
    playbook_id: str
    server_id: str
    variables: dict[str, Any] = Field(default_factory=dict)

class SubmitResponse(BaseModel):
    run_ids: list[str]
    batch_id: Optional[str] = None
    status: str

class RunRead(BaseModel):
    id: str
    form_id: Optional[str] = None
    playbook_id: str
    server_id: str
    variables: dict[str, Any]
    status: str
    output: str
    batch_id: Optional[str] = None
    trigger: str
    username: Optional[str] = None
    exit_code: Optional[int] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_run(cls, run) -> "RunRead":
        data = run.model_dump()
        data["variables"] = json.loads(run.variables or "{}")
        return cls(**data)

class BatchRead(BaseModel):
    batch_id: str
    status: str
    runs: list[RunRead]

class CancelResponse(BaseModel):
    run_id: str
    cancelled: bool
