from datetime import datetime
from typing import Any
from pydantic import BaseModel
import json

class AuditRead(BaseModel):
    id: str
    user_id: str
    username: str
    action: str
    resource: str
    resource_id: str
    details: dict[str, Any]
    ip: str
    created_at: datetime

    @classmethod
    def from_log(cls, log) -> "AuditRead":
        data = log.model_dump()
        data["details"] = json.loads(log.details or "{}")
        return cls(**data)
