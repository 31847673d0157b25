from datetime import datetime
from sqlmodel import Field, SQLModel
from playdeck.models.base import UTCDateTime, new_id, utcnow

class AuditLog(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    user_id: str = Field(default="")
    username: str = Field(default="")  # denormalised, survives user deletion
    action: str = Field(index=True)
    resource: str = Field(default="")
    resource_id: str = Field(default="")
    details: str = Field(default="{}")
    ip: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow, index=True, sa_type=UTCDateTime)
