from datetime import datetime
from typing import Optional
from sqlmodel import Field, SQLModel
from playdeck.models.base import UTCDateTime, new_id, utcnow

class Server(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    host: str  # IP or FQDN
    port: int = Field(default=22)
    username: str = Field(default="root")
    ssh_private_key: Optional[str] = Field(default=None)  # PEM, encrypted at rest
    pre_command: str = Field(default="")  # shell prefix run before ansible-playbook
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

class ServerGroup(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

class ServerGroupMember(SQLModel, table=True):
    group_id: str = Field(foreign_key="servergroup.id", primary_key=True)
    server_id: str = Field(foreign_key="server.id", primary_key=True)
