from datetime import datetime
from typing import Optional
from pydantic import BaseModel

class ServerBase(BaseModel):
    name: str
    host: str
    port: int = 22
    username: str = "root"
    pre_command: str = ""

class ServerCreate(ServerBase):
    ssh_private_key: Optional[str] = None

class ServerUpdate(BaseModel):
    name: Optional[str] = None
    host: Optional[str] = None
    port: Optional[int] = None
    username: Optional[str] = None
    pre_command: Optional[str] = None
    ssh_private_key: Optional[str] = None  # "" removes the stored key

class ServerRead(ServerBase):
    id: str
    has_private_key: bool
    created_at: datetime

    @classmethod
    def from_server(cls, server) -> "ServerRead":
        return cls(
            id=server.id,
            name=server.name,
            host=server.host,
            port=server.port,
            username=server.username,
            pre_command=server.pre_command,
            has_private_key=bool(server.ssh_private_key),
            created_at=server.created_at,
        )

class GroupCreate(BaseModel):
    name: str
    description: str = ""

class GroupRead(GroupCreate):
    id: str
    created_at: datetime

class MembersUpdate(BaseModel):
    server_ids: list[str]
