from datetime import datetime
from typing import Optional
from sqlmodel import Field, SQLModel
from playdeck.models.base import UTCDateTime, new_id, utcnow

class Playbook(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="")
    file_path: str
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)
    deleted_at: Optional[datetime] = Field(default=None, sa_type=UTCDateTime)  # soft delete while runs reference it

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

class Vault(SQLModel, table=True):
    id: str = Field(default_factory=new_id, primary_key=True)
    name: str = Field(index=True)
    description: str = Field(default="")
    password_enc: str  # vault password, encrypted with SECRET_KEY
    vault_blob: str = Field(default="")  # payload encrypted with the vault password; "" = no file
    vault_file_name: str = Field(default="")
    created_at: datetime = Field(default_factory=utcnow, sa_type=UTCDateTime)

    @property
    def has_file(self) -> bool:
        return bool(self.vault_blob)
