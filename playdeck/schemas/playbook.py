from datetime import datetime
from typing import Optional
from pydantic import BaseModel

class PlaybookCreate(BaseModel):
    name: str
    file_path: str
    description: str = ""

class PlaybookRead(PlaybookCreate):
    id: str
    created_at: datetime
    deleted_at: Optional[datetime] = None

class PlaybookDeleted(BaseModel):
    id: str
    soft: bool

class VaultCreate(BaseModel):
    name: str
    password: str
    description: str = ""

class VaultPayload(BaseModel):
    content: str
    file_name: str = ""

class VaultRead(BaseModel):
    id: str
    name: str
    description: str
    vault_file_name: str
    has_file: bool
    created_at: datetime

    @classmethod
    def from_vault(cls, vault) -> "VaultRead":
        return cls(
            id=vault.id,
            name=vault.name,
            description=vault.description,
            vault_file_name=vault.vault_file_name,
            has_file=vault.has_file,
            created_at=vault.created_at,
        )
