from fastapi import APIRouter, Depends, status
from playdeck.core.security import CurrentUser
from playdeck.dependencies import actor_of, get_vault_service, requires_role
from playdeck.schemas.playbook import VaultCreate, VaultPayload, VaultRead
from playdeck.services import VaultService

router = APIRouter(prefix="/api/vaults", tags=["vaults"])

READERS = ["admin", "operator", "watcher"]


@router.get("", response_model=list[VaultRead])
async def list_vaults(
    service: VaultService = Depends(get_vault_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[VaultRead]:
    return [VaultRead.from_vault(v) for v in service.list_vaults()]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=VaultRead)
async def create_vault(
    body: VaultCreate,
    service: VaultService = Depends(get_vault_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> VaultRead:
    vault = service.create_vault(body.name, body.password, body.description, actor=actor_of(current_user))
    return VaultRead.from_vault(vault)


@router.get("/{vault_id}", response_model=VaultRead)
async def get_vault(
    vault_id: str,
    service: VaultService = Depends(get_vault_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> VaultRead:
    return VaultRead.from_vault(service.get_vault(vault_id))


@router.put("/{vault_id}/payload", response_model=VaultRead)
async def set_vault_payload(
    vault_id: str,
    body: VaultPayload,
    service: VaultService = Depends(get_vault_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> VaultRead:
    """Encrypts and stores a YAML mapping of secret variables.

    Why: The payload is never returned; reads only expose `has_file` and the
    original file name.
    """
    vault = service.set_payload(vault_id, body.content, body.file_name, actor=actor_of(current_user))
    return VaultRead.from_vault(vault)


@router.delete("/{vault_id}/payload", response_model=VaultRead)
async def clear_vault_payload(
    vault_id: str,
    service: VaultService = Depends(get_vault_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> VaultRead:
    return VaultRead.from_vault(service.set_payload(vault_id, "", actor=actor_of(current_user)))
