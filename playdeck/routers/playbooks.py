from fastapi import APIRouter, Depends, Query, status
from playdeck.core.security import CurrentUser
from playdeck.dependencies import actor_of, get_playbook_service, requires_role
from playdeck.schemas.playbook import PlaybookCreate, PlaybookDeleted, PlaybookRead
from playdeck.services import PlaybookService

router = APIRouter(prefix="/api/playbooks", tags=["playbooks"])

READERS = ["admin", "operator", "watcher"]


@router.get("", response_model=list[PlaybookRead])
async def list_playbooks(
    include_deleted: bool = Query(False),
    service: PlaybookService = Depends(get_playbook_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[PlaybookRead]:
    return [PlaybookRead.model_validate(p, from_attributes=True) for p in service.list_playbooks(include_deleted)]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=PlaybookRead)
async def register_playbook(
    body: PlaybookCreate,
    service: PlaybookService = Depends(get_playbook_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> PlaybookRead:
    """Registers a playbook file that already exists on the engine host.

    Raises:
        ConfigurationError: The path does not point at a file (422).
    """
    playbook = service.register(body.name, body.file_path, body.description, actor=actor_of(current_user))
    return PlaybookRead.model_validate(playbook, from_attributes=True)


@router.get("/{playbook_id}", response_model=PlaybookRead)
async def get_playbook(
    playbook_id: str,
    service: PlaybookService = Depends(get_playbook_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> PlaybookRead:
    return PlaybookRead.model_validate(service.get_playbook(playbook_id), from_attributes=True)


@router.delete("/{playbook_id}", response_model=PlaybookDeleted)
async def delete_playbook(
    playbook_id: str,
    service: PlaybookService = Depends(get_playbook_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> PlaybookDeleted:
    """Deletes a playbook; `soft` tells whether run history kept it around."""
    hard = service.delete_playbook(playbook_id, actor=actor_of(current_user))
    return PlaybookDeleted(id=playbook_id, soft=not hard)
