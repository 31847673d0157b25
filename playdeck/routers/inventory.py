from fastapi import APIRouter, Depends, Response, status
from playdeck.core.security import CurrentUser
from playdeck.dependencies import actor_of, get_inventory_service, requires_role
from playdeck.schemas.inventory import GroupCreate, GroupRead, MembersUpdate, ServerCreate, ServerRead, ServerUpdate
from playdeck.services import InventoryService

router = APIRouter(prefix="/api", tags=["inventory"])

READERS = ["admin", "operator", "watcher"]

# --- Servers ---

@router.get("/servers", response_model=list[ServerRead])
async def list_servers(
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[ServerRead]:
    return [ServerRead.from_server(s) for s in service.list_servers()]


@router.post("/servers", status_code=status.HTTP_201_CREATED, response_model=ServerRead)
async def create_server(
    body: ServerCreate,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> ServerRead:
    """Adds a server to the inventory.

    Why: The private key is encrypted by the service before it is stored and
    is never part of any response; `has_private_key` is all callers see.
    """
    server = service.create_server(
        body.name, body.host, port=body.port, username=body.username,
        ssh_private_key=body.ssh_private_key, pre_command=body.pre_command,
        actor=actor_of(current_user),
    )
    return ServerRead.from_server(server)


@router.get("/servers/{server_id}", response_model=ServerRead)
async def get_server(
    server_id: str,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> ServerRead:
    return ServerRead.from_server(service.get_server(server_id))


@router.put("/servers/{server_id}", response_model=ServerRead)
async def update_server(
    server_id: str,
    body: ServerUpdate,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> ServerRead:
    server = service.update_server(server_id, actor=actor_of(current_user), **body.model_dump(exclude_unset=True))
    return ServerRead.from_server(server)


@router.delete("/servers/{server_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_server(
    server_id: str,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> Response:
    service.delete_server(server_id, actor=actor_of(current_user))
    return Response(status_code=status.HTTP_204_NO_CONTENT)

# --- Server groups ---

@router.get("/server-groups", response_model=list[GroupRead])
async def list_groups(
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[GroupRead]:
    return [GroupRead.model_validate(g, from_attributes=True) for g in service.list_groups()]


@router.post("/server-groups", status_code=status.HTTP_201_CREATED, response_model=GroupRead)
async def create_group(
    body: GroupCreate,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> GroupRead:
    group = service.create_group(body.name, body.description, actor=actor_of(current_user))
    return GroupRead.model_validate(group, from_attributes=True)


@router.delete("/server-groups/{group_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_group(
    group_id: str,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> Response:
    service.delete_group(group_id, actor=actor_of(current_user))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/server-groups/{group_id}/members", response_model=list[ServerRead])
async def get_members(
    group_id: str,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[ServerRead]:
    service.get_group(group_id)
    return [ServerRead.from_server(s) for s in service.group_members(group_id)]


@router.put("/server-groups/{group_id}/members", response_model=list[ServerRead])
async def set_members(
    group_id: str,
    body: MembersUpdate,
    service: InventoryService = Depends(get_inventory_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> list[ServerRead]:
    """Replaces the membership of a group; members come back ordered by name."""
    members = service.set_members(group_id, body.server_ids, actor=actor_of(current_user))
    return [ServerRead.from_server(s) for s in members]
