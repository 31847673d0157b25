from sqlmodel import Session
from typing import Generator
from fastapi import Depends, Request
from playdeck.core.security import CurrentUser, RoleChecker
from playdeck.services import (
    AuditService,
    FormService,
    InventoryService,
    PlaybookService,
    RunCoordinator,
    SchedulerService,
    VaultService,
)
from playdeck.services.audit import Actor
from playdeck.utils.network import client_ip

def get_db(request: Request) -> Generator[Session, None, None]:
    with Session(request.app.state.engine) as session:
        yield session

def get_coordinator(request: Request) -> RunCoordinator:
    return request.app.state.coordinator

def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler

def get_audit_service(request: Request) -> AuditService:
    return request.app.state.audit

def get_form_service(request: Request, db: Session = Depends(get_db)) -> FormService:
    return FormService(db, request.app.state.audit, ip=client_ip(request))

def get_inventory_service(request: Request, db: Session = Depends(get_db)) -> InventoryService:
    return InventoryService(db, request.app.state.audit, ip=client_ip(request))

def get_playbook_service(request: Request, db: Session = Depends(get_db)) -> PlaybookService:
    return PlaybookService(db, request.app.state.audit, ip=client_ip(request))

def get_vault_service(request: Request, db: Session = Depends(get_db)) -> VaultService:
    return VaultService(db, request.app.state.audit, ip=client_ip(request))


def requires_role(role: str | list[str]):
    roles = role if isinstance(role, list) else [role]
    return RoleChecker(roles)

def actor_of(user: CurrentUser) -> Actor:
    return Actor(user_id=user.user_id, username=user.username)
