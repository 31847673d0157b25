from typing import Optional
from fastapi import APIRouter, Depends, Query, Response
from playdeck.core.security import CurrentUser
from playdeck.dependencies import get_audit_service, requires_role
from playdeck.schemas.audit import AuditRead
from playdeck.services import AuditService

router = APIRouter(prefix="/api", tags=["audit"])


@router.get("/audit", response_model=list[AuditRead])
async def list_audit(
    response: Response,
    action: Optional[str] = None,
    resource: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    audit: AuditService = Depends(get_audit_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> list[AuditRead]:
    """Audit trail, newest first. Admin only."""
    logs, total_count = audit.list(limit=limit, offset=offset, action=action, resource=resource)
    response.headers["X-Total-Count"] = str(total_count)
    return [AuditRead.from_log(log) for log in logs]
