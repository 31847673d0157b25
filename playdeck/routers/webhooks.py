from typing import Any, Optional
from fastapi import APIRouter, Body, Depends, Request, status
from fastapi.responses import JSONResponse
from playdeck.core.exceptions import AuthorizationError
from playdeck.dependencies import get_scheduler
from playdeck.schemas.form import WebhookResponse
from playdeck.services import SchedulerService
from playdeck.utils.network import client_ip

router = APIRouter(prefix="/api/webhook", tags=["webhooks"])


@router.post("/forms/{token}", status_code=status.HTTP_202_ACCEPTED, response_model=WebhookResponse)
async def trigger_form_webhook(
    token: str,
    request: Request,
    payload: Optional[dict[str, Any]] = Body(default=None),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """Runs the form that owns `token`. Unauthenticated: the token is the credential.

    Args:
        token: Webhook token issued for the form.
        request: Used for the caller's address in the audit trail.
        payload: Optional JSON object whose keys override field defaults.
        scheduler: Injected SchedulerService.

    Returns:
        202 `accepted` with the created runs, or 403 `rejected`.
    """
    try:
        result = await scheduler.trigger_webhook(token, payload, ip=client_ip(request))
    except AuthorizationError as e:
        return JSONResponse(
            status_code=status.HTTP_403_FORBIDDEN,
            content={"status": "rejected", "error": e.message},
        )
    return WebhookResponse(status="accepted", run_ids=result.run_ids, batch_id=result.batch_id)
