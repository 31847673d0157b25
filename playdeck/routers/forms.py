from dataclasses import asdict
from fastapi import APIRouter, Depends, Request, Response, status
from playdeck.core.security import CurrentUser
from playdeck.dependencies import actor_of, get_coordinator, get_form_service, get_scheduler, requires_role
from playdeck.schemas.form import (
    FieldSpec,
    FormCreate,
    FormRead,
    FormUpdate,
    ScheduleRead,
    ScheduleUpdate,
    WebhookTokenRead,
)
from playdeck.schemas.run import SubmitResponse
from playdeck.services import FormService, RunCoordinator, SchedulerService
from playdeck.utils.network import client_ip

router = APIRouter(prefix="/api/forms", tags=["forms"])

OPERATORS = ["admin", "operator"]
READERS = ["admin", "operator", "watcher"]


def field_specs(fields: list[FieldSpec]) -> list[dict]:
    return [f.model_dump(exclude_none=True) for f in fields]


@router.get("", response_model=list[FormRead])
async def list_forms(
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[FormRead]:
    return [FormRead.from_form(form) for form in service.list_forms()]


@router.post("", status_code=status.HTTP_201_CREATED, response_model=FormRead)
async def create_form(
    body: FormCreate,
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> FormRead:
    attrs = body.model_dump(exclude={"name", "playbook_id", "fields"})
    form = service.create_form(
        body.name, body.playbook_id, field_specs(body.fields), actor=actor_of(current_user), **attrs
    )
    return FormRead.from_form(form, service.get_fields(form.id))


@router.get("/{form_id}", response_model=FormRead)
async def get_form(
    form_id: str,
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> FormRead:
    return FormRead.from_form(service.get_form(form_id), service.get_fields(form_id))


@router.put("/{form_id}", response_model=FormRead)
async def update_form(
    form_id: str,
    body: FormUpdate,
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> FormRead:
    """Updates the columns present in the body.

    Why: Schedules and webhook tokens have their own endpoints, so this one
    never moves next_run_at or exposes a token.
    """
    changes = body.model_dump(exclude_unset=True)
    fields = changes.pop("fields", None)
    if fields is not None:
        fields = field_specs(body.fields)
    form = service.update_form(form_id, fields, actor=actor_of(current_user), **changes)
    return FormRead.from_form(form, service.get_fields(form_id))


@router.delete("/{form_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_form(
    form_id: str,
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> Response:
    service.delete_form(form_id, actor_of(current_user))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{form_id}/quick-action", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def run_quick_action(
    form_id: str,
    request: Request,
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> SubmitResponse:
    result = await coordinator.submit_quick_action(form_id, actor_of(current_user), ip=client_ip(request))
    return SubmitResponse(**asdict(result))


@router.put("/{form_id}/schedule", response_model=ScheduleRead)
async def update_schedule(
    form_id: str,
    body: ScheduleUpdate,
    request: Request,
    scheduler: SchedulerService = Depends(get_scheduler),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> ScheduleRead:
    """Sets or clears a form's cron schedule.

    Why: The scheduler owns next_run_at, so schedule edits never touch the
    form row directly; they go through the scheduler which recomputes the
    next fire time under its lock.
    """
    form = await scheduler.update_schedule(
        form_id, body.schedule_cron, body.schedule_enabled, actor_of(current_user), ip=client_ip(request)
    )
    return ScheduleRead(
        form_id=form.id,
        schedule_cron=form.schedule_cron,
        schedule_enabled=form.schedule_enabled,
        next_run_at=form.next_run_at,
    )


@router.post("/{form_id}/webhook-token", response_model=WebhookTokenRead)
async def regenerate_webhook_token(
    form_id: str,
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> WebhookTokenRead:
    token = service.regenerate_webhook_token(form_id, actor_of(current_user))
    return WebhookTokenRead(form_id=form_id, webhook_token=token)


@router.delete("/{form_id}/webhook-token", response_model=WebhookTokenRead)
async def revoke_webhook_token(
    form_id: str,
    service: FormService = Depends(get_form_service),
    current_user: CurrentUser = Depends(requires_role(["admin"])),
) -> WebhookTokenRead:
    service.revoke_webhook_token(form_id, actor_of(current_user))
    return WebhookTokenRead(form_id=form_id, webhook_token=None)
