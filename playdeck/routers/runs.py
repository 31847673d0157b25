from dataclasses import asdict
from typing import Optional
from fastapi import APIRouter, Depends, Query, Request, Response, status
from playdeck.core.security import CurrentUser
from playdeck.dependencies import actor_of, get_coordinator, requires_role
from playdeck.schemas.run import AdhocRunSubmit, BatchRead, CancelResponse, RunRead, RunSubmit, SubmitResponse
from playdeck.services import RunCoordinator
from playdeck.utils.network import client_ip

router = APIRouter(prefix="/api", tags=["runs"])

OPERATORS = ["admin", "operator"]
READERS = ["admin", "operator", "watcher"]


@router.post("/runs", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def submit_run(
    body: RunSubmit,
    request: Request,
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> SubmitResponse:
    """Starts one run per target of a form.

    Why: Returns as soon as the pending rows exist; callers follow progress
    through `GET /api/runs/{id}` or `GET /api/batches/{id}`.

    Args:
        body: Form id, raw variables and an optional batch abort override.
        request: Used for the caller's address in the audit trail.
        coordinator: Injected RunCoordinator.
        current_user: Authenticated user (operator+).

    Returns:
        Created run ids, batch id and initial status.
    """
    result = await coordinator.submit_run(
        body.form_id,
        body.variables,
        actor_of(current_user),
        ip=client_ip(request),
        abort_on_failure=body.abort_on_failure,
    )
    return SubmitResponse(**asdict(result))


@router.post("/runs/adhoc", status_code=status.HTTP_202_ACCEPTED, response_model=SubmitResponse)
async def submit_adhoc_run(
    body: AdhocRunSubmit,
    request: Request,
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> SubmitResponse:
    result = await coordinator.submit_adhoc(
        body.playbook_id, body.server_id, body.variables, actor_of(current_user), ip=client_ip(request)
    )
    return SubmitResponse(**asdict(result))


@router.get("/runs", response_model=list[RunRead])
async def list_runs(
    response: Response,
    form_id: Optional[str] = None,
    batch_id: Optional[str] = None,
    status: Optional[str] = None,
    server_id: Optional[str] = None,
    limit: int = Query(50, ge=1, le=500),
    offset: int = Query(0, ge=0),
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> list[RunRead]:
    runs, total_count = coordinator.list_runs(
        form_id=form_id, batch_id=batch_id, status=status, server_id=server_id, limit=limit, offset=offset
    )
    response.headers["X-Total-Count"] = str(total_count)
    return [RunRead.from_run(run) for run in runs]


@router.get("/runs/{run_id}", response_model=RunRead)
async def get_run(
    run_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> RunRead:
    return RunRead.from_run(coordinator.get_run(run_id))


@router.get("/batches/{batch_id}", response_model=BatchRead)
async def get_batch(
    batch_id: str,
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(READERS)),
) -> BatchRead:
    batch = coordinator.get_batch(batch_id)
    return BatchRead(batch_id=batch.batch_id, status=batch.status, runs=[RunRead.from_run(r) for r in batch.runs])


@router.post("/runs/{run_id}/cancel", response_model=CancelResponse)
async def cancel_run(
    run_id: str,
    request: Request,
    coordinator: RunCoordinator = Depends(get_coordinator),
    current_user: CurrentUser = Depends(requires_role(OPERATORS)),
) -> CancelResponse:
    """Cancels a run and answers once it has reached `failed`.

    Returns:
        `cancelled: false` when the run had already finished.
    """
    cancelled = await coordinator.cancel_run(run_id, actor_of(current_user), ip=client_ip(request))
    return CancelResponse(run_id=run_id, cancelled=cancelled)
