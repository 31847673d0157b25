from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping, Optional
from pathlib import Path
import asyncio
import json
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, select

from playdeck.core.config import get_settings
from playdeck.core.exceptions import (
    ConcurrencyError,
    ConfigurationError,
    DecryptionError,
    NotFoundError,
    ValidationError,
)
from playdeck.models import Form, FormField, Playbook, Run, RunStatus, RunTrigger, Server, Vault, new_id
from playdeck.services.audit import Actor, AuditService, ENGINE_ACTOR
from playdeck.services.binder import bind_defaults, bind_variables
from playdeck.services.history import RunHistory
from playdeck.services.locks import AcquireCancelled, ServerLockTable, slot
from playdeck.services.notification import NotificationService
from playdeck.services.runner import CANCELLED_MARKER, ExecutionRunner, RunControl
from playdeck.services.targets import resolve_targets
from playdeck.services.transport import SSHTransport
from playdeck.services.vault import VaultResolver

settings = get_settings()
logger = logging.getLogger(__name__)

BATCH_ABORTED_REASON = "batch aborted"


@dataclass
class SubmitResult:
    run_ids: list[str]
    batch_id: Optional[str]
    status: str


@dataclass
class BatchView:
    batch_id: str
    status: str
    runs: list[Run]


def batch_status(statuses: Iterable[str]) -> str:
    """Aggregate status of a batch, derived from its members.

    running wins over pending so a batch that has started reports progress
    even while some members still queue for their server.
    """
    statuses = set(statuses)
    if RunStatus.RUNNING.value in statuses:
        return RunStatus.RUNNING.value
    if RunStatus.PENDING.value in statuses:
        return RunStatus.PENDING.value
    if RunStatus.FAILED.value in statuses:
        return RunStatus.FAILED.value
    return RunStatus.SUCCESS.value


@dataclass
class _Dispatch:
    run_id: str
    server_id: str
    playbook_id: str
    form_id: Optional[str]
    batch_id: Optional[str]
    vault_id: Optional[str]
    variables: dict[str, Any]
    control: RunControl = field(default_factory=RunControl)
    task: Optional[asyncio.Task] = None
    finished: asyncio.Event = field(default_factory=asyncio.Event)


@dataclass
class _BatchState:
    batch_id: str
    form_id: Optional[str]
    run_ids: list[str]
    abort_on_failure: bool = False
    aborting: bool = False
    notified: bool = False


class RunCoordinator:
    """Turns run requests into Run rows and drives them to a terminal state.

    One coordinator exists per process. It is the only component that
    creates runs; status transitions after creation belong to the runner
    and to the failure paths here, all of which execute on the event loop
    thread so writes for a given run never interleave.

    Dispatch order for every run: the server's lock (bounded wait), then a
    slot of the global pool, then vault decryption, then the runner.
    """
    def __init__(
        self,
        engine: Engine,
        audit: AuditService,
        transport: Optional[SSHTransport] = None,
        notifier: Optional[NotificationService] = None,
        max_concurrent: Optional[int] = None,
        lock_timeout: Optional[float] = None,
        cancel_grace: Optional[float] = None,
        run_timeout: Optional[float] = None,
        scratch_dir: Optional[Path] = None,
        remote_tmp_dir: Optional[str] = None,
    ):
        self.engine = engine
        self.audit = audit
        self.notifier = notifier or NotificationService()
        self.history = RunHistory(engine)
        self.vaults = VaultResolver(engine, audit, scratch_dir)
        self.locks = ServerLockTable()
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.SERVER_LOCK_TIMEOUT_SECONDS
        self.cancel_grace = cancel_grace if cancel_grace is not None else settings.CANCEL_GRACE_SECONDS
        self.runner = ExecutionRunner(
            self.history, transport, remote_tmp_dir=remote_tmp_dir,
            run_timeout=run_timeout, cancel_grace=self.cancel_grace,
        )
        self._slots = asyncio.Semaphore(max_concurrent or settings.MAX_CONCURRENT_RUNS)
        self._inflight: dict[str, _Dispatch] = {}
        self._batches: dict[str, _BatchState] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closing = False

    # --- Submission -------------------------------------------------------

    @staticmethod
    def _runnable_playbook(db: Session, playbook_id: str) -> Playbook:
        playbook = db.get(Playbook, playbook_id)
        if not playbook:
            raise ConfigurationError("Playbook is missing", details={"playbook_id": playbook_id})
        if playbook.is_deleted:
            raise ConfigurationError(
                f"Playbook '{playbook.name}' has been deleted", details={"playbook_id": playbook_id}
            )
        return playbook

    def _prepare_form(
        self,
        form_id: str,
        variables: Optional[Mapping[str, Any]],
        quick_action: bool = False,
    ) -> tuple[Form, list[Server], dict[str, Any]]:
        """Validates everything a form submission needs before any row exists.

        Raises:
            NotFoundError: Unknown form.
            ConfigurationError: Form is not runnable (playbook, vault or
                target problem).
            ValidationError: Variables do not satisfy the form's fields.
        """
        with Session(self.engine) as db:
            form = db.get(Form, form_id)
            if not form:
                raise NotFoundError("form", form_id)
            if quick_action and not form.is_quick_action:
                raise ConfigurationError(
                    f"Form '{form.name}' is not a quick action", details={"form_id": form_id}
                )
            self._runnable_playbook(db, form.playbook_id)
            if form.vault_id and not db.get(Vault, form.vault_id):
                raise ConfigurationError(
                    f"Form '{form.name}' references a missing vault",
                    details={"form_id": form_id, "vault_id": form.vault_id},
                )
            servers = resolve_targets(db, form)
            fields = db.exec(select(FormField).where(FormField.form_id == form.id)).all()
            bound = bind_defaults(fields) if quick_action else bind_variables(fields, variables)
            return form, servers, bound

    async def submit_run(
        self,
        form_id: str,
        variables: Optional[Mapping[str, Any]],
        actor: Actor,
        trigger: str = RunTrigger.MANUAL.value,
        ip: str = "",
        abort_on_failure: Optional[bool] = None,
    ) -> SubmitResult:
        """Creates one pending run per target of the form and dispatches them.

        Args:
            form_id: Form to run.
            variables: Raw submission, bound against the form's fields.
            actor: Who asked for the run.
            trigger: How the run was requested (manual, schedule, webhook).
            ip: Client address for the audit trail.
            abort_on_failure: Overrides the form's batch abort flag.

        Returns:
            The created run ids, the batch id (only for more than one
            target) and the initial aggregate status.
        """
        form, servers, bound = self._prepare_form(form_id, variables)
        abort = form.abort_on_failure if abort_on_failure is None else abort_on_failure
        return self._dispatch(
            servers, form.playbook_id, bound, actor,
            form_id=form.id, vault_id=form.vault_id, trigger=trigger, ip=ip, abort_on_failure=abort,
        )

    async def submit_quick_action(self, form_id: str, actor: Actor, ip: str = "") -> SubmitResult:
        """Runs a quick-action form with its default values only."""
        form, servers, bound = self._prepare_form(form_id, None, quick_action=True)
        return self._dispatch(
            servers, form.playbook_id, bound, actor,
            form_id=form.id, vault_id=form.vault_id, trigger=RunTrigger.QUICK_ACTION.value,
            ip=ip, abort_on_failure=form.abort_on_failure,
        )

    async def submit_adhoc(
        self,
        playbook_id: str,
        server_id: str,
        variables: Optional[Mapping[str, Any]],
        actor: Actor,
        ip: str = "",
    ) -> SubmitResult:
        """Runs a playbook against one server without a form (no schema, no vault)."""
        if variables is not None and not isinstance(variables, Mapping):
            raise ValidationError("variables", "must be an object")
        with Session(self.engine) as db:
            self._runnable_playbook(db, playbook_id)
            server = db.get(Server, server_id)
            if not server:
                raise ConfigurationError("Server is missing", details={"server_id": server_id})
        try:
            bound = json.loads(json.dumps(dict(variables or {})))
        except (TypeError, ValueError):
            raise ValidationError("variables", "must be JSON serialisable")
        return self._dispatch([server], playbook_id, bound, actor, trigger=RunTrigger.ADHOC.value, ip=ip)

    def _dispatch(
        self,
        servers: list[Server],
        playbook_id: str,
        variables: dict[str, Any],
        actor: Actor,
        form_id: Optional[str] = None,
        vault_id: Optional[str] = None,
        trigger: str = RunTrigger.MANUAL.value,
        ip: str = "",
        abort_on_failure: bool = False,
    ) -> SubmitResult:
        batch_id = new_id() if len(servers) > 1 else None
        payload = json.dumps(variables)
        runs = self.history.create_runs(
            Run(
                form_id=form_id,
                playbook_id=playbook_id,
                server_id=server.id,
                variables=payload,
                batch_id=batch_id,
                trigger=trigger,
                username=actor.username or None,
            )
            for server in servers
        )
        run_ids = [run.id for run in runs]
        if batch_id:
            self._batches[batch_id] = _BatchState(batch_id, form_id, run_ids, abort_on_failure=abort_on_failure)
            logger.info(f"Created batch {batch_id} with {len(runs)} runs")

        for run in runs:
            self.audit.record(
                actor, "run_created", "run", run.id,
                {"form_id": form_id, "playbook_id": playbook_id, "server_id": run.server_id,
                 "batch_id": batch_id, "trigger": trigger},
                ip=ip,
            )

        # Every row exists before the first task can start
        for run in runs:
            dispatch = _Dispatch(
                run_id=run.id,
                server_id=run.server_id,
                playbook_id=playbook_id,
                form_id=form_id,
                batch_id=batch_id,
                vault_id=vault_id,
                variables=variables,
            )
            self._inflight[run.id] = dispatch
            task = asyncio.create_task(self._execute(dispatch), name=f"run-{run.id}")
            dispatch.task = task
            self._tasks.add(task)
            task.add_done_callback(lambda t, d=dispatch: self._task_done(t, d))

        return SubmitResult(run_ids=run_ids, batch_id=batch_id, status=batch_status(r.status for r in runs))

    # --- Execution --------------------------------------------------------

    def _fail_if_open(self, run_id: str, message: str) -> None:
        if not self.history.get_run(run_id).is_terminal:
            self.history.finish(run_id, RunStatus.FAILED.value, message=message)

    def _load_targets(self, dispatch: _Dispatch) -> tuple[Server, Playbook]:
        with Session(self.engine) as db:
            server = db.get(Server, dispatch.server_id)
            playbook = db.get(Playbook, dispatch.playbook_id)
        if not server:
            raise ConfigurationError("Server was deleted before the run started")
        if not playbook:
            raise ConfigurationError("Playbook was deleted before the run started")
        return server, playbook

    async def _execute(self, dispatch: _Dispatch) -> None:
        run_id = dispatch.run_id
        control = dispatch.control
        try:
            async with self.locks.hold(dispatch.server_id, self.lock_timeout, control.event):
                async with slot(self._slots, control.event):
                    server, playbook = self._load_targets(dispatch)
                    async with self.vaults.resolve(dispatch.vault_id, run_id) as vault:
                        await self.runner.execute(run_id, server, playbook, dispatch.variables, vault, control)
        except AcquireCancelled:
            self._fail_if_open(run_id, f"{CANCELLED_MARKER} {control.reason}")
        except ConcurrencyError as e:
            logger.warning(f"Run {run_id}: {e.message}")
            self._fail_if_open(run_id, e.message)
        except DecryptionError as e:
            self._fail_if_open(run_id, f"Vault decryption failed: {e.message}")
        except ConfigurationError as e:
            self._fail_if_open(run_id, f"Dispatch failed: {e.message}")
        except asyncio.CancelledError:
            self._fail_if_open(run_id, f"{CANCELLED_MARKER} {control.reason or 'run task was cancelled'}")
            if not control.cancelled:
                raise
            # Forced after the grace period; keep going so the run is reported
            asyncio.current_task().uncancel()
        except Exception as e:
            logger.exception(f"Unexpected error while executing run {run_id}")
            self._fail_if_open(run_id, f"Engine error: {e}")
        await self._on_terminal(dispatch)

    def _task_done(self, task: asyncio.Task, dispatch: _Dispatch) -> None:
        self._tasks.discard(task)
        self._inflight.pop(dispatch.run_id, None)
        if not dispatch.finished.is_set():
            # Task died before its first step or was torn down at shutdown
            self._fail_if_open(dispatch.run_id, f"{CANCELLED_MARKER} {dispatch.control.reason or 'run task was cancelled'}")
            dispatch.finished.set()
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Run task {dispatch.run_id} crashed", exc_info=task.exception())

    async def _on_terminal(self, dispatch: _Dispatch) -> None:
        run = self.history.get_run(dispatch.run_id)
        dispatch.finished.set()
        self._inflight.pop(dispatch.run_id, None)
        self.audit.record(
            ENGINE_ACTOR, "run_status", "run", run.id,
            {"status": run.status, "exit_code": run.exit_code, "batch_id": run.batch_id},
        )
        logger.info(f"Run {run.id} finished with status {run.status}")

        state = self._batches.get(run.batch_id) if run.batch_id else None
        if state and state.abort_on_failure and run.status == RunStatus.FAILED.value and not state.aborting:
            state.aborting = True
            self._abort_batch(state, run.id)

        if self._closing:
            return
        form = self._load_form(run.form_id)
        if form is None:
            return
        await self._notify(self.notifier.send_run_notification(form, run), run.id)

        if state and not state.notified:
            runs = self.history.batch_runs(state.batch_id)
            status = batch_status(r.status for r in runs)
            if status in (RunStatus.SUCCESS.value, RunStatus.FAILED.value) and not state.notified:
                state.notified = True
                self._batches.pop(state.batch_id, None)
                await self._notify(
                    self.notifier.send_batch_notification(form, state.batch_id, status, [r.id for r in runs]),
                    state.batch_id,
                )

    def _abort_batch(self, state: _BatchState, failed_run_id: str) -> None:
        logger.info(f"Run {failed_run_id} failed, aborting batch {state.batch_id}")
        for run_id in state.run_ids:
            if run_id == failed_run_id:
                continue
            sibling = self._inflight.get(run_id)
            if sibling is not None:
                sibling.control.cancel(BATCH_ABORTED_REASON)

    def _load_form(self, form_id: Optional[str]) -> Optional[Form]:
        if not form_id:
            return None
        with Session(self.engine) as db:
            return db.get(Form, form_id)

    @staticmethod
    async def _notify(send, ref: str) -> None:
        try:
            await send
        except Exception:
            logger.exception(f"Notification for {ref} failed")

    # --- Queries ----------------------------------------------------------

    def get_run(self, run_id: str) -> Run:
        return self.history.get_run(run_id)

    def list_runs(
        self,
        form_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        status: Optional[str] = None,
        server_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Run], int]:
        return self.history.list_runs(form_id, batch_id, status, server_id, limit, offset)

    def get_batch(self, batch_id: str) -> BatchView:
        runs = self.history.batch_runs(batch_id)
        if not runs:
            raise NotFoundError("batch", batch_id)
        return BatchView(batch_id=batch_id, status=batch_status(r.status for r in runs), runs=runs)

    # --- Control ----------------------------------------------------------

    @staticmethod
    async def _wait_finished(dispatch: _Dispatch, timeout: float) -> bool:
        try:
            await asyncio.wait_for(dispatch.finished.wait(), timeout)
            return True
        except asyncio.TimeoutError:
            return False

    async def cancel_run(self, run_id: str, actor: Actor, ip: str = "") -> bool:
        """Cancels a run and returns once it is terminal.

        Returns:
            True when the run was cancelled, False when it had already
            finished.

        Raises:
            NotFoundError: Unknown run id.
        """
        run = self.history.get_run(run_id)
        if run.is_terminal:
            return False

        reason = f"cancelled by {actor.username}" if actor.username else "cancelled by user"
        dispatch = self._inflight.get(run_id)
        if dispatch is not None:
            dispatch.control.cancel(reason)
            if not await self._wait_finished(dispatch, self.cancel_grace):
                logger.warning(f"Run {run_id} did not stop within {self.cancel_grace:g}s, forcing")
                if dispatch.task is not None:
                    dispatch.task.cancel()
                await self._wait_finished(dispatch, self.cancel_grace)
        # No live task (or one that would not die): close the row directly
        self._fail_if_open(run_id, f"{CANCELLED_MARKER} {reason}")

        self.audit.record(actor, "run_cancelled", "run", run_id, {"reason": reason}, ip=ip)
        return True

    async def recover(self) -> int:
        """Startup recovery after a crash or restart.

        Fails the runs a previous process left open and deletes local vault
        scratch files. Runs that had already started also get their remote
        temp files removed; unreachable servers are logged and skipped.

        Returns:
            Number of runs that were failed.
        """
        interrupted = self.history.fail_interrupted()
        self.vaults.sweep_orphans()
        started = [run for run in interrupted if run.started_at is not None]
        if started:
            with Session(self.engine) as db:
                servers = {run.id: db.get(Server, run.server_id) for run in started}
            await asyncio.gather(*(
                self.runner.purge_remote(run.id, servers[run.id])
                for run in started if servers[run.id] is not None
            ))
        return len(interrupted)

    async def join(self) -> None:
        """Waits until every dispatched run has been reported."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        self._closing = True
        for dispatch in list(self._inflight.values()):
            dispatch.control.cancel("engine shutdown")
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Coordinator stopped ({len(tasks)} runs interrupted)")
