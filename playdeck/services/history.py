from typing import Iterable, Optional
import logging

from sqlalchemy.engine import Engine
from sqlmodel import Session, select, desc, func, update, col

from playdeck.core.exceptions import InvalidTransitionError, NotFoundError
from playdeck.models import Run, RunStatus, utcnow

logger = logging.getLogger(__name__)

INTERRUPTED_MESSAGE = "[SYSTEM] Run interrupted by engine restart."

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    RunStatus.PENDING.value: {RunStatus.RUNNING.value, RunStatus.FAILED.value},
    RunStatus.RUNNING.value: {RunStatus.SUCCESS.value, RunStatus.FAILED.value},
    RunStatus.SUCCESS.value: set(),
    RunStatus.FAILED.value: set(),
}


class RunHistory:
    """Persists runs and guards their status transitions.

    Every status change goes through `_transition`, which reads, checks and
    writes inside one session without yielding to the event loop, so changes
    to a single run are strictly ordered.
    """
    def __init__(self, engine: Engine):
        self.engine = engine

    def create_runs(self, runs: Iterable[Run]) -> list[Run]:
        """Inserts all rows of a dispatch in a single transaction."""
        runs = list(runs)
        with Session(self.engine) as session:
            for run in runs:
                session.add(run)
            session.commit()
            for run in runs:
                session.refresh(run)
        return runs

    def get_run(self, run_id: str) -> Run:
        with Session(self.engine) as session:
            run = session.get(Run, run_id)
            if not run:
                raise NotFoundError("run", run_id)
            return run

    def _transition(self, run_id: str, status: str, **changes) -> Run:
        with Session(self.engine) as session:
            run = session.get(Run, run_id)
            if not run:
                raise NotFoundError("run", run_id)
            if status not in ALLOWED_TRANSITIONS[run.status]:
                raise InvalidTransitionError(
                    f"run {run_id} cannot move from {run.status} to {status}",
                    details={"run_id": run_id, "from": run.status, "to": status},
                )
            run.status = status
            for key, value in changes.items():
                setattr(run, key, value)
            session.add(run)
            session.commit()
            session.refresh(run)
            return run

    def mark_running(self, run_id: str) -> Run:
        return self._transition(run_id, RunStatus.RUNNING.value, started_at=utcnow())

    def finish(self, run_id: str, status: str, exit_code: Optional[int] = None, message: Optional[str] = None) -> Run:
        """Moves a run to a terminal status; `message` is appended to its output."""
        if status not in (RunStatus.SUCCESS.value, RunStatus.FAILED.value):
            raise InvalidTransitionError(f"{status} is not a terminal status")
        current = self.get_run(run_id)
        output = current.output
        if message:
            if output and not output.endswith("\n"):
                output += "\n"
            output += message + "\n"
        return self._transition(run_id, status, exit_code=exit_code, output=output, finished_at=utcnow())

    def append_output(self, run_id: str, chunk: str) -> None:
        if not chunk:
            return
        with Session(self.engine) as session:
            session.exec(update(Run).where(col(Run.id) == run_id).values(output=Run.output + chunk))
            session.commit()

    def list_runs(
        self,
        form_id: Optional[str] = None,
        batch_id: Optional[str] = None,
        status: Optional[str] = None,
        server_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Run], int]:
        """Runs matching the filters, newest first, plus the total matching count."""
        query = select(Run)
        if form_id:
            query = query.where(Run.form_id == form_id)
        if batch_id:
            query = query.where(Run.batch_id == batch_id)
        if status and status != "all":
            query = query.where(Run.status == status)
        if server_id:
            query = query.where(Run.server_id == server_id)

        with Session(self.engine) as session:
            count_query = select(func.count()).select_from(query.subquery())
            total_count = session.exec(count_query).one()
            query = query.order_by(desc(Run.created_at), Run.id).offset(offset)
            if limit:
                query = query.limit(limit)
            return list(session.exec(query).all()), total_count

    def batch_runs(self, batch_id: str) -> list[Run]:
        with Session(self.engine) as session:
            return list(session.exec(select(Run).where(Run.batch_id == batch_id).order_by(Run.id)).all())

    def fail_interrupted(self) -> list[Run]:
        """Force-fails runs a previous process left pending or running.

        Why: a run is only ever advanced by the process that dispatched it, so
        after a restart nothing would ever finish these rows.
        """
        with Session(self.engine) as session:
            stale = session.exec(
                select(Run).where(col(Run.status).in_([RunStatus.PENDING.value, RunStatus.RUNNING.value]))
            ).all()
            for run in stale:
                run.status = RunStatus.FAILED.value
                run.finished_at = utcnow()
                run.output = (run.output + "\n" if run.output else "") + INTERRUPTED_MESSAGE
                session.add(run)
            session.commit()
            for run in stale:
                session.refresh(run)
        if stale:
            logger.warning(f"Found {len(stale)} interrupted runs. Marked them failed.")
        return list(stale)
