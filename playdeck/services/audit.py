from dataclasses import dataclass
from typing import Any, Optional
import json
import logging

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select, desc, func

from playdeck.core.config import get_settings
from playdeck.core.logging import get_alert_logger
from playdeck.models import AuditLog

settings = get_settings()
logger = logging.getLogger(__name__)

@dataclass(frozen=True)
class Actor:
    """Who performed an audited action. System actors carry no user id."""
    user_id: str = ""
    username: str = ""

    @classmethod
    def system(cls, name: str) -> "Actor":
        return cls(user_id="", username=name)

SCHEDULER_ACTOR = Actor.system("scheduler")
WEBHOOK_ACTOR = Actor.system("webhook")
ENGINE_ACTOR = Actor.system("engine")

class AuditService:
    """Append-only sink for audit records.

    Writing an audit row never fails the action that triggered it: errors are
    retried immediately, never sleeping on the event loop, a bounded number of
    times and then logged. Security-sensitive actions that cannot be recorded
    are also raised on the operator alert channel.
    """
    def __init__(self, engine: Engine, retry_attempts: Optional[int] = None):
        self.engine = engine
        self.retry_attempts = max(1, retry_attempts or settings.AUDIT_RETRY_ATTEMPTS)

    def record(
        self,
        actor: Actor,
        action: str,
        resource: str,
        resource_id: str = "",
        details: Optional[dict[str, Any]] = None,
        ip: str = "",
        sensitive: bool = False,
    ) -> Optional[AuditLog]:
        """Appends one audit row.

        Args:
            actor: User or system component performing the action.
            action: Verb, e.g. "run_created" or "webhook_auth_failed".
            resource: Resource kind ("run", "form", "vault", ...).
            resource_id: Identifier of the affected resource.
            details: Free-form JSON-serialisable context.
            ip: Client address when the action came over the network.
            sensitive: Surface write failures on the alert channel.

        Returns:
            The stored row, or None when every attempt failed.
        """
        entry_details = json.dumps(details or {}, default=str)
        last_error: Optional[Exception] = None
        for attempt in range(1, self.retry_attempts + 1):
            try:
                with Session(self.engine) as session:
                    entry = AuditLog(
                        user_id=actor.user_id,
                        username=actor.username,
                        action=action,
                        resource=resource,
                        resource_id=resource_id or "",
                        details=entry_details,
                        ip=ip or "",
                    )
                    session.add(entry)
                    session.commit()
                    session.refresh(entry)
                    return entry
            except SQLAlchemyError as e:
                last_error = e
                logger.warning(f"Audit write attempt {attempt}/{self.retry_attempts} for {action} failed: {e}")

        logger.error(f"Dropping audit record {action} {resource}/{resource_id}: {last_error}")
        if sensitive:
            get_alert_logger().critical(
                f"Security audit record could not be written: action={action} "
                f"resource={resource}/{resource_id} actor={actor.username or '-'} ip={ip or '-'}"
            )
        return None

    def list(
        self,
        limit: int = 50,
        offset: int = 0,
        action: Optional[str] = None,
        resource: Optional[str] = None,
    ) -> tuple[list[AuditLog], int]:
        """Audit entries, newest first, with the total matching count."""
        with Session(self.engine) as session:
            query = select(AuditLog)
            if action:
                query = query.where(AuditLog.action == action)
            if resource:
                query = query.where(AuditLog.resource == resource)
            total = session.exec(select(func.count()).select_from(query.subquery())).one()
            rows = session.exec(query.order_by(desc(AuditLog.created_at)).offset(offset).limit(limit)).all()
            return list(rows), total
