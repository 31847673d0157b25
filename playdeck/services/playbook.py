from pathlib import Path
from typing import List, Optional
from sqlmodel import Session, select
import logging

from playdeck.core.exceptions import ConfigurationError, NotFoundError
from playdeck.models import Form, Playbook, Run, utcnow
from playdeck.services.audit import Actor, AuditService, ENGINE_ACTOR

logger = logging.getLogger(__name__)


class PlaybookService:
    """Registers playbook files with the engine.

    The engine never uploads or edits playbooks: it records the path of a
    file that already exists and reads it at dispatch time.
    """
    def __init__(self, db: Session, audit: Optional[AuditService] = None, ip: str = ""):
        self.db = db
        self.audit = audit
        self.ip = ip

    def register(self, name: str, file_path: str, description: str = "", actor: Actor = ENGINE_ACTOR) -> Playbook:
        path = Path(file_path)
        if not path.is_file():
            raise ConfigurationError(f"Playbook file does not exist: {file_path}", details={"file_path": file_path})
        playbook = Playbook(name=name, description=description, file_path=str(path))
        self.db.add(playbook)
        self.db.commit()
        self.db.refresh(playbook)
        if self.audit:
            self.audit.record(
                actor, "create", "playbook", playbook.id, {"name": name, "file_path": str(path)}, ip=self.ip
            )
        return playbook

    def list_playbooks(self, include_deleted: bool = False) -> List[Playbook]:
        query = select(Playbook)
        if not include_deleted:
            query = query.where(Playbook.deleted_at == None)  # noqa: E711
        return list(self.db.exec(query.order_by(Playbook.name)).all())

    def get_playbook(self, playbook_id: str) -> Playbook:
        playbook = self.db.get(Playbook, playbook_id)
        if not playbook:
            raise NotFoundError("playbook", playbook_id)
        return playbook

    def delete_playbook(self, playbook_id: str, actor: Actor = ENGINE_ACTOR) -> bool:
        """Deletes a playbook.

        Why: run history must keep pointing at the playbook it executed, so a
        playbook with runs is only soft-deleted (hidden and no longer
        runnable). One that never ran is removed for good.

        Returns:
            True for a hard delete, False for a soft delete.
        """
        playbook = self.get_playbook(playbook_id)
        in_forms = self.db.exec(select(Form).where(Form.playbook_id == playbook_id)).first()
        has_runs = self.db.exec(select(Run.id).where(Run.playbook_id == playbook_id)).first() is not None

        if has_runs or in_forms:
            if playbook.deleted_at is None:
                playbook.deleted_at = utcnow()
                self.db.add(playbook)
                self.db.commit()
            hard = False
        else:
            self.db.delete(playbook)
            self.db.commit()
            hard = True

        logger.info(f"Playbook {playbook.name} {'deleted' if hard else 'soft-deleted'}")
        if self.audit:
            self.audit.record(
                actor, "delete", "playbook", playbook_id, {"name": playbook.name, "soft": not hard}, ip=self.ip
            )
        return hard
