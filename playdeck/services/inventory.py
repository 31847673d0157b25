from typing import Iterable, List, Optional
from sqlmodel import Session, select, col
import logging

from playdeck.core.exceptions import ConfigurationError, NotFoundError
from playdeck.core.security import encrypt_secret
from playdeck.models import Form, Server, ServerGroup, ServerGroupMember
from playdeck.services.audit import Actor, AuditService, ENGINE_ACTOR

logger = logging.getLogger(__name__)


class InventoryService:
    """CRUD for servers and server groups.

    Private keys are encrypted before they are stored; nothing here ever
    returns them in clear text.
    """
    def __init__(self, db: Session, audit: Optional[AuditService] = None, ip: str = ""):
        self.db = db
        self.audit = audit
        self.ip = ip

    def _record(self, actor: Actor, action: str, resource: str, resource_id: str, details: dict) -> None:
        if self.audit:
            self.audit.record(actor, action, resource, resource_id, details, ip=self.ip)

    def list_servers(self) -> List[Server]:
        return list(self.db.exec(select(Server).order_by(Server.name, Server.id)).all())

    def get_server(self, server_id: str) -> Server:
        server = self.db.get(Server, server_id)
        if not server:
            raise NotFoundError("server", server_id)
        return server

    def create_server(
        self,
        name: str,
        host: str,
        port: int = 22,
        username: str = "root",
        ssh_private_key: Optional[str] = None,
        pre_command: str = "",
        actor: Actor = ENGINE_ACTOR,
    ) -> Server:
        if not host or not host.strip():
            raise ConfigurationError("A server needs a host")
        server = Server(
            name=name.strip() or host.strip(),
            host=host.strip(),
            port=port,
            username=username,
            ssh_private_key=encrypt_secret(ssh_private_key) if ssh_private_key else None,
            pre_command=pre_command or "",
        )
        self.db.add(server)
        self.db.commit()
        self.db.refresh(server)
        self._record(actor, "create", "server", server.id, {"name": server.name, "host": server.host})
        return server

    def update_server(self, server_id: str, actor: Actor = ENGINE_ACTOR, **changes) -> Server:
        """Applies field changes; `ssh_private_key=""` removes the stored key."""
        server = self.get_server(server_id)
        for key in ("name", "host", "port", "username", "pre_command"):
            if key in changes and changes[key] is not None:
                setattr(server, key, changes[key])
        if "ssh_private_key" in changes and changes["ssh_private_key"] is not None:
            key = changes["ssh_private_key"]
            server.ssh_private_key = encrypt_secret(key) if key else None
        self.db.add(server)
        self.db.commit()
        self.db.refresh(server)
        self._record(actor, "update", "server", server.id, {"fields": sorted(k for k in changes if k != "ssh_private_key")})
        return server

    def delete_server(self, server_id: str, actor: Actor = ENGINE_ACTOR) -> None:
        server = self.get_server(server_id)
        bound = self.db.exec(select(Form).where(Form.server_id == server_id)).first()
        if bound:
            raise ConfigurationError(
                f"Server '{server.name}' is still the target of form '{bound.name}'",
                details={"server_id": server_id, "form_id": bound.id},
            )
        for member in self.db.exec(select(ServerGroupMember).where(ServerGroupMember.server_id == server_id)).all():
            self.db.delete(member)
        self.db.delete(server)
        self.db.commit()
        self._record(actor, "delete", "server", server_id, {"name": server.name})

    def create_group(self, name: str, description: str = "", actor: Actor = ENGINE_ACTOR) -> ServerGroup:
        group = ServerGroup(name=name, description=description)
        self.db.add(group)
        self.db.commit()
        self.db.refresh(group)
        self._record(actor, "create", "server_group", group.id, {"name": name})
        return group

    def list_groups(self) -> List[ServerGroup]:
        return list(self.db.exec(select(ServerGroup).order_by(ServerGroup.name)).all())

    def get_group(self, group_id: str) -> ServerGroup:
        group = self.db.get(ServerGroup, group_id)
        if not group:
            raise NotFoundError("server_group", group_id)
        return group

    def group_members(self, group_id: str) -> List[Server]:
        statement = (
            select(Server)
            .join(ServerGroupMember, ServerGroupMember.server_id == Server.id)
            .where(ServerGroupMember.group_id == group_id)
            .order_by(Server.name, Server.id)
        )
        return list(self.db.exec(statement).all())

    def set_members(self, group_id: str, server_ids: Iterable[str], actor: Actor = ENGINE_ACTOR) -> List[Server]:
        """Replaces a group's membership. Unknown server ids are rejected."""
        group = self.get_group(group_id)
        wanted = list(dict.fromkeys(server_ids))
        if wanted:
            found = set(self.db.exec(select(Server.id).where(col(Server.id).in_(wanted))).all())
            missing = [sid for sid in wanted if sid not in found]
            if missing:
                raise NotFoundError("server", ", ".join(missing))

        for member in self.db.exec(select(ServerGroupMember).where(ServerGroupMember.group_id == group.id)).all():
            self.db.delete(member)
        for server_id in wanted:
            self.db.add(ServerGroupMember(group_id=group.id, server_id=server_id))
        self.db.commit()
        self._record(actor, "update", "server_group", group.id, {"members": wanted})
        return self.group_members(group.id)

    def delete_group(self, group_id: str, actor: Actor = ENGINE_ACTOR) -> None:
        group = self.get_group(group_id)
        bound = self.db.exec(select(Form).where(Form.server_group_id == group_id)).first()
        if bound:
            raise ConfigurationError(
                f"Server group '{group.name}' is still the target of form '{bound.name}'",
                details={"server_group_id": group_id, "form_id": bound.id},
            )
        for member in self.db.exec(select(ServerGroupMember).where(ServerGroupMember.group_id == group_id)).all():
            self.db.delete(member)
        self.db.delete(group)
        self.db.commit()
        self._record(actor, "delete", "server_group", group_id, {"name": group.name})
