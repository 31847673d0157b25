from sqlmodel import Session, select

from playdeck.core.exceptions import ConfigurationError
from playdeck.models import Form, Server, ServerGroup, ServerGroupMember


def resolve_targets(db: Session, form: Form) -> list[Server]:
    """Expands a form's target binding into the servers one run request hits.

    Group members come back ordered by name (then id) and deduplicated, so
    the same form always fans out in the same order.

    Raises:
        ConfigurationError: The form has no target, both a server and a group,
            a dangling server/group id, or a group without members.
    """
    if form.server_id and form.server_group_id:
        raise ConfigurationError(
            f"Form '{form.name}' is bound to both a server and a server group",
            details={"form_id": form.id},
        )

    if form.server_id:
        server = db.get(Server, form.server_id)
        if not server:
            raise ConfigurationError(
                f"Form '{form.name}' references a missing server",
                details={"form_id": form.id, "server_id": form.server_id},
            )
        return [server]

    if form.server_group_id:
        group = db.get(ServerGroup, form.server_group_id)
        if not group:
            raise ConfigurationError(
                f"Form '{form.name}' references a missing server group",
                details={"form_id": form.id, "server_group_id": form.server_group_id},
            )
        statement = (
            select(Server)
            .join(ServerGroupMember, ServerGroupMember.server_id == Server.id)
            .where(ServerGroupMember.group_id == group.id)
            .order_by(Server.name, Server.id)
        )
        servers: list[Server] = []
        seen: set[str] = set()
        for server in db.exec(statement).all():
            if server.id not in seen:
                seen.add(server.id)
                servers.append(server)
        if not servers:
            raise ConfigurationError(
                f"Server group '{group.name}' has no members",
                details={"form_id": form.id, "server_group_id": group.id},
            )
        return servers

    raise ConfigurationError(
        f"Form '{form.name}' has no target server or server group configured",
        details={"form_id": form.id},
    )
