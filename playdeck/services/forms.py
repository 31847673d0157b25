from typing import Any, Iterable, List, Mapping, Optional
from sqlmodel import Session, select
import json
import logging
import secrets

from playdeck.core.exceptions import ConfigurationError, NotFoundError, ValidationError
from playdeck.models import Form, FormField, Playbook, Server, ServerGroup, Vault, utcnow
from playdeck.services.audit import Actor, AuditService, ENGINE_ACTOR
from playdeck.services.binder import coerce, field_type_of, parse_options

logger = logging.getLogger(__name__)

# Columns owned elsewhere: schedule fields by the scheduler, the token by the helpers below
EDITABLE_FIELDS = (
    "name", "description", "playbook_id", "server_id", "server_group_id", "vault_id",
    "is_quick_action", "notify_webhook", "notify_email", "abort_on_failure",
)


def build_field(form_id: str, spec: Mapping[str, Any], position: int) -> FormField:
    """Turns a field description into a validated FormField row."""
    options = spec.get("options", [])
    if not isinstance(options, str):
        options = json.dumps([str(o) for o in (options or [])])
    field = FormField(
        form_id=form_id,
        name=str(spec.get("name") or "").strip(),
        label=str(spec.get("label") or ""),
        field_type=str(spec.get("field_type") or "text"),
        default_value="" if spec.get("default_value") is None else str(spec.get("default_value")),
        options=options,
        required=bool(spec.get("required", False)),
        sort_order=int(spec.get("sort_order", position)),
    )
    if not field.name:
        raise ValidationError(f"fields[{position}]", "name is required")
    field_type_of(field)
    parse_options(field)
    if field.default_value != "":
        coerce(field, field.default_value)
    return field


class FormService:
    """CRUD for forms and their ordered fields."""
    def __init__(self, db: Session, audit: Optional[AuditService] = None, ip: str = ""):
        self.db = db
        self.audit = audit
        self.ip = ip

    def _record(self, actor: Actor, action: str, form_id: str, details: dict, sensitive: bool = False) -> None:
        if self.audit:
            self.audit.record(actor, action, "form", form_id, details, ip=self.ip, sensitive=sensitive)

    def get_form(self, form_id: str) -> Form:
        form = self.db.get(Form, form_id)
        if not form:
            raise NotFoundError("form", form_id)
        return form

    def list_forms(self) -> List[Form]:
        return list(self.db.exec(select(Form).order_by(Form.name)).all())

    def get_fields(self, form_id: str) -> List[FormField]:
        statement = select(FormField).where(FormField.form_id == form_id).order_by(FormField.sort_order, FormField.name)
        return list(self.db.exec(statement).all())

    def _check_references(self, form: Form) -> None:
        if form.server_id and form.server_group_id:
            raise ConfigurationError("A form targets either a server or a server group, not both")
        playbook = self.db.get(Playbook, form.playbook_id)
        if not playbook or playbook.is_deleted:
            raise ConfigurationError("Playbook is missing", details={"playbook_id": form.playbook_id})
        if form.server_id and not self.db.get(Server, form.server_id):
            raise ConfigurationError("Server is missing", details={"server_id": form.server_id})
        if form.server_group_id and not self.db.get(ServerGroup, form.server_group_id):
            raise ConfigurationError("Server group is missing", details={"server_group_id": form.server_group_id})
        if form.vault_id and not self.db.get(Vault, form.vault_id):
            raise ConfigurationError("Vault is missing", details={"vault_id": form.vault_id})

    def _build_fields(self, form_id: str, fields: Iterable[Mapping[str, Any]]) -> List[FormField]:
        rows = [build_field(form_id, spec, i) for i, spec in enumerate(fields)]
        names = [row.name for row in rows]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValidationError(duplicates[0], "is defined more than once")
        return rows

    def _replace_fields(self, form_id: str, rows: List[FormField]) -> None:
        for old in self.get_fields(form_id):
            self.db.delete(old)
        for row in rows:
            self.db.add(row)

    def create_form(
        self,
        name: str,
        playbook_id: str,
        fields: Iterable[Mapping[str, Any]] = (),
        actor: Actor = ENGINE_ACTOR,
        **attrs: Any,
    ) -> Form:
        """Creates a form with its fields in one transaction.

        Args:
            name: Display name.
            playbook_id: Playbook the form runs.
            fields: Field descriptions (name, label, field_type,
                default_value, options, required, sort_order).
            actor: Who made the change.
            **attrs: Any of the other editable form columns.
        """
        unknown = set(attrs) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(sorted(unknown)[0], "cannot be set here")
        form = Form(name=name, playbook_id=playbook_id, **attrs)
        self._check_references(form)
        rows = self._build_fields(form.id, fields)
        self.db.add(form)
        self._replace_fields(form.id, rows)
        self.db.commit()
        self.db.refresh(form)
        self._record(actor, "create", form.id, {"name": name})
        return form

    def update_form(
        self,
        form_id: str,
        fields: Optional[Iterable[Mapping[str, Any]]] = None,
        actor: Actor = ENGINE_ACTOR,
        **changes: Any,
    ) -> Form:
        """Updates form columns and, when `fields` is given, replaces all fields."""
        form = self.get_form(form_id)
        unknown = set(changes) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(sorted(unknown)[0], "cannot be set here")
        for key, value in changes.items():
            setattr(form, key, value)
        self._check_references(form)
        rows = self._build_fields(form.id, fields) if fields is not None else None
        form.updated_at = utcnow()
        self.db.add(form)
        if rows is not None:
            self._replace_fields(form.id, rows)
        self.db.commit()
        self.db.refresh(form)
        self._record(actor, "update", form.id, {"fields": sorted(changes), "schema_replaced": fields is not None})
        return form

    def delete_form(self, form_id: str, actor: Actor = ENGINE_ACTOR) -> None:
        """Deletes a form and its fields; past runs keep their form_id."""
        form = self.get_form(form_id)
        for field in self.get_fields(form_id):
            self.db.delete(field)
        self.db.delete(form)
        self.db.commit()
        self._record(actor, "delete", form_id, {"name": form.name})

    def regenerate_webhook_token(self, form_id: str, actor: Actor = ENGINE_ACTOR) -> str:
        """Issues a new webhook token; the previous one stops working immediately."""
        form = self.get_form(form_id)
        form.webhook_token = secrets.token_hex(32)
        form.updated_at = utcnow()
        self.db.add(form)
        self.db.commit()
        self._record(actor, "update", form_id, {"webhook_token": "regenerated"}, sensitive=True)
        return form.webhook_token

    def revoke_webhook_token(self, form_id: str, actor: Actor = ENGINE_ACTOR) -> None:
        form = self.get_form(form_id)
        form.webhook_token = None
        form.updated_at = utcnow()
        self.db.add(form)
        self.db.commit()
        self._record(actor, "update", form_id, {"webhook_token": "revoked"}, sensitive=True)
