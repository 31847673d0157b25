from .base import new_id, utcnow
from .inventory import Server, ServerGroup, ServerGroupMember
from .playbook import Playbook, Vault
from .form import Form, FormField, FieldType
from .run import Run, RunStatus, RunTrigger, TERMINAL_STATUSES
from .audit import AuditLog
