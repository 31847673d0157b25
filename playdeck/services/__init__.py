from .audit import Actor, AuditService
from .coordinator import RunCoordinator, SubmitResult, BatchView, batch_status
from .scheduler import SchedulerService
from .vault import VaultService, VaultResolver
from .inventory import InventoryService
from .playbook import PlaybookService
from .forms import FormService
from .notification import NotificationService
from .transport import SSHTransport
