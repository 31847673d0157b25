import asyncio
import json
from collections import defaultdict
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, create_engine

from playdeck.core.database import create_db_and_tables
from playdeck.core.exceptions import SSHConnectionError
from playdeck.models import Form, FormField, Playbook, Server, ServerGroup, ServerGroupMember
from playdeck.services.audit import Actor, AuditService
from playdeck.services.coordinator import RunCoordinator
from playdeck.services.notification import NotificationService
from playdeck.services.runner import PRE_COMMAND_OK_MARKER


class FakeProcess:
    """Scripted remote process. `hang=True` keeps the stream open until terminated."""
    def __init__(self, lines, exit_code=0, delay=0.0, hang=False):
        self.lines = list(lines)
        self.exit_code = exit_code
        self.delay = delay
        self.hang = hang
        self.terminated = False
        self._stopped = asyncio.Event()

    async def readline(self) -> str:
        if self.terminated:
            return ""
        if self.lines:
            if self.delay:
                await asyncio.sleep(self.delay)
            return self.lines.pop(0) + "\n"
        if self.hang:
            await self._stopped.wait()
        return ""

    async def wait(self) -> int:
        return -1 if self.terminated else self.exit_code

    def terminate(self) -> None:
        self.terminated = True
        self._stopped.set()


class FakeSession:
    def __init__(self, transport, server):
        self.transport = transport
        self.server = server
        self.closed = False

    async def run(self, command, input=None):
        self.transport.commands.append((self.server.host, command))
        return 0, ""

    async def upload(self, content, remote_path):
        self.transport.uploads[remote_path] = content
        if self.transport.scripts.get(self.server.host, {}).get("stall_upload"):
            await asyncio.Event().wait()

    async def remove(self, *remote_paths):
        self.transport.removed.extend(remote_paths)

    async def start(self, command):
        self.transport.started.append((self.server.host, command))
        script = self.transport.scripts.get(self.server.host, {})
        lines = list(script.get("lines", ["PLAY [all]", "ok: [localhost]"]))
        if PRE_COMMAND_OK_MARKER in command and script.get("pre_command_ok", True):
            lines.insert(0, PRE_COMMAND_OK_MARKER)
        process = FakeProcess(
            lines,
            exit_code=script.get("exit_code", 0),
            delay=script.get("delay", 0.0),
            hang=script.get("hang", False),
        )
        self.transport.processes[self.server.host].append(process)
        return process

    async def close(self):
        if not self.closed:
            self.closed = True
            self.transport.active[self.server.host] -= 1
            self.transport.total_active -= 1


class FakeTransport:
    """In-memory SSH transport that records how many sessions overlap per host."""
    def __init__(self):
        self.scripts: dict[str, dict] = {}
        self.unreachable: set[str] = set()
        self.commands = []
        self.started = []
        self.uploads = {}
        self.removed = []
        self.processes = defaultdict(list)
        self.active = defaultdict(int)
        self.max_active = defaultdict(int)
        self.total_active = 0
        self.max_total_active = 0

    async def connect(self, server):
        await asyncio.sleep(0)
        if server.host in self.unreachable:
            raise SSHConnectionError(f"dial {server.host}:{server.port}: connection refused")
        self.active[server.host] += 1
        self.max_active[server.host] = max(self.max_active[server.host], self.active[server.host])
        self.total_active += 1
        self.max_total_active = max(self.max_total_active, self.total_active)
        return FakeSession(self, server)


class RecordingNotifier(NotificationService):
    def __init__(self):
        super().__init__()
        self.run_events = []
        self.batch_events = []

    async def send_run_notification(self, form, run):
        self.run_events.append((form.id, run.id, run.status))

    async def send_batch_notification(self, form, batch_id, status, run_ids):
        self.batch_events.append((form.id, batch_id, status, list(run_ids)))


USER = Actor(user_id="u-1", username="alice")


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    create_db_and_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def audit(engine):
    return AuditService(engine, retry_attempts=1)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def scratch_dir(tmp_path):
    return tmp_path / "vault-scratch"


@pytest_asyncio.fixture
async def make_coordinator(engine, audit, transport, notifier, scratch_dir):
    created = []

    def factory(**kwargs):
        options = dict(
            transport=transport,
            notifier=notifier,
            max_concurrent=10,
            lock_timeout=5.0,
            cancel_grace=1.0,
            run_timeout=10.0,
            scratch_dir=scratch_dir,
        )
        options.update(kwargs)
        coordinator = RunCoordinator(engine, audit, **options)
        created.append(coordinator)
        return coordinator

    yield factory
    for coordinator in created:
        await coordinator.shutdown()


@pytest_asyncio.fixture
async def coordinator(make_coordinator):
    return make_coordinator()


@pytest.fixture
def playbook_file(tmp_path) -> Path:
    path = tmp_path / "site.yml"
    path.write_text("- hosts: all\n  tasks:\n    - ping:\n", encoding="utf-8")
    return path


def make_server(db, name, host=None, pre_command=""):
    server = Server(name=name, host=host or f"{name}.example.internal", pre_command=pre_command)
    db.add(server)
    db.commit()
    db.refresh(server)
    return server


def make_group(db, name, servers):
    group = ServerGroup(name=name)
    db.add(group)
    db.commit()
    for server in servers:
        db.add(ServerGroupMember(group_id=group.id, server_id=server.id))
    db.commit()
    db.refresh(group)
    return group


def make_playbook(db, file_path, name="site"):
    playbook = Playbook(name=name, file_path=str(file_path))
    db.add(playbook)
    db.commit()
    db.refresh(playbook)
    return playbook


def make_form(db, playbook, server=None, group=None, fields=(), **attrs):
    form = Form(
        name=attrs.pop("name", "deploy"),
        playbook_id=playbook.id,
        server_id=server.id if server else None,
        server_group_id=group.id if group else None,
        **attrs,
    )
    db.add(form)
    db.commit()
    for i, spec in enumerate(fields):
        spec = dict(spec)
        if isinstance(spec.get("options"), list):
            spec["options"] = json.dumps(spec["options"])
        db.add(FormField(form_id=form.id, sort_order=spec.pop("sort_order", i), **spec))
    db.commit()
    db.refresh(form)
    return form


async def wait_for_status(coordinator, run_id, statuses, timeout=2.0):
    """Polls a run until it reaches one of `statuses`."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        run = coordinator.get_run(run_id)
        if run.status in statuses:
            return run
        if loop.time() > deadline:
            raise AssertionError(f"run {run_id} stuck in {run.status}")
        await asyncio.sleep(0.01)
