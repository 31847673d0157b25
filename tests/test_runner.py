import asyncio
import json
from pathlib import Path

import pytest

from playdeck.core.exceptions import InvalidTransitionError
from playdeck.models import Run, RunStatus
from playdeck.services.history import RunHistory
from playdeck.services.runner import CANCELLED_MARKER, PRE_COMMAND_OK_MARKER, ExecutionRunner, RunControl
from playdeck.services.vault import VaultHandle

from conftest import make_playbook, make_server


@pytest.fixture
def history(engine):
    return RunHistory(engine)


@pytest.fixture
def setup(db, history, playbook_file):
    def factory(name="web1", pre_command=""):
        server = make_server(db, name, pre_command=pre_command)
        playbook = make_playbook(db, playbook_file)
        run = history.create_runs([Run(playbook_id=playbook.id, server_id=server.id)])[0]
        return run, server, playbook
    return factory


async def wait_running(history, run_id):
    for _ in range(200):
        if history.get_run(run_id).status == RunStatus.RUNNING.value:
            return
        await asyncio.sleep(0.01)
    raise AssertionError("run never started")


@pytest.mark.asyncio
async def test_successful_run_streams_output(history, transport, setup):
    run, server, playbook = setup()
    transport.scripts[server.host] = {"lines": ["PLAY [all]", "ok: [web1]", "PLAY RECAP"]}
    runner = ExecutionRunner(history, transport, remote_tmp_dir="/tmp")

    result = await runner.execute(run.id, server, playbook, {"version": "1.2"})

    assert result.status == "success"
    assert result.exit_code == 0
    assert result.started_at is not None and result.finished_at is not None
    assert result.output.splitlines() == ["PLAY [all]", "ok: [web1]", "PLAY RECAP", "Process finished with exit code 0"]

    remote_playbook = f"/tmp/playdeck-run-{run.id}.yml"
    assert transport.uploads[remote_playbook] == Path(playbook.file_path).read_text()
    assert remote_playbook in transport.removed
    host, command = transport.started[0]
    assert host == server.host
    assert "ansible-playbook" in command
    assert json.dumps({"version": "1.2"}) in command
    assert transport.active[server.host] == 0


@pytest.mark.asyncio
async def test_connection_failure_never_invokes_playbook(history, transport, setup):
    run, server, playbook = setup()
    transport.unreachable.add(server.host)
    runner = ExecutionRunner(history, transport)

    result = await runner.execute(run.id, server, playbook, {})

    assert result.status == "failed"
    assert "SSH connection failed: dial" in result.output
    assert transport.started == []


@pytest.mark.asyncio
async def test_pre_command_failure(history, transport, setup):
    run, server, playbook = setup(pre_command="source /opt/venv/bin/activate")
    transport.scripts[server.host] = {
        "lines": ["activate: No such file or directory"], "exit_code": 1, "pre_command_ok": False,
    }
    runner = ExecutionRunner(history, transport)

    result = await runner.execute(run.id, server, playbook, {})

    assert result.status == "failed"
    assert result.exit_code == 1
    assert "activate: No such file or directory" in result.output
    assert "Pre-command failed with exit code 1" in result.output
    assert PRE_COMMAND_OK_MARKER not in result.output
    assert transport.started[0][1].startswith("source /opt/venv/bin/activate && ")


@pytest.mark.asyncio
async def test_playbook_non_zero_exit(history, transport, setup):
    run, server, playbook = setup(pre_command="true")
    transport.scripts[server.host] = {"lines": ["fatal: [web1]: FAILED!"], "exit_code": 2}
    runner = ExecutionRunner(history, transport)

    result = await runner.execute(run.id, server, playbook, {})

    assert result.status == "failed"
    assert result.exit_code == 2
    assert "Process finished with exit code 2" in result.output
    assert "Pre-command failed" not in result.output


@pytest.mark.asyncio
async def test_missing_playbook_file(history, transport, setup, tmp_path):
    run, server, playbook = setup()
    playbook.file_path = str(tmp_path / "gone.yml")
    runner = ExecutionRunner(history, transport)

    result = await runner.execute(run.id, server, playbook, {})

    assert result.status == "failed"
    assert "read playbook" in result.output


@pytest.mark.asyncio
async def test_cancel_terminates_remote_process(history, transport, setup):
    run, server, playbook = setup()
    transport.scripts[server.host] = {"lines": ["TASK [wait]"], "hang": True}
    runner = ExecutionRunner(history, transport)
    control = RunControl()

    task = asyncio.create_task(runner.execute(run.id, server, playbook, {}, control=control))
    await wait_running(history, run.id)
    control.cancel("stopped by alice")
    result = await asyncio.wait_for(task, 1.0)

    assert result.status == "failed"
    assert f"{CANCELLED_MARKER} stopped by alice" in result.output
    assert transport.processes[server.host][0].terminated
    assert transport.active[server.host] == 0


@pytest.mark.asyncio
async def test_timeout_uses_cancellation_path(history, transport, setup):
    run, server, playbook = setup()
    transport.scripts[server.host] = {"lines": [], "hang": True}
    runner = ExecutionRunner(history, transport, run_timeout=0.05)

    result = await asyncio.wait_for(runner.execute(run.id, server, playbook, {}), 1.0)

    assert result.status == "failed"
    assert f"{CANCELLED_MARKER} timed out after 0.05s" in result.output


@pytest.mark.asyncio
async def test_cancelled_before_start_never_connects(history, transport, setup):
    run, server, playbook = setup()
    control = RunControl()
    control.cancel("batch aborted")
    runner = ExecutionRunner(history, transport)

    result = await runner.execute(run.id, server, playbook, {}, control=control)

    assert result.status == "failed"
    assert result.started_at is None
    assert transport.max_active[server.host] == 0


@pytest.mark.asyncio
async def test_vault_files_are_uploaded_and_removed(history, transport, setup, tmp_path):
    run, server, playbook = setup()
    vars_file = tmp_path / "vars.yml"
    vars_file.write_text("api_key: xyz\n")
    runner = ExecutionRunner(history, transport, remote_tmp_dir="/var/tmp/")

    await runner.execute(run.id, server, playbook, {}, vault=VaultHandle("v1", "s3cret", vars_file))

    paths = runner.remote_paths(run.id)
    assert transport.uploads[paths["vault_pass"]] == "s3cret"
    assert transport.uploads[paths["vault_vars"]] == "api_key: xyz\n"
    command = transport.started[0][1]
    assert f"--vault-password-file {paths['vault_pass']}" in command
    assert f"@{paths['vault_vars']}" in command
    assert set(paths.values()) <= set(transport.removed)


def test_build_command_quotes_variables():
    cmd = ExecutionRunner.build_command("/tmp/p.yml", {"msg": "it's here"}, pre_command="cd /srv")
    assert cmd.startswith(f"cd /srv && printf '%s\\n' {PRE_COMMAND_OK_MARKER} && ")
    assert "ansible-playbook /tmp/p.yml --extra-vars" in cmd
    assert "ANSIBLE_HOST_KEY_CHECKING=False" in cmd


def test_terminal_runs_cannot_transition(history, setup):
    run, _, _ = setup()
    history.finish(run.id, "failed", message="boom")
    with pytest.raises(InvalidTransitionError):
        history.mark_running(run.id)
    with pytest.raises(InvalidTransitionError):
        history.finish(run.id, "success")
