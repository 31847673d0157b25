from pathlib import Path
from typing import Any, Optional
import asyncio
import json
import logging
import shlex

import asyncssh

from playdeck.core.config import get_settings
from playdeck.core.exceptions import ExecutionError, SSHConnectionError
from playdeck.models import Playbook, Run, RunStatus, Server
from playdeck.services.history import RunHistory
from playdeck.services.transport import SSHProcess, SSHSession, SSHTransport
from playdeck.services.vault import VaultHandle

settings = get_settings()
logger = logging.getLogger(__name__)

CANCELLED_MARKER = "[CANCELLED]"
PRE_COMMAND_OK_MARKER = "@@PLAYDECK_PRE_COMMAND_OK@@"
ANSIBLE_ENV = {"ANSIBLE_FORCE_COLOR": "0", "ANSIBLE_NOCOWS": "1", "ANSIBLE_HOST_KEY_CHECKING": "False"}


class RunControl:
    """Cancellation signal shared by the coordinator and one in-flight run."""
    def __init__(self):
        self.event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self.event.is_set()

    def cancel(self, reason: str = "cancelled by user") -> None:
        if not self.event.is_set():
            self.reason = reason
            self.event.set()

    async def wait(self) -> None:
        await self.event.wait()


class ExecutionRunner:
    """Executes one playbook against one server over SSH.

    The runner owns the `pending -> running -> success|failed` lifecycle of a
    single run. It never retries: a failed run stays failed and a retry is a
    new run.

    Attributes:
        history: Run persistence; output is appended line by line so partial
            output survives a crash.
        transport: SSH collaborator used to open sessions.
    """
    def __init__(
        self,
        history: RunHistory,
        transport: Optional[SSHTransport] = None,
        remote_tmp_dir: Optional[str] = None,
        run_timeout: Optional[float] = None,
        cancel_grace: Optional[float] = None,
        cleanup_timeout: Optional[float] = None,
    ):
        self.history = history
        self.transport = transport or SSHTransport()
        self.remote_tmp_dir = (remote_tmp_dir or settings.REMOTE_TMP_DIR).rstrip("/") or "/"
        self.run_timeout = run_timeout if run_timeout is not None else settings.RUN_TIMEOUT_SECONDS
        self.cancel_grace = cancel_grace if cancel_grace is not None else settings.CANCEL_GRACE_SECONDS
        self.cleanup_timeout = cleanup_timeout or settings.REMOTE_CLEANUP_TIMEOUT_SECONDS

    def remote_paths(self, run_id: str) -> dict[str, str]:
        base = f"{self.remote_tmp_dir}/playdeck-run-{run_id}"
        return {
            "playbook": f"{base}.yml",
            "vault_pass": f"{base}-vault-pass",
            "vault_vars": f"{base}-vault-vars.yml",
        }

    @staticmethod
    def build_command(
        playbook_path: str,
        variables: dict[str, Any],
        pre_command: str = "",
        vault_password_path: Optional[str] = None,
        vault_vars_path: Optional[str] = None,
    ) -> str:
        """Constructs the remote shell command for one run.

        Why: the pre-command runs in the same shell as ansible-playbook so the
        environment it prepares (e.g. an activated virtualenv) is inherited.
        A marker line printed between the two tells a failing pre-command
        apart from a failing playbook.

        Args:
            playbook_path: Remote path of the uploaded playbook.
            variables: Bound variables, passed as one JSON `--extra-vars`.
            pre_command: Optional shell prefix from the server record.
            vault_password_path: Remote vault password file, if any.
            vault_vars_path: Remote decrypted vault vars file, if any.

        Returns:
            The command string to run through the remote shell.
        """
        env_prefix = " ".join(f"{k}={shlex.quote(v)}" for k, v in ANSIBLE_ENV.items())
        cmd = f"{env_prefix} ansible-playbook {shlex.quote(playbook_path)} --extra-vars {shlex.quote(json.dumps(variables))}"
        if vault_password_path:
            cmd += f" --vault-password-file {shlex.quote(vault_password_path)}"
        if vault_vars_path:
            cmd += f" --extra-vars {shlex.quote('@' + vault_vars_path)}"
        if pre_command and pre_command.strip():
            cmd = f"{pre_command.strip()} && printf '%s\\n' {PRE_COMMAND_OK_MARKER} && {cmd}"
        return cmd

    @staticmethod
    async def _next_line(process: SSHProcess, control: RunControl) -> Optional[str]:
        """Reads one output line, or returns None as soon as the run is cancelled."""
        if control.cancelled:
            return None
        read = asyncio.ensure_future(process.readline())
        cancel = asyncio.ensure_future(control.wait())
        try:
            await asyncio.wait({read, cancel}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel.cancel()
            if not read.done():
                read.cancel()
        if read.done() and not read.cancelled() and not control.cancelled:
            return read.result()
        return None

    def _fail(self, run_id: str, message: str, exit_code: Optional[int] = None) -> Run:
        logger.info(f"Run {run_id} failed: {message}")
        return self.history.finish(run_id, RunStatus.FAILED.value, exit_code=exit_code, message=message)

    def fail_cancelled(self, run_id: str, reason: str) -> Run:
        return self._fail(run_id, f"{CANCELLED_MARKER} {reason}")

    async def execute(
        self,
        run_id: str,
        server: Server,
        playbook: Playbook,
        variables: dict[str, Any],
        vault: Optional[VaultHandle] = None,
        control: Optional[RunControl] = None,
    ) -> Run:
        """Runs a pending run to a terminal status.

        Connection, pre-command, transport and playbook failures are recorded
        on the run rather than raised. A forced `asyncio.CancelledError` still
        marks the run failed before propagating.

        Returns:
            The run in its terminal state.
        """
        vault = vault or VaultHandle()
        control = control or RunControl()
        if control.cancelled:
            return self.fail_cancelled(run_id, control.reason)

        self.history.mark_running(run_id)
        loop = asyncio.get_running_loop()
        task = asyncio.current_task()
        timers: list[asyncio.TimerHandle] = []
        if self.run_timeout:
            def on_timeout() -> None:
                control.cancel(f"timed out after {self.run_timeout:g}s")
                # Steps that do not watch the flag (uploads, exit status) are cut off after the grace period
                timers.append(loop.call_later(self.cancel_grace, task.cancel))
            timers.append(loop.call_later(self.run_timeout, on_timeout))

        session: Optional[SSHSession] = None
        process: Optional[SSHProcess] = None
        uploaded: list[str] = []
        try:
            try:
                playbook_content = Path(playbook.file_path).read_text(encoding="utf-8")
            except OSError as e:
                return self._fail(run_id, f"read playbook {playbook.file_path}: {e}")

            try:
                session = await self.transport.connect(server)
            except SSHConnectionError as e:
                return self._fail(run_id, f"SSH connection failed: {e.message}")

            if control.cancelled:
                return self.fail_cancelled(run_id, control.reason)

            paths = self.remote_paths(run_id)
            uploaded.append(paths["playbook"])
            await session.upload(playbook_content, paths["playbook"])
            vault_pass_path = vault_vars_path = None
            if vault.password:
                vault_pass_path = paths["vault_pass"]
                uploaded.append(vault_pass_path)
                await session.upload(vault.password, vault_pass_path)
            if vault.vars_path:
                vault_vars_path = paths["vault_vars"]
                uploaded.append(vault_vars_path)
                await session.upload(vault.vars_path.read_text(encoding="utf-8"), vault_vars_path)

            cmd = self.build_command(paths["playbook"], variables, server.pre_command, vault_pass_path, vault_vars_path)
            logger.info(f"Executing playbook {playbook.name} on {server.name} (run {run_id})")
            process = await session.start(cmd)

            pre_command_ok = not (server.pre_command and server.pre_command.strip())
            while True:
                line = await self._next_line(process, control)
                if line is None or line == "":
                    break
                if line.rstrip("\r\n") == PRE_COMMAND_OK_MARKER:
                    pre_command_ok = True
                    continue
                self.history.append_output(run_id, line if line.endswith("\n") else line + "\n")

            if control.cancelled:
                process.terminate()
                return self.fail_cancelled(run_id, control.reason)

            exit_code = await process.wait()
            if exit_code != 0:
                if not pre_command_ok:
                    raise ExecutionError(f"Pre-command failed with exit code {exit_code}", exit_code)
                raise ExecutionError(f"Process finished with exit code {exit_code}", exit_code)
            return self.history.finish(
                run_id, RunStatus.SUCCESS.value, exit_code=0, message="Process finished with exit code 0"
            )
        except ExecutionError as e:
            return self._fail(run_id, e.message, exit_code=e.exit_code)
        except (SSHConnectionError, asyncssh.Error, OSError) as e:
            message = e.message if isinstance(e, SSHConnectionError) else (str(e) or type(e).__name__)
            logger.exception(f"Transport error during run {run_id}")
            return self._fail(run_id, f"Runner error: {message}")
        except asyncio.CancelledError:
            # Forced teardown after the grace period, or engine shutdown
            if process is not None:
                process.terminate()
            if not self.history.get_run(run_id).is_terminal:
                self.fail_cancelled(run_id, control.reason or "run task was cancelled")
            raise
        finally:
            for timer in timers:
                timer.cancel()
            if session is not None:
                await self._cleanup(run_id, session, uploaded)

    async def _cleanup(self, run_id: str, session: SSHSession, remote_paths: list[str]) -> None:
        """Removes uploaded files and closes the session, within `cleanup_timeout`."""
        async def close() -> None:
            if remote_paths:
                await session.remove(*remote_paths)
            await session.close()

        try:
            await asyncio.wait_for(close(), self.cleanup_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Remote cleanup for run {run_id} timed out after {self.cleanup_timeout:g}s")
        except (asyncssh.Error, OSError) as e:
            logger.warning(f"Remote cleanup for run {run_id} failed: {e}")

    async def purge_remote(self, run_id: str, server: Server) -> bool:
        """Deletes whatever an interrupted run may have left in the remote temp dir.

        Why: the vault password and vault variables are uploaded next to the
        playbook. A process that dies mid-run never reaches its own cleanup,
        so recovery has to reconnect and remove them.

        Returns:
            False when the server could not be reached.
        """
        try:
            session = await asyncio.wait_for(self.transport.connect(server), self.cleanup_timeout)
        except (SSHConnectionError, asyncio.TimeoutError) as e:
            logger.warning(f"Could not reach {server.name} to clean up run {run_id}: {e}")
            return False
        await self._cleanup(run_id, session, list(self.remote_paths(run_id).values()))
        return True
