from typing import Optional
import asyncio
import logging
import shlex

import asyncssh

from playdeck.core.config import get_settings
from playdeck.core.exceptions import DecryptionError, SSHConnectionError
from playdeck.core.security import decrypt_secret
from playdeck.models import Server

settings = get_settings()
logger = logging.getLogger(__name__)


def normalize_private_key(raw_key: str) -> str:
    """Repairs keys pasted through forms (escaped newlines, CRLF, stray whitespace)."""
    key = raw_key.replace("\\n", "\n").replace("\\r", "").replace("\r\n", "\n").strip()
    return key + "\n"


class SSHProcess:
    """A remote command whose combined stdout/stderr is read line by line."""
    def __init__(self, process: asyncssh.SSHClientProcess):
        self.process = process

    async def readline(self) -> str:
        """Next output line including its newline; "" once the stream is exhausted."""
        return await self.process.stdout.readline()

    async def wait(self) -> int:
        completed = await self.process.wait(check=False)
        # exit_status is None when the remote side died on a signal
        return completed.exit_status if completed.exit_status is not None else -1

    def terminate(self) -> None:
        try:
            self.process.terminate()
        except (OSError, asyncssh.Error):
            pass
        self.process.close()


class SSHSession:
    """One authenticated SSH connection to a server."""
    def __init__(self, conn: asyncssh.SSHClientConnection):
        self.conn = conn

    async def run(self, command: str, input: Optional[str] = None) -> tuple[int, str]:
        """Runs `command` to completion and returns (exit_status, combined output)."""
        result = await self.conn.run(command, input=input, stderr=asyncssh.STDOUT, check=False, errors="replace")
        exit_status = result.exit_status if result.exit_status is not None else -1
        return exit_status, result.stdout or ""

    async def start(self, command: str) -> SSHProcess:
        process = await self.conn.create_process(command, stderr=asyncssh.STDOUT, errors="replace")
        return SSHProcess(process)

    async def upload(self, content: str, remote_path: str) -> None:
        """Writes `content` to `remote_path` through `cat` on the remote side."""
        status, output = await self.run(f"umask 077 && cat > {shlex.quote(remote_path)}", input=content)
        if status != 0:
            raise SSHConnectionError(f"upload to {remote_path} failed: {output.strip()}")

    async def remove(self, *remote_paths: str) -> None:
        if not remote_paths:
            return
        quoted = " ".join(shlex.quote(p) for p in remote_paths)
        try:
            await self.run(f"rm -f {quoted}")
        except (OSError, asyncssh.Error) as e:
            logger.warning(f"Could not remove remote files {quoted}: {e}")

    async def close(self) -> None:
        self.conn.close()
        try:
            await self.conn.wait_closed()
        except (OSError, asyncssh.Error):
            pass


class SSHTransport:
    """Opens SSH sessions to inventory servers with their stored credentials."""
    def __init__(self, connect_timeout: Optional[float] = None):
        self.connect_timeout = connect_timeout or settings.SSH_CONNECT_TIMEOUT

    async def connect(self, server: Server) -> SSHSession:
        """Connects to `server`.

        Raises:
            SSHConnectionError: Unreachable host, rejected credentials, or an
                unusable private key.
        """
        client_keys = None
        if server.ssh_private_key:
            try:
                pem = normalize_private_key(decrypt_secret(server.ssh_private_key))
                client_keys = [asyncssh.import_private_key(pem)]
            except (DecryptionError, asyncssh.KeyImportError) as e:
                raise SSHConnectionError(f"parse private key for {server.name}: {e}") from e

        try:
            conn = await asyncssh.connect(
                server.host,
                port=server.port,
                username=server.username,
                client_keys=client_keys,
                known_hosts=None,
                connect_timeout=self.connect_timeout,
            )
        except (OSError, asyncssh.Error, asyncio.TimeoutError) as e:
            raise SSHConnectionError(f"dial {server.host}:{server.port}: {e}") from e
        logger.debug(f"SSH session opened to {server.username}@{server.host}:{server.port}")
        return SSHSession(conn)
