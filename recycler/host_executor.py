"""
Command execution against the IIS host.
Runs locally through asyncio subprocesses, or over SSH with asyncssh when
the IIS host is remote.
"""

import asyncio
import subprocess
import asyncssh
import structlog
from typing import List, Optional, Tuple

from .config import Settings

logger = structlog.get_logger()


class HostCommandExecutor:
    """Executes argument lists on the IIS host."""

    def __init__(
        self,
        host: str = "localhost",
        username: Optional[str] = None,
        key_path: Optional[str] = None,
        port: int = 22,
        connection_timeout: int = 10,
        command_timeout: int = 60,
    ):
        self.host = host
        self.username = username
        self.key_path = key_path
        self.port = port
        self.connection_timeout = connection_timeout
        self.command_timeout = command_timeout
        self.logger = logger.bind(component="host_executor", host=host)
        self._connection: Optional[asyncssh.SSHClientConnection] = None
        self._connect_lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "HostCommandExecutor":
        return cls(
            host=settings.iis_host,
            username=settings.iis_ssh_user,
            key_path=settings.iis_ssh_key_path,
            port=settings.iis_ssh_port,
            connection_timeout=settings.ssh_connection_timeout,
            command_timeout=settings.command_execution_timeout,
        )

    @property
    def is_local(self) -> bool:
        return self.host in ("localhost", "127.0.0.1", "")

    async def _get_connection(self) -> asyncssh.SSHClientConnection:
        """
        Get or create the SSH connection to the IIS host.
        Reuses the existing connection while it is open.
        """
        async with self._connect_lock:
            if self._connection is not None and not self._connection.is_closed():
                return self._connection

            self._connection = await asyncio.wait_for(
                asyncssh.connect(
                    host=self.host,
                    port=self.port,
                    username=self.username,
                    client_keys=[self.key_path] if self.key_path else None,
                    known_hosts=None,
                ),
                timeout=self.connection_timeout
            )
            self.logger.info("ssh_connection_established")
            return self._connection

    async def execute(
        self,
        args: List[str],
        timeout: Optional[int] = None,
        max_retries: int = 3
    ) -> Tuple[str, str, int]:
        """
        Execute a command on the IIS host with retry logic.

        Retries on connection errors only (not command failures).
        Uses exponential backoff: 2s, 4s, 8s.

        Args:
            args: Program and arguments
            timeout: Execution timeout in seconds
            max_retries: Maximum attempts on connection errors

        Returns:
            Tuple of (stdout, stderr, exit_code); exit_code -1 means the
            command never produced an exit status
        """
        timeout = timeout or self.command_timeout

        if self.is_local:
            return await self._execute_local(args, timeout)

        # appcmd runs under cmd.exe on the far side
        command = subprocess.list2cmdline(args)

        for attempt in range(max_retries):
            try:
                self.logger.info(
                    "executing_command",
                    command=command,
                    timeout=timeout,
                    attempt=attempt + 1 if attempt > 0 else None
                )
                conn = await self._get_connection()
                result = await asyncio.wait_for(
                    conn.run(command, check=False),
                    timeout=timeout
                )

                stdout = result.stdout.strip() if result.stdout else ""
                stderr = result.stderr.strip() if result.stderr else ""
                exit_code = result.exit_status if result.exit_status is not None else -1

                self.logger.info(
                    "command_executed",
                    exit_code=exit_code,
                    stdout_length=len(stdout),
                    stderr_length=len(stderr)
                )
                return stdout, stderr, exit_code

            except asyncio.TimeoutError:
                self.logger.error("command_timeout", command=command, timeout=timeout)
                return "", f"Command timed out after {timeout} seconds", -1

            except (ConnectionError, OSError, asyncssh.Error) as e:
                is_last_attempt = (attempt == max_retries - 1)
                self.logger.warning(
                    "ssh_connection_error_retry" if not is_last_attempt else "ssh_connection_error_failed",
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error=str(e)
                )
                await self._drop_connection()

                if is_last_attempt:
                    return "", f"SSH connection failed after {max_retries} attempts: {e}", -1

                await asyncio.sleep(2 ** (attempt + 1))

        return "", "Unexpected retry loop exit", -1

    async def _execute_local(self, args: List[str], timeout: int) -> Tuple[str, str, int]:
        """Execute the command with a local subprocess."""
        self.logger.info("executing_local_command", command=args[0], timeout=timeout)
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE
            )
        except OSError as e:
            self.logger.error("local_command_spawn_failed", command=args[0], error=str(e))
            return "", str(e), -1

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                proc.communicate(),
                timeout=timeout
            )
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return "", f"Command timed out after {timeout} seconds", -1

        stdout = stdout_bytes.decode('utf-8', errors='replace').strip()
        stderr = stderr_bytes.decode('utf-8', errors='replace').strip()
        return stdout, stderr, proc.returncode

    async def _drop_connection(self):
        if self._connection is not None:
            try:
                self._connection.close()
            except Exception as cleanup_error:
                self.logger.debug("connection_cleanup_failed", error=str(cleanup_error))
            self._connection = None

    async def close(self):
        """Close the SSH connection. Called on shutdown."""
        if self._connection is not None and not self._connection.is_closed():
            self._connection.close()
            self.logger.info("ssh_connection_closed")
        self._connection = None
