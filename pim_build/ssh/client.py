"""SSH connection wrapper with readiness polling.

This module handles:
- Connecting to a build VM with paramiko (host keys are not verified;
  build VMs are throwaway and regenerate keys on every install)
- Polling until the guest accepts SSH logins
- Command execution with captured or streamed output
- File transfer over SFTP, including elevated destinations

The client never logs progress on behalf of the caller: waiting reports
through a callback and the caller decides what to show.
"""

from __future__ import annotations

import codecs
import errno
import logging
import os
import shlex
import socket
import time
from collections.abc import Callable
from pathlib import Path
from types import TracebackType

import paramiko
from paramiko.ssh_exception import NoValidConnectionsError

from pim_build.errors import BuildTimeoutError, ProvisioningError
from pim_build.types import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30
DEFAULT_COMMAND_TIMEOUT = 3600
STAGING_DIR = "/tmp"

OutputCallback = Callable[[str, str], None]
ReadyProgress = Callable[[int, int, str], None]

_TRANSIENT_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.ETIMEDOUT,
}


def is_transient_error(exc: BaseException) -> bool:
    """Whether a connection failure is expected while a guest boots.

    Refused/reset/unreachable sockets, timeouts, banner and handshake
    failures and authentication rejections (sshd is up before cloud users
    exist) are transient. Host key mismatches, locked keys and anything
    else are not.
    """
    if isinstance(exc, (paramiko.BadHostKeyException, paramiko.PasswordRequiredException)):
        return False
    if isinstance(exc, (NoValidConnectionsError, socket.timeout, TimeoutError, EOFError)):
        return True
    if isinstance(exc, (paramiko.AuthenticationException, paramiko.SSHException)):
        return True
    if isinstance(exc, (ConnectionRefusedError, ConnectionResetError)):
        return True
    if isinstance(exc, OSError) and exc.errno in _TRANSIENT_ERRNOS:
        return True
    return False


class SSHConnection:
    """SSH access to one host.

    The underlying paramiko client is opened lazily and reused until
    ``close()``.

    Args:
        host: Hostname or address.
        port: SSH port.
        user: Login user.
        password: Password authentication (optional).
        key_file: Private key path (optional).
        timeout: Connect timeout in seconds.
        command_timeout: Default bound for a single remote command.
    """

    def __init__(
        self,
        host: str,
        user: str,
        port: int = 22,
        password: str | None = None,
        key_file: str | Path | None = None,
        timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
    ) -> None:
        self.host = host
        self.port = port
        self.user = user
        self.password = password
        self.key_file = str(Path(key_file).expanduser()) if key_file else None
        self.timeout = timeout
        self.command_timeout = command_timeout
        self._client: paramiko.SSHClient | None = None

    def __enter__(self) -> SSHConnection:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()

    # Connection management

    def _open_client(self, timeout: float) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.user,
                password=self.password,
                key_filename=self.key_file,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                look_for_keys=self.key_file is None and self.password is None,
                allow_agent=self.password is None,
            )
        except BaseException:
            client.close()
            raise
        return client

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            transport = self._client.get_transport()
            if transport is not None and transport.is_active():
                return self._client
            self.close()
        logger.debug("Connecting to %s@%s:%d", self.user, self.host, self.port)
        self._client = self._open_client(self.timeout)
        return self._client

    def close(self) -> None:
        """Close the underlying connection (safe to call repeatedly)."""
        if self._client is not None:
            self._client.close()
            self._client = None

    def test_connection(self, timeout: float = 10) -> None:
        """Open a fresh connection and run ``true``; raises on failure."""
        client = self._open_client(timeout)
        try:
            _, stdout, _ = client.exec_command("true", timeout=timeout)
            stdout.channel.recv_exit_status()
        finally:
            client.close()

    def wait_for_ready(
        self,
        timeout: float = 1800,
        poll_interval: float = 10,
        progress: ReadyProgress | None = None,
    ) -> bool:
        """Retry logins until one succeeds or the timeout elapses.

        Only transient failures are retried; anything else propagates.

        Args:
            timeout: Maximum seconds to wait.
            poll_interval: Seconds between attempts.
            progress: Called with (attempt, remaining seconds, error text)
                after each failed attempt.

        Returns:
            True when a login succeeded, False on timeout.
        """
        deadline = time.monotonic() + timeout
        attempt = 0
        while time.monotonic() < deadline:
            attempt += 1
            try:
                self.test_connection(timeout=min(10.0, max(1.0, deadline - time.monotonic())))
                return True
            except Exception as e:
                if not is_transient_error(e):
                    raise
                remaining = deadline - time.monotonic()
                if progress is not None:
                    progress(attempt, max(0, int(remaining)), str(e))
                if remaining > 0:
                    time.sleep(min(poll_interval, remaining))
        return False

    # Commands

    @staticmethod
    def _full_command(command: str, elevated: bool) -> str:
        return f"sudo {command}" if elevated else command

    def _run(
        self,
        command: str,
        elevated: bool,
        on_output: OutputCallback,
        timeout: float | None,
    ) -> int:
        full = self._full_command(command, elevated)
        limit = self.command_timeout if timeout is None else timeout
        client = self._connect()
        transport = client.get_transport()
        if transport is None:
            raise paramiko.SSHException("SSH transport is not available")

        logger.debug("Executing: %s", full)
        channel = transport.open_session(timeout=self.timeout)
        try:
            channel.exec_command(full)
            out_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            err_decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            deadline = time.monotonic() + limit

            while True:
                idle = True
                if channel.recv_ready():
                    idle = False
                    text = out_decoder.decode(channel.recv(32768))
                    if text:
                        on_output("stdout", text)
                if channel.recv_stderr_ready():
                    idle = False
                    text = err_decoder.decode(channel.recv_stderr(32768))
                    if text:
                        on_output("stderr", text)
                if idle and channel.exit_status_ready():
                    break
                if time.monotonic() > deadline:
                    raise BuildTimeoutError(
                        f"Remote command timed out after {limit:g}s: {command}", limit
                    )
                if idle:
                    time.sleep(0.05)

            tail = out_decoder.decode(b"", final=True)
            if tail:
                on_output("stdout", tail)
            tail = err_decoder.decode(b"", final=True)
            if tail:
                on_output("stderr", tail)
            return channel.recv_exit_status()
        finally:
            channel.close()

    def execute(
        self, command: str, elevated: bool = False, timeout: float | None = None
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            command: Shell command line.
            elevated: Run through sudo.
            timeout: Override for the command timeout.

        Returns:
            CommandResult with stdout, stderr and exit code.
        """
        chunks: dict[str, list[str]] = {"stdout": [], "stderr": []}
        exit_code = self._run(
            command, elevated, lambda stream, data: chunks[stream].append(data), timeout
        )
        return CommandResult(
            stdout="".join(chunks["stdout"]),
            stderr="".join(chunks["stderr"]),
            exit_code=exit_code,
        )

    def execute_stream(
        self,
        command: str,
        on_output: OutputCallback,
        elevated: bool = False,
        timeout: float | None = None,
    ) -> int:
        """Run a command, pushing output chunks as they arrive.

        Args:
            command: Shell command line.
            on_output: Called with ("stdout" | "stderr", text).
            elevated: Run through sudo.
            timeout: Override for the command timeout.

        Returns:
            Exit code.
        """
        return self._run(command, elevated, on_output, timeout)

    # File transfer

    def _staging_path(self, name: str) -> str:
        return f"{STAGING_DIR}/{name}.{os.getpid()}"

    def _relocate(self, staged: str, remote_path: str) -> None:
        result = self.execute(
            f"mv {shlex.quote(staged)} {shlex.quote(remote_path)}", elevated=True
        )
        if not result.ok:
            raise ProvisioningError(
                f"Failed to move {staged} to {remote_path}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )

    def upload(self, local_path: str | Path, remote_path: str, elevated: bool = False) -> None:
        """Copy a local file to the remote host.

        Elevated uploads are staged in /tmp and moved into place with sudo,
        since SFTP runs as the login user.
        """
        local = Path(local_path)
        target = self._staging_path(local.name) if elevated else remote_path
        sftp = self._connect().open_sftp()
        try:
            sftp.put(str(local), target)
        finally:
            sftp.close()
        if elevated:
            self._relocate(target, remote_path)

    def upload_content(
        self,
        content: str | bytes,
        remote_path: str,
        mode: str | None = "0644",
        elevated: bool = False,
    ) -> None:
        """Write content to a remote file, then apply a mode."""
        data = content.encode("utf-8") if isinstance(content, str) else content
        target = self._staging_path(Path(remote_path).name) if elevated else remote_path
        sftp = self._connect().open_sftp()
        try:
            with sftp.open(target, "wb") as f:
                f.write(data)
        finally:
            sftp.close()
        if elevated:
            self._relocate(target, remote_path)
        if mode:
            result = self.execute(
                f"chmod {mode} {shlex.quote(remote_path)}", elevated=elevated
            )
            if not result.ok:
                raise ProvisioningError(
                    f"Failed to chmod {remote_path}",
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )

    def download(self, remote_path: str, local_path: str | Path) -> None:
        """Copy a remote file to the local host."""
        sftp = self._connect().open_sftp()
        try:
            sftp.get(remote_path, str(local_path))
        finally:
            sftp.close()


__all__ = ["SSHConnection", "is_transient_error"]
