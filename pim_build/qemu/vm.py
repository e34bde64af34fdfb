"""QEMU process lifecycle.

This module handles:
- Starting QEMU in the foreground, in the background, or attached to the
  terminal console
- Liveness checks that tell "gone" apart from "not ours to signal"
- Bounded waits for process exit and for the forwarded SSH port
- Graceful (TERM, poll, KILL) and unconditional shutdown
"""

from __future__ import annotations

import logging
import os
import signal
import socket
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from pim_build.errors import VMError

logger = logging.getLogger(__name__)

SSH_BANNER_PREFIX = b"SSH-"

# Seconds to let QEMU initialise before checking it did not die at once
DEFAULT_STARTUP_DELAY = 2.0

ExitProgress = Callable[[int], None]
ShellProgress = Callable[[int, int], None]


class QemuVM:
    """A single QEMU process.

    Args:
        command: Full qemu-system argument list.
        ssh_port: Host port forwarded to the guest's SSH service.
        host: Address the forwarded port listens on.
        startup_delay: Seconds to wait after spawning before the
            liveness check.
    """

    def __init__(
        self,
        command: list[str],
        ssh_port: int | None = None,
        host: str = "127.0.0.1",
        startup_delay: float = DEFAULT_STARTUP_DELAY,
    ) -> None:
        self.command = list(command)
        self.ssh_port = ssh_port
        self.host = host
        self.startup_delay = startup_delay
        self._process: subprocess.Popen[bytes] | None = None
        self._pid: int | None = None
        self._log_file: IO[bytes] | None = None

    @property
    def pid(self) -> int | None:
        return self._pid

    # Starting

    def start_foreground(self, on_output: Callable[[str], None] | None = None) -> int:
        """Run QEMU to completion, streaming its output.

        Args:
            on_output: Called with each output line; lines are logged at
                INFO when omitted.

        Returns:
            QEMU's exit code.
        """
        process = self._spawn(
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            new_session=False,
        )
        if process.stdout is None:
            raise VMError("QEMU output pipe is not available")
        for raw in process.stdout:
            line = raw.decode("utf-8", errors="replace").rstrip("\n")
            if on_output is not None:
                on_output(line)
            else:
                logger.info("[qemu] %s", line)
        exit_code = process.wait()
        self._pid = None
        return exit_code

    def start_background(self, detach: bool = True, log_path: Path | None = None) -> QemuVM:
        """Start QEMU without a terminal and return immediately.

        Args:
            detach: Start QEMU in its own session so terminal signals do
                not reach it.
            log_path: File receiving QEMU's stdout/stderr (discarded when
                omitted).

        Returns:
            self, for chaining.

        Raises:
            VMError: If QEMU cannot be spawned or exits during startup.
        """
        if log_path is not None:
            self._log_file = open(log_path, "ab")
            out: int | IO[bytes] = self._log_file
        else:
            out = subprocess.DEVNULL
        self._spawn(stdin=subprocess.DEVNULL, stdout=out, stderr=out, new_session=detach)
        self._check_started(log_path)
        return self

    def start_console(self, detach: bool = True) -> QemuVM:
        """Start QEMU with its serial console on this terminal."""
        self._spawn(stdin=None, stdout=None, stderr=None, new_session=detach)
        self._check_started(None)
        return self

    def _spawn(
        self,
        stdin: int | None,
        stdout: int | IO[bytes] | None,
        stderr: int | IO[bytes] | None,
        new_session: bool,
    ) -> subprocess.Popen[bytes]:
        if self._process is not None and self.is_running():
            raise VMError(f"VM already running (PID: {self._pid})")
        logger.info("Starting QEMU: %s", " ".join(self.command))
        try:
            process = subprocess.Popen(
                self.command,
                stdin=stdin,
                stdout=stdout,
                stderr=stderr,
                start_new_session=new_session,
            )
        except OSError as e:
            self._close_log()
            raise VMError(f"Failed to start QEMU: {e}") from e
        self._process = process
        self._pid = process.pid
        return process

    def _check_started(self, log_path: Path | None) -> None:
        if self.startup_delay > 0:
            time.sleep(self.startup_delay)
        if self._process is None:
            raise VMError("VM was not started")
        exit_code = self._process.poll()
        if exit_code is None:
            return
        self._pid = None
        self._close_log()
        detail = ""
        if log_path is not None and log_path.is_file():
            detail = ": " + log_path.read_text(errors="replace").strip()[-2000:]
        raise VMError(f"VM failed to start (exit code {exit_code}){detail}")

    # State

    def is_running(self) -> bool:
        """Whether the QEMU process still exists.

        A process that exists but cannot be signalled by this user is
        treated as running.
        """
        if self._pid is None:
            return False
        if self._process is not None and self._process.poll() is not None:
            # reaped child; its PID may be reused
            self._pid = None
            self._close_log()
            return False
        try:
            os.kill(self._pid, 0)
        except ProcessLookupError:
            self._pid = None
            self._close_log()
            return False
        except PermissionError:
            return True
        return True

    # Waiting

    def wait_for_exit(
        self,
        timeout: float,
        poll_interval: float = 10,
        progress: ExitProgress | None = None,
    ) -> int | None:
        """Block until QEMU exits or the timeout elapses.

        Args:
            timeout: Maximum seconds to wait.
            poll_interval: Seconds between checks.
            progress: Called with the remaining seconds after each check.

        Returns:
            Exit code, or None if the process is still running at timeout.
        """
        deadline = time.monotonic() + timeout
        while True:
            if self._process is not None:
                exit_code = self._process.poll()
                if exit_code is not None:
                    self._pid = None
                    self._close_log()
                    return exit_code
            elif not self.is_running():
                self._pid = None
                return 0

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            if progress is not None:
                progress(int(remaining))
            time.sleep(min(poll_interval, remaining))

    def probe_remote_shell(self, connect_timeout: float = 10) -> bool:
        """Check once for an SSH banner on the forwarded port.

        A TCP connect alone is not enough: QEMU's user-mode networking
        accepts connections on the forwarded port before the guest's sshd
        is listening.
        """
        if self.ssh_port is None:
            return False
        try:
            with socket.create_connection(
                (self.host, self.ssh_port), timeout=connect_timeout
            ) as sock:
                sock.settimeout(connect_timeout)
                banner = sock.recv(256)
        except OSError:
            return False
        return banner.startswith(SSH_BANNER_PREFIX)

    def wait_for_remote_shell(
        self,
        timeout: float = 1800,
        poll_interval: float = 10,
        progress: ShellProgress | None = None,
    ) -> bool:
        """Poll the forwarded SSH port until the guest's sshd greets us.

        Args:
            timeout: Maximum seconds to wait.
            poll_interval: Seconds between attempts.
            progress: Called with (attempt, remaining seconds) after each
                failed attempt.

        Returns:
            True once a banner was seen, False on timeout.
        """
        if self.ssh_port is None:
            return False

        deadline = time.monotonic() + timeout
        attempt = 0
        while time.monotonic() < deadline:
            attempt += 1
            remaining = deadline - time.monotonic()
            if self.probe_remote_shell(connect_timeout=max(0.1, min(10.0, remaining))):
                return True
            remaining = deadline - time.monotonic()
            if progress is not None:
                progress(attempt, max(0, int(remaining)))
            if remaining > 0:
                time.sleep(min(poll_interval, remaining))
        return False

    # Stopping

    def shutdown(self, timeout: float = 60) -> None:
        """Terminate QEMU, escalating to SIGKILL after the timeout."""
        pid = self._pid
        if pid is None or not self.is_running():
            self._close_log()
            return

        logger.info("Stopping VM (PID: %d)", pid)
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            self._pid = None
            self._close_log()
            return

        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline and self.is_running():
            time.sleep(1)

        if self.is_running():
            logger.warning("VM did not stop within %gs, killing", timeout)
            self.kill()
        else:
            self._pid = None
            self._close_log()

    def kill(self) -> None:
        """Force-stop QEMU. Never raises if the process is already gone."""
        pid = self._pid
        if pid is None:
            return
        try:
            os.kill(pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
        if self._process is not None:
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("QEMU (PID: %d) did not exit after SIGKILL", pid)
                return
        self._pid = None
        self._close_log()

    def _close_log(self) -> None:
        if self._log_file is not None:
            self._log_file.close()
            self._log_file = None


__all__ = ["SSH_BANNER_PREFIX", "QemuVM"]
