"""Tests for QEMU process lifecycle."""

import socket
import subprocess
import sys
import threading
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from pim_build.errors import VMError
from pim_build.qemu.vm import QemuVM


def _sleeper(seconds: float = 30) -> list[str]:
    return [sys.executable, "-c", f"import time; time.sleep({seconds})"]


def _exiter(code: int) -> list[str]:
    return [sys.executable, "-c", f"import sys; print('bye'); sys.exit({code})"]


class TestStart:
    """Tests for starting QEMU."""

    def test_foreground_streams_output(self) -> None:
        lines = []
        vm = QemuVM([sys.executable, "-c", "print('one'); print('two')"])
        assert vm.start_foreground(on_output=lines.append) == 0
        assert lines == ["one", "two"]
        assert vm.pid is None

    def test_background_failure_includes_log(self, tmp_path: Path) -> None:
        """A process that dies during startup is reported with its output."""
        log = tmp_path / "qemu.log"
        vm = QemuVM(_exiter(3), startup_delay=1.0)
        with pytest.raises(VMError, match="exit code 3") as exc_info:
            vm.start_background(log_path=log)
        assert "bye" in exc_info.value.message
        assert not vm.is_running()

    def test_spawn_error(self) -> None:
        vm = QemuVM(["/nonexistent/qemu-system-aarch64"], startup_delay=0)
        with pytest.raises(VMError, match="Failed to start QEMU"):
            vm.start_background()

    def test_startup_check_without_process(self) -> None:
        vm = QemuVM(["qemu"], startup_delay=0)
        with pytest.raises(VMError, match="not started"):
            vm._check_started(None)

    def test_double_start_rejected(self) -> None:
        vm = QemuVM(_sleeper(), startup_delay=0)
        vm.start_background()
        try:
            with pytest.raises(VMError, match="already running"):
                vm.start_background()
        finally:
            vm.kill()


class TestLifecycle:
    """Tests for waiting and stopping."""

    def test_wait_for_exit_returns_code(self) -> None:
        vm = QemuVM(_exiter(0), startup_delay=0)
        vm.start_background()
        assert vm.wait_for_exit(timeout=10, poll_interval=0.05) == 0
        assert not vm.is_running()

    def test_wait_for_exit_timeout(self) -> None:
        """A still-running process at the deadline yields None."""
        progress = []
        vm = QemuVM(_sleeper(), startup_delay=0)
        vm.start_background()
        try:
            assert vm.wait_for_exit(timeout=0.3, poll_interval=0.1, progress=progress.append) is None
            assert vm.is_running()
            assert progress
        finally:
            vm.kill()

    def test_shutdown_terminates(self) -> None:
        vm = QemuVM(_sleeper(), startup_delay=0)
        vm.start_background()
        vm.shutdown(timeout=5)
        assert not vm.is_running()
        assert vm.pid is None

    def test_kill_is_idempotent(self) -> None:
        vm = QemuVM(_sleeper(), startup_delay=0)
        vm.start_background()
        vm.kill()
        vm.kill()
        assert not vm.is_running()

    def test_kill_never_started(self) -> None:
        QemuVM(["qemu"]).kill()

    def test_permission_error_counts_as_running(self) -> None:
        """A process we may not signal is still alive."""
        vm = QemuVM(["qemu"])
        vm._pid = 12345
        with patch("pim_build.qemu.vm.os.kill", side_effect=PermissionError):
            assert vm.is_running()

    def test_gone_process_not_running(self) -> None:
        vm = QemuVM(["qemu"])
        vm._pid = 12345
        with patch("pim_build.qemu.vm.os.kill", side_effect=ProcessLookupError):
            assert not vm.is_running()
        assert vm.pid is None

    def test_exited_child_forgets_pid(self) -> None:
        """Once the child has exited, kill() must not signal its old PID."""
        vm = QemuVM(_exiter(0), startup_delay=0)
        vm.start_background()
        vm._process.wait(timeout=10)
        assert not vm.is_running()
        assert vm.pid is None
        with patch("pim_build.qemu.vm.os.kill") as mock_kill:
            vm.kill()
        mock_kill.assert_not_called()


class TestRemoteShell:
    """Tests for SSH banner probing."""

    @pytest.fixture
    def banner_server(self):
        """Listening socket that greets each client with a banner."""
        server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        server.bind(("127.0.0.1", 0))
        server.listen()
        banner = {"value": b"SSH-2.0-OpenSSH_9.2\r\n"}

        def serve() -> None:
            while True:
                try:
                    conn, _ = server.accept()
                except OSError:
                    return
                with conn:
                    conn.sendall(banner["value"])

        thread = threading.Thread(target=serve, daemon=True)
        thread.start()
        yield server.getsockname()[1], banner
        server.close()

    def test_banner_detected(self, banner_server) -> None:
        port, _ = banner_server
        vm = QemuVM(["qemu"], ssh_port=port)
        assert vm.probe_remote_shell(connect_timeout=2)
        assert vm.wait_for_remote_shell(timeout=5, poll_interval=0.1)

    def test_non_ssh_banner_rejected(self, banner_server) -> None:
        """Accepting the connection is not enough; the banner must be SSH."""
        port, banner = banner_server
        banner["value"] = b"HTTP/1.1 400 Bad Request\r\n"
        vm = QemuVM(["qemu"], ssh_port=port)
        assert not vm.probe_remote_shell(connect_timeout=2)

    def test_closed_port_times_out(self) -> None:
        with socket.socket() as sock:
            sock.bind(("127.0.0.1", 0))
            port = sock.getsockname()[1]
        progress = MagicMock()
        vm = QemuVM(["qemu"], ssh_port=port)
        assert not vm.wait_for_remote_shell(timeout=0.3, poll_interval=0.1, progress=progress)
        assert progress.called

    def test_no_port(self) -> None:
        assert not QemuVM(["qemu"]).wait_for_remote_shell(timeout=1)


class TestPopenArguments:
    """Tests for how QEMU is spawned."""

    def test_background_detaches(self) -> None:
        process = MagicMock(pid=4242)
        process.poll.return_value = None
        with patch("pim_build.qemu.vm.subprocess.Popen", return_value=process) as popen:
            QemuVM(["qemu"], startup_delay=0).start_background()
        kwargs = popen.call_args.kwargs
        assert kwargs["start_new_session"] is True
        assert kwargs["stdin"] is subprocess.DEVNULL
