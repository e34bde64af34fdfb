"""Build orchestration: the two-phase install/boot pipeline.

This module handles:
- LocalBuilder: building an image with QEMU on this host
- RemoteBuilder: routed remote builds (not yet supported)
- create_builder: picking the builder for a routing decision

A local build runs in two QEMU invocations. Phase 1 boots the installer
kernel directly with a preseed URL on the kernel command line and waits
for the guest to power off (``-no-reboot``). Phase 2 boots the installed
disk, waits for SSH, runs the provisioning scripts, strips machine state
and shuts the guest down. On arm64 the same UEFI vars file is used by
both phases so the boot entry created by the installer survives.

Every resource is owned by a BuildSession and released on every exit
path, including KeyboardInterrupt.
"""

from __future__ import annotations

import logging
import shutil
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from pim_build.arch import BuilderSelection, to_architecture
from pim_build.builds.installer import InstallerKernel, extract_installer_kernel
from pim_build.builds.registry import Registry, efivars_path_for
from pim_build.builds.scripts import ProvisioningScript
from pim_build.builds.session import BuildSession, Reporter
from pim_build.config import BuildConfig
from pim_build.errors import (
    BuildError,
    InstallTimeoutError,
    ProvisioningError,
    RemoteBuildNotSupportedError,
    ShellTimeoutError,
)
from pim_build.preseed.server import PRESEED_PATH, AnswerFileServer
from pim_build.profiles.resolver import Profile
from pim_build.qemu.command import SERIAL_CONSOLES, AccelerationChoice, QemuCommandBuilder
from pim_build.qemu.deps import find_available_port
from pim_build.qemu.disk import DiskImage
from pim_build.qemu.firmware import EfiFirmware, prepare_efi_firmware
from pim_build.qemu.vm import QemuVM
from pim_build.ssh.client import SSHConnection
from pim_build.types import Architecture, BuilderKind, BuildState, SourceImage

logger = logging.getLogger(__name__)

ANSWER_SERVER_START_PORT = 8080
LOCALHOST = "127.0.0.1"

# Run as root on the guest; each must exit 0
FINALIZE_COMMANDS: tuple[str, ...] = (
    "cloud-init clean --logs 2>/dev/null || true",
    "truncate -s 0 /etc/machine-id",
    "apt-get clean 2>/dev/null || true",
    "find /var/log -type f -exec truncate -s 0 {} \\; 2>/dev/null || true",
    "rm -f /etc/ssh/ssh_host_*",
)

SHUTDOWN_COMMAND = "shutdown -h now"

OutputCallback = Callable[[str, str], None]


@dataclass
class BuildOptions:
    """Interactive options for a local build.

    Attributes:
        vnc: VNC display number (port 5900 + vnc), or None for headless.
        console: Attach the guest serial console to this terminal.
        console_log: Write the guest serial console to this file.
    """

    vnc: int | None = None
    console: bool = False
    console_log: Path | None = None


class Builder(Protocol):
    """Anything that can turn a resolved build into an image."""

    kind: BuilderKind

    def build(self, cache_key: str, scripts: Sequence[ProvisioningScript]) -> Path: ...


def image_filename(profile: str, arch: str, now: datetime | None = None) -> str:
    """Disk image file name: ``<profile>-<arch>-<YYYYmmdd-HHMMSS>.qcow2``."""
    stamp = (now or datetime.now()).strftime("%Y%m%d-%H%M%S")
    return f"{profile}-{arch}-{stamp}.qcow2"


def kernel_append(
    arch: Architecture,
    preseed_url: str,
    vnc: bool = False,
    serial_console: bool = True,
) -> str:
    """Kernel command line for an unattended installer boot."""
    parts = [
        "auto=true",
        "priority=critical",
        f"preseed/url={preseed_url}",
        "grub-installer/force-efi-extra-removable=true",
    ]
    if serial_console:
        parts.append(f"console={SERIAL_CONSOLES[arch]},115200n8")
    if vnc:
        parts.append("console=tty0")
    parts.append("---")
    return " ".join(parts)


class LocalBuilder:
    """Build an image with QEMU on this host.

    Collaborators are injectable so the pipeline can be exercised without
    QEMU, SSH or an HTTP server.

    Args:
        config: Effective build configuration.
        profile: Resolved profile.
        arch: Target architecture (must match the host).
        source: Installer ISO.
        registry: Registry receiving the built image.
        options: VNC/console options.
        reporter: Progress callback.
        on_output: Receives provisioning script output as
            ("stdout" | "stderr", text).
        vm_factory: Creates a VM from (command, ssh_port).
        ssh_factory: Creates an SSH connection for a forwarded port.
        server_factory: Creates the answer-file server.
        extract_kernel: Extracts the installer kernel/initrd.
        prepare_firmware: Prepares UEFI pflash images (arm64).
        create_disk: Creates the blank disk image.
        acceleration: Pre-selected acceleration (detected when omitted).
        settle_delay: Seconds to wait after SSH comes up.
        shutdown_grace: Seconds to wait for a cooperative power-off.
        install_poll_interval: Seconds between install progress checks.
        shell_poll_interval: Seconds between SSH probes.
        clock: Monotonic clock used for the shared SSH deadline.
    """

    kind = BuilderKind.LOCAL

    def __init__(
        self,
        config: BuildConfig,
        profile: Profile,
        arch: Architecture,
        source: SourceImage,
        registry: Registry,
        options: BuildOptions | None = None,
        reporter: Reporter | None = None,
        on_output: OutputCallback | None = None,
        vm_factory: Callable[[list[str], int | None], QemuVM] | None = None,
        ssh_factory: Callable[[int], SSHConnection] | None = None,
        server_factory: Callable[..., AnswerFileServer] = AnswerFileServer,
        extract_kernel: Callable[[Path, Path, Architecture], InstallerKernel] = extract_installer_kernel,
        prepare_firmware: Callable[[Path], EfiFirmware] = prepare_efi_firmware,
        create_disk: Callable[[Path, str], Any] = DiskImage.create,
        acceleration: AccelerationChoice | None = None,
        settle_delay: float = 5.0,
        shutdown_grace: float = 30.0,
        install_poll_interval: float = 30.0,
        shell_poll_interval: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.profile = profile
        self.arch = arch
        self.source = source
        self.registry = registry
        self.options = options or BuildOptions()
        self.reporter = reporter
        self.on_output = on_output
        self.vm_factory = vm_factory or (lambda command, port: QemuVM(command, ssh_port=port))
        self.ssh_factory = ssh_factory or self._default_ssh
        self.server_factory = server_factory
        self.extract_kernel = extract_kernel
        self.prepare_firmware = prepare_firmware
        self.create_disk = create_disk
        self.acceleration = acceleration
        self.settle_delay = settle_delay
        self.shutdown_grace = shutdown_grace
        self.install_poll_interval = install_poll_interval
        self.shell_poll_interval = shell_poll_interval
        self.clock = clock
        self.session: BuildSession | None = None

    # Effective settings

    @property
    def disk_size(self) -> str:
        return self.profile.disk_size or self.config.disk_size

    @property
    def memory(self) -> int:
        return self.profile.memory or self.config.memory

    @property
    def cpus(self) -> int:
        return self.profile.cpus or self.config.cpus

    @property
    def timeout(self) -> int:
        """Budget for the install and for SSH readiness, each."""
        return self.profile.ssh_timeout or self.config.ssh_timeout

    @property
    def ssh_user(self) -> str:
        return self.profile.username or self.config.ssh_user

    def _default_ssh(self, port: int) -> SSHConnection:
        return SSHConnection(
            host=LOCALHOST,
            port=port,
            user=self.ssh_user,
            password=self.profile.password,
        )

    # Pipeline

    def build(self, cache_key: str, scripts: Sequence[ProvisioningScript]) -> Path:
        """Run the full pipeline and register the image.

        Args:
            cache_key: Cache key recorded with the image.
            scripts: Provisioning scripts, in execution order.

        Returns:
            Path to the registered disk image.

        Raises:
            PimBuildError: On any failure; all resources are released first.
        """
        with BuildSession(self.profile.name, self.arch.value, self.reporter) as session:
            self.session = session
            session.report(f"Starting build for {self.profile.name}-{self.arch.value}")

            image_path = self._create_disk(session)
            server = self._start_answer_server(session)
            work_dir = session.make_temp_dir()
            kernel = self._extract_kernel(session, work_dir)
            firmware = self.prepare_firmware(work_dir) if self.arch is Architecture.ARM64 else None
            ssh_port = find_available_port(self.config.ssh_port)

            # Phase 1: install
            installer = self._run_installer(
                session, image_path, kernel, firmware, ssh_port, server, work_dir
            )
            self._wait_for_install(session, installer)
            server.stop()

            # Phase 2: boot and provision
            vm = self._boot_system(session, image_path, firmware, ssh_port, work_dir)
            ssh = self._wait_for_shell(session, vm, ssh_port)
            self._provision(session, ssh, scripts)
            self._finalize(session, ssh)
            self._shutdown(session, vm, ssh)

            if firmware is not None:
                vars_path = efivars_path_for(image_path)
                shutil.copyfile(firmware.vars, vars_path)
                session.report(f"EFI vars saved: {vars_path.name}")

            self._register(session, image_path, cache_key)
            return image_path

    def _create_disk(self, session: BuildSession) -> Path:
        image_dir = self.config.image_dir
        image_dir.mkdir(parents=True, exist_ok=True)
        image_path = image_dir / image_filename(self.profile.name, self.arch.value)

        session.report(f"Creating {self.disk_size} disk image {image_path.name}")
        self.create_disk(image_path, self.disk_size)

        def remove_incomplete() -> None:
            if not session.succeeded:
                image_path.unlink(missing_ok=True)
                efivars_path_for(image_path).unlink(missing_ok=True)

        session.defer(f"remove incomplete image {image_path.name}", remove_incomplete)
        session.advance(BuildState.DISK_CREATED)
        return image_path

    def _start_answer_server(self, session: BuildSession) -> AnswerFileServer:
        port = find_available_port(ANSWER_SERVER_START_PORT)
        server = self.server_factory(
            profile=self.profile,
            port=port,
            name=self.profile.name,
            search_dirs=self.config.search_dirs,
        )
        server.start()
        session.defer("stop answer-file server", server.stop)
        session.report(f"Answer-file server running on port {port}")
        session.advance(BuildState.AUX_SERVER_RUNNING)
        return server

    def _extract_kernel(self, session: BuildSession, work_dir: Path) -> InstallerKernel:
        session.report("Extracting kernel and initrd from ISO")
        kernel = self.extract_kernel(self.source.path, work_dir / "kernel", self.arch)
        session.advance(BuildState.INSTALLER_KERNEL_EXTRACTED)
        return kernel

    def _serial(self) -> str | None:
        if self.options.console_log is not None:
            return f"file:{self.options.console_log}"
        if self.options.console:
            return "stdio"
        if self.options.vnc is not None:
            return "null"
        return None

    def _command(self, firmware: EfiFirmware | None, image_path: Path, ssh_port: int) -> QemuCommandBuilder:
        builder = QemuCommandBuilder(
            arch=self.arch,
            memory=self.memory,
            cpus=self.cpus,
            display=self.options.vnc is not None,
            serial=self._serial(),
            acceleration=self.acceleration,
        )
        if self.acceleration is None:
            self.acceleration = builder.acceleration
        builder.add_drive(image_path, fmt="qcow2")
        builder.add_user_net(host_port=ssh_port, guest_port=22)
        if firmware is not None:
            builder.set_firmware(firmware)
        if self.options.vnc is not None:
            builder.enable_vnc(self.options.vnc)
        return builder

    def _start_vm(self, session: BuildSession, command: list[str], ssh_port: int, log_path: Path) -> QemuVM:
        vm = self.vm_factory(command, ssh_port)
        session.defer("kill VM", vm.kill)
        if self.options.console and self.options.console_log is None:
            vm.start_console()
        else:
            vm.start_background(log_path=log_path)
        return vm

    def _run_installer(
        self,
        session: BuildSession,
        image_path: Path,
        kernel: InstallerKernel,
        firmware: EfiFirmware | None,
        ssh_port: int,
        server: AnswerFileServer,
        work_dir: Path,
    ) -> QemuVM:
        preseed_url = server.url_for(PRESEED_PATH)
        vnc = self.options.vnc is not None
        append = kernel_append(
            self.arch,
            preseed_url,
            vnc=vnc,
            serial_console=not vnc or self.options.console or self.options.console_log is not None,
        )

        builder = self._command(firmware, image_path, ssh_port)
        builder.set_cdrom(self.source.path)
        builder.set_direct_kernel(kernel.kernel, kernel.initrd, append)
        # exit on guest reboot instead of restarting the installer
        builder.extra_args("-no-reboot")

        vm = self._start_vm(session, builder.build(), ssh_port, work_dir / "qemu-install.log")
        session.report(f"Installer started (PID: {vm.pid})")
        session.report(f"Preseed URL: {preseed_url}")
        if self.options.vnc is not None:
            session.report(f"VNC available on localhost:{5900 + self.options.vnc}")
        if self.options.console_log is not None:
            session.report(f"Console log: {self.options.console_log}")
        session.advance(BuildState.INSTALLER_BOOTED)
        return vm

    def _wait_for_install(self, session: BuildSession, vm: QemuVM) -> None:
        session.report("Waiting for installation to complete (VM will power off)...")
        exit_code = vm.wait_for_exit(
            timeout=self.timeout,
            poll_interval=self.install_poll_interval,
            progress=lambda remaining: session.report(
                f"Installing... {remaining}s remaining", "progress"
            ),
        )
        if exit_code is None:
            raise InstallTimeoutError(self.timeout)
        if exit_code != 0:
            raise BuildError(f"Installer VM exited with code {exit_code}")
        session.report("Installation complete, VM powered off", "success")
        session.advance(BuildState.INSTALL_COMPLETE)

    def _boot_system(
        self,
        session: BuildSession,
        image_path: Path,
        firmware: EfiFirmware | None,
        ssh_port: int,
        work_dir: Path,
    ) -> QemuVM:
        session.report("Booting installed system from disk")
        builder = self._command(firmware, image_path, ssh_port)
        vm = self._start_vm(session, builder.build(), ssh_port, work_dir / "qemu-boot.log")
        session.report(f"VM started (PID: {vm.pid}), SSH on localhost:{ssh_port}")
        session.advance(BuildState.SYSTEM_BOOTED)
        return vm

    def _wait_for_shell(self, session: BuildSession, vm: QemuVM, ssh_port: int) -> SSHConnection:
        session.report(f"Waiting for SSH to become available (timeout: {self.timeout}s)")

        def progress(attempt: int, remaining: int, *_: Any) -> None:
            session.report(f"Attempt {attempt}, {remaining}s remaining...", "progress")

        # banner and login share one budget
        deadline = self.clock() + self.timeout
        if not vm.wait_for_remote_shell(
            timeout=self.timeout, poll_interval=self.shell_poll_interval, progress=progress
        ):
            raise ShellTimeoutError(self.timeout)

        remaining = deadline - self.clock()
        if remaining <= 0:
            raise ShellTimeoutError(self.timeout)

        ssh = self.ssh_factory(ssh_port)
        session.defer("close SSH connection", ssh.close)
        if not ssh.wait_for_ready(
            timeout=remaining, poll_interval=self.shell_poll_interval, progress=progress
        ):
            raise ShellTimeoutError(self.timeout)

        session.report("SSH is available", "success")
        if self.settle_delay > 0:
            time.sleep(self.settle_delay)
        session.advance(BuildState.SHELL_READY)
        return ssh

    def _provision(
        self,
        session: BuildSession,
        ssh: SSHConnection,
        scripts: Sequence[ProvisioningScript],
    ) -> None:
        total = len(scripts)
        if total:
            session.report(f"Running {total} provisioning script(s)")

        for index, script in enumerate(scripts):
            session.report(f"[{index + 1}/{total}] Running {script.name}")
            remote_path = f"/tmp/pim-script-{index}.sh"
            ssh.upload_content(script.content, remote_path, mode="0755")

            captured: dict[str, list[str]] = {"stdout": [], "stderr": []}

            def collect(stream: str, data: str) -> None:
                captured[stream].append(data)
                if self.on_output is not None:
                    self.on_output(stream, data)

            exit_code = ssh.execute_stream(remote_path, on_output=collect, elevated=True)
            if exit_code != 0:
                session.report(f"Script {script.name} failed (exit code: {exit_code})", "error")
                raise ProvisioningError(
                    f"Script {script.name} failed with exit code {exit_code}",
                    exit_code=exit_code,
                    stdout="".join(captured["stdout"]),
                    stderr="".join(captured["stderr"]),
                )
            session.report(f"{script.name} completed", "success")

        session.advance(BuildState.PROVISIONED)

    def _finalize(self, session: BuildSession, ssh: SSHConnection) -> None:
        session.report("Finalizing image")
        for command in FINALIZE_COMMANDS:
            result = ssh.execute(command, elevated=True)
            if not result.ok:
                raise ProvisioningError(
                    f"Finalization command failed: {command}",
                    exit_code=result.exit_code,
                    stdout=result.stdout,
                    stderr=result.stderr,
                )
        session.report("Image finalized", "success")
        session.advance(BuildState.FINALIZED)

    def _shutdown(self, session: BuildSession, vm: QemuVM, ssh: SSHConnection) -> None:
        session.report("Shutting down VM")
        if vm.is_running():
            try:
                ssh.execute(SHUTDOWN_COMMAND, elevated=True, timeout=30)
            except Exception as e:
                # the connection usually drops as the guest goes down
                logger.debug("Shutdown command ended with: %s", e)
            ssh.close()
            if vm.wait_for_exit(timeout=self.shutdown_grace, poll_interval=1) is None:
                vm.shutdown(timeout=30)
        session.report("VM stopped", "success")
        session.advance(BuildState.SHUT_DOWN)

    def _register(self, session: BuildSession, image_path: Path, cache_key: str) -> None:
        if not image_path.is_file():
            raise BuildError(f"Built image not found: {image_path}")
        self.registry.register(
            profile=self.profile.name,
            arch=self.arch.value,
            path=image_path,
            source_image=self.source.key,
            cache_key=cache_key,
        )
        session.advance(BuildState.REGISTERED)
        session.report(f"Image registered: {image_path.name}", "success")


class RemoteBuilder:
    """Placeholder for builds routed to a remote host.

    The routing layer can select a remote builder, but executing a build
    on one is not implemented.
    """

    kind = BuilderKind.REMOTE

    def __init__(self, selection: BuilderSelection) -> None:
        self.selection = selection

    def build(self, cache_key: str, scripts: Sequence[ProvisioningScript]) -> Path:
        remote = self.selection.remote
        raise RemoteBuildNotSupportedError(
            self.selection.name or "unknown", remote.host if remote else None
        )


def create_builder(
    selection: BuilderSelection,
    config: BuildConfig,
    profile: Profile,
    source: SourceImage,
    registry: Registry,
    **local_kwargs: Any,
) -> Builder:
    """Create the builder for a routing decision.

    Args:
        selection: Routing decision from ArchitectureRouter.
        config: Effective build configuration.
        profile: Resolved profile.
        source: Installer ISO.
        registry: Image registry.
        **local_kwargs: Extra LocalBuilder arguments (options, reporter,
            collaborator factories).

    Returns:
        A LocalBuilder or RemoteBuilder.
    """
    if selection.kind is BuilderKind.LOCAL:
        return LocalBuilder(
            config=config,
            profile=profile,
            arch=to_architecture(selection.arch),
            source=source,
            registry=registry,
            **local_kwargs,
        )
    if selection.kind is BuilderKind.REMOTE:
        return RemoteBuilder(selection)
    raise BuildError(f"Unknown builder kind: {selection.kind}")


__all__ = [
    "FINALIZE_COMMANDS",
    "BuildOptions",
    "Builder",
    "LocalBuilder",
    "RemoteBuilder",
    "create_builder",
    "image_filename",
    "kernel_append",
]
