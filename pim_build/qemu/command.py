"""QEMU command construction.

This module handles:
- Choosing a virtualization mode for a target architecture on this host
- Composing the qemu-system command line for install and boot phases

Acceleration is picked in priority order: hardware (HVF on macOS, KVM on
Linux) when the host architecture matches the target, then TCG with a CPU
model from the target's family, then generic TCG (``-cpu max``) for
cross-architecture emulation. The chosen mode is exposed on the builder and
degraded modes are logged as warnings.
"""

from __future__ import annotations

import logging
import os
import platform
import shlex
from dataclasses import dataclass
from pathlib import Path

from pim_build.arch import normalize
from pim_build.qemu.deps import qemu_binary
from pim_build.qemu.firmware import EfiFirmware
from pim_build.types import Acceleration, Architecture

logger = logging.getLogger(__name__)

KVM_DEVICE = "/dev/kvm"

_MACHINE_TYPES: dict[Architecture, str] = {
    Architecture.ARM64: "virt",
    Architecture.X86_64: "q35",
}

_FAMILY_CPU_MODELS: dict[Architecture, str] = {
    Architecture.ARM64: "cortex-a72",
    Architecture.X86_64: "qemu64",
}

SERIAL_CONSOLES: dict[Architecture, str] = {
    Architecture.ARM64: "ttyAMA0",
    Architecture.X86_64: "ttyS0",
}


@dataclass(frozen=True)
class AccelerationChoice:
    """Machine and CPU arguments for one virtualization mode.

    Attributes:
        mode: Acceleration tier.
        accel: QEMU accelerator name (hvf, kvm or tcg).
        machine: Value for ``-machine``.
        cpu: Value for ``-cpu``.
    """

    mode: Acceleration
    accel: str
    machine: str
    cpu: str

    def args(self) -> list[str]:
        return ["-machine", self.machine, "-cpu", self.cpu]


def kvm_available() -> bool:
    """Whether /dev/kvm exists and is usable by this user."""
    return os.path.exists(KVM_DEVICE) and os.access(KVM_DEVICE, os.R_OK | os.W_OK)


def select_acceleration(
    target: Architecture,
    host_arch: str,
    system: str,
    has_kvm: bool,
) -> AccelerationChoice:
    """Pick the best virtualization mode for a target on a host.

    Args:
        target: Target architecture.
        host_arch: Host architecture (normalized internally).
        system: Host OS name as returned by platform.system().
        has_kvm: Whether KVM is usable on a Linux host.

    Returns:
        AccelerationChoice for the QEMU command line.
    """
    machine = _MACHINE_TYPES[target]
    native = normalize(host_arch) == target.value

    if native and system == "Darwin":
        hvf_machine = f"{machine},accel=hvf"
        if target is Architecture.ARM64:
            hvf_machine += ",highmem=on"
        return AccelerationChoice(Acceleration.HARDWARE, "hvf", hvf_machine, "host")

    if native and system == "Linux" and has_kvm:
        return AccelerationChoice(
            Acceleration.HARDWARE, "kvm", f"{machine},accel=kvm", "host"
        )

    if native:
        return AccelerationChoice(
            Acceleration.EMULATED,
            "tcg",
            f"{machine},accel=tcg",
            _FAMILY_CPU_MODELS[target],
        )

    return AccelerationChoice(
        Acceleration.GENERIC, "tcg", f"{machine},accel=tcg", "max"
    )


def detect_acceleration(target: Architecture) -> AccelerationChoice:
    """Probe the running host and select an acceleration mode."""
    return select_acceleration(
        target,
        host_arch=platform.machine(),
        system=platform.system(),
        has_kvm=kvm_available(),
    )


@dataclass
class _Drive:
    path: Path
    fmt: str
    interface: str
    index: int


@dataclass
class _UserNet:
    net_id: str
    host_port: int
    guest_port: int


class QemuCommandBuilder:
    """Compose a qemu-system command line.

    Args:
        arch: Target architecture.
        memory: Guest memory in MiB.
        cpus: Guest CPU count.
        display: Attach a graphical display instead of -nographic.
        serial: Explicit ``-serial`` backend (e.g. "stdio", "file:/x", "null").
        acceleration: Pre-selected acceleration; detected from the host
            when omitted.
    """

    def __init__(
        self,
        arch: Architecture,
        memory: int = 2048,
        cpus: int = 2,
        display: bool = False,
        serial: str | None = None,
        acceleration: AccelerationChoice | None = None,
    ) -> None:
        self.arch = arch
        self.memory = memory
        self.cpus = cpus
        self.display = display
        self.serial = serial
        self.acceleration = acceleration or detect_acceleration(arch)
        self._drives: list[_Drive] = []
        self._cdrom: Path | None = None
        self._netdevs: list[_UserNet] = []
        self._firmware: EfiFirmware | None = None
        self._kernel: tuple[Path, Path, str] | None = None
        self._extra: list[str] = []

        if self.acceleration.mode is not Acceleration.HARDWARE:
            logger.warning(
                "No hardware acceleration for %s; using %s emulation (-cpu %s)",
                arch.value,
                self.acceleration.mode.value,
                self.acceleration.cpu,
            )

    def add_drive(
        self,
        path: str | Path,
        fmt: str = "qcow2",
        interface: str = "virtio",
        index: int = 0,
    ) -> QemuCommandBuilder:
        self._drives.append(_Drive(Path(path), fmt, interface, index))
        return self

    def set_cdrom(self, path: str | Path) -> QemuCommandBuilder:
        self._cdrom = Path(path)
        return self

    def add_user_net(
        self, host_port: int, guest_port: int = 22, net_id: str = "net0"
    ) -> QemuCommandBuilder:
        """Add user-mode networking forwarding host_port to guest_port."""
        self._netdevs.append(_UserNet(net_id, host_port, guest_port))
        return self

    def set_firmware(self, firmware: EfiFirmware) -> QemuCommandBuilder:
        """Attach UEFI code (read-only) and vars (writable) pflash drives."""
        self._firmware = firmware
        return self

    def set_direct_kernel(
        self, kernel: str | Path, initrd: str | Path, append: str
    ) -> QemuCommandBuilder:
        """Boot a kernel/initrd pair directly, bypassing the bootloader."""
        self._kernel = (Path(kernel), Path(initrd), append)
        return self

    def enable_vnc(self, display_number: int) -> QemuCommandBuilder:
        """Expose the display over VNC on port 5900 + display_number."""
        self._extra += ["-vnc", f":{display_number}"]
        if self.arch is Architecture.ARM64:
            # virt has no default GPU or input devices
            self._extra += [
                "-device", "virtio-gpu-pci,xres=1024,yres=768",
                "-device", "usb-ehci",
                "-device", "usb-kbd",
                "-device", "usb-tablet",
            ]
        return self

    def extra_args(self, *args: str) -> QemuCommandBuilder:
        self._extra.extend(args)
        return self

    def build(self) -> list[str]:
        """Return the command as an argument list."""
        cmd = [qemu_binary(self.arch)]
        cmd += self.acceleration.args()
        cmd += ["-smp", str(self.cpus), "-m", str(self.memory)]

        if not self.display:
            cmd.append("-nographic")

        if self._firmware is not None:
            cmd += [
                "-drive",
                f"if=pflash,format=raw,file={self._firmware.code},readonly=on",
                "-drive",
                f"if=pflash,format=raw,file={self._firmware.vars}",
            ]

        for drive in self._drives:
            cmd += [
                "-drive",
                f"file={drive.path},format={drive.fmt},if={drive.interface},index={drive.index}",
            ]

        if self._cdrom is not None:
            cmd += ["-cdrom", str(self._cdrom), "-boot", "d"]

        for net in self._netdevs:
            cmd += [
                "-netdev",
                f"user,id={net.net_id},hostfwd=tcp::{net.host_port}-:{net.guest_port}",
                "-device",
                f"virtio-net-pci,netdev={net.net_id}",
            ]

        if self._kernel is not None:
            kernel, initrd, append = self._kernel
            cmd += ["-kernel", str(kernel), "-initrd", str(initrd), "-append", append]

        if self.serial:
            cmd += ["-serial", self.serial]
        elif not self.display:
            cmd += ["-serial", "mon:stdio"]

        cmd += self._extra
        return cmd

    def to_string(self) -> str:
        """Shell-quoted command for display."""
        return shlex.join(self.build())


__all__ = [
    "SERIAL_CONSOLES",
    "AccelerationChoice",
    "QemuCommandBuilder",
    "detect_acceleration",
    "kvm_available",
    "select_acceleration",
]
