"""QEMU hypervisor abstraction.

This module handles:
- Disk image operations via qemu-img
- Architecture-specific QEMU command construction
- UEFI firmware discovery
- QEMU process lifecycle and SSH readiness probing
"""

from pim_build.qemu.command import QemuCommandBuilder, select_acceleration
from pim_build.qemu.deps import check_dependencies, find_available_port
from pim_build.qemu.disk import DiskImage
from pim_build.qemu.vm import QemuVM

__all__ = [
    "DiskImage",
    "QemuCommandBuilder",
    "QemuVM",
    "check_dependencies",
    "find_available_port",
    "select_acceleration",
]
