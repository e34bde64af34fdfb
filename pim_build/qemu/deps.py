"""Host dependency checks and port allocation."""

from __future__ import annotations

import logging
import shutil
import socket

from pim_build.errors import VMError
from pim_build.types import Architecture

logger = logging.getLogger(__name__)

QEMU_BINARIES: dict[Architecture, str] = {
    Architecture.ARM64: "qemu-system-aarch64",
    Architecture.X86_64: "qemu-system-x86_64",
}

# Tools needed regardless of target architecture
BASE_TOOLS = ("qemu-img", "bsdtar")


def qemu_binary(arch: Architecture) -> str:
    """Return the qemu-system binary for an architecture."""
    return QEMU_BINARIES[arch]


def check_dependencies(arch: Architecture | None = None) -> list[str]:
    """Return the names of required tools missing from PATH.

    Args:
        arch: Only check the emulator for this architecture. All emulators
            are checked when omitted.

    Returns:
        Missing executable names (empty when everything is installed).
    """
    binaries = [QEMU_BINARIES[arch]] if arch is not None else list(QEMU_BINARIES.values())
    missing = [tool for tool in (*binaries, *BASE_TOOLS) if shutil.which(tool) is None]
    if missing:
        logger.debug("Missing tools: %s", ", ".join(missing))
    return missing


def find_available_port(start_port: int = 2222, max_attempts: int = 100) -> int:
    """Find a free TCP port on the loopback interface.

    Args:
        start_port: First port to try.
        max_attempts: Number of consecutive ports to probe.

    Returns:
        A port that could be bound at the time of the call.

    Raises:
        VMError: If no port in the range is free.
    """
    for port in range(start_port, start_port + max_attempts + 1):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            try:
                sock.bind(("127.0.0.1", port))
            except OSError:
                continue
            return port
    raise VMError(
        f"No available port found in range {start_port}-{start_port + max_attempts}"
    )


__all__ = ["BASE_TOOLS", "QEMU_BINARIES", "check_dependencies", "find_available_port", "qemu_binary"]
