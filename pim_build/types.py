"""Shared type definitions for pim_build.

This module contains enums and small dataclasses shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class Architecture(str, Enum):
    """Canonical target architectures."""

    ARM64 = "arm64"
    X86_64 = "x86_64"


class BuilderKind(str, Enum):
    """Where a build is executed."""

    LOCAL = "local"
    REMOTE = "remote"


class Acceleration(str, Enum):
    """Virtualization mode chosen for a QEMU invocation.

    Ordered from most to least preferred.
    """

    HARDWARE = "hardware"
    EMULATED = "emulated"
    GENERIC = "generic"


class BuildState(str, Enum):
    """States of one build session, in execution order."""

    PENDING = "pending"
    DISK_CREATED = "disk_created"
    AUX_SERVER_RUNNING = "aux_server_running"
    INSTALLER_KERNEL_EXTRACTED = "installer_kernel_extracted"
    INSTALLER_BOOTED = "installer_booted"
    INSTALL_COMPLETE = "install_complete"
    SYSTEM_BOOTED = "system_booted"
    SHELL_READY = "shell_ready"
    PROVISIONED = "provisioned"
    FINALIZED = "finalized"
    SHUT_DOWN = "shut_down"
    REGISTERED = "registered"
    FAILED = "failed"


# Happy-path order; FAILED is reachable from any of these.
BUILD_STATE_ORDER: tuple[BuildState, ...] = (
    BuildState.PENDING,
    BuildState.DISK_CREATED,
    BuildState.AUX_SERVER_RUNNING,
    BuildState.INSTALLER_KERNEL_EXTRACTED,
    BuildState.INSTALLER_BOOTED,
    BuildState.INSTALL_COMPLETE,
    BuildState.SYSTEM_BOOTED,
    BuildState.SHELL_READY,
    BuildState.PROVISIONED,
    BuildState.FINALIZED,
    BuildState.SHUT_DOWN,
    BuildState.REGISTERED,
)


@dataclass(frozen=True)
class SourceImage:
    """A boot medium (installer ISO) for one architecture.

    Attributes:
        key: Catalog key of the ISO.
        arch: Canonical architecture token.
        path: Expected location of the ISO on disk.
        checksum: Checksum string from the catalog (may carry a sha256: prefix).
    """

    key: str
    arch: str
    path: Path
    checksum: str

    @property
    def exists(self) -> bool:
        """Whether the ISO has been downloaded."""
        return self.path.is_file()


@dataclass(frozen=True)
class CommandResult:
    """Result of a remote command."""

    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


@dataclass
class BuildOutcome:
    """Result of BuildManager.build().

    Attributes:
        image_path: Path to the built (or cached) disk image.
        cache_key: Cache key the image was built for.
        cache_hit: True when an existing image was reused.
    """

    image_path: Path
    cache_key: str
    cache_hit: bool


__all__ = [
    "BUILD_STATE_ORDER",
    "Acceleration",
    "Architecture",
    "BuildOutcome",
    "BuildState",
    "BuilderKind",
    "CommandResult",
    "SourceImage",
]
