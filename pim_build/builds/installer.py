"""Installer kernel extraction for direct kernel boot.

The Debian installer ISO carries its kernel and initrd under an
architecture-specific directory. Both are pulled out with bsdtar, which
reads ISO 9660 without mounting, so the installer can be booted with our
own kernel command line instead of the ISO's bootloader.
"""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

from pim_build.errors import ExtractionError
from pim_build.types import Architecture

logger = logging.getLogger(__name__)

BSDTAR = "bsdtar"

INSTALLER_DIRS: dict[Architecture, str] = {
    Architecture.ARM64: "install.a64",
    Architecture.X86_64: "install.amd",
}

KERNEL_NAME = "vmlinuz"
INITRD_NAME = "initrd.gz"


@dataclass(frozen=True)
class InstallerKernel:
    """Extracted installer boot files."""

    kernel: Path
    initrd: Path


def installer_paths(arch: Architecture) -> tuple[str, str]:
    """Paths of the kernel and initrd inside the ISO."""
    base = INSTALLER_DIRS[arch]
    return f"{base}/{KERNEL_NAME}", f"{base}/{INITRD_NAME}"


def extract_installer_kernel(iso_path: Path, dest_dir: Path, arch: Architecture) -> InstallerKernel:
    """Extract the installer kernel and initrd from an ISO.

    Args:
        iso_path: Installer ISO.
        dest_dir: Directory receiving the files (created if missing).
        arch: Target architecture; selects the directory inside the ISO.

    Returns:
        InstallerKernel with paths to the extracted files.

    Raises:
        ExtractionError: If bsdtar fails or either file is missing
            afterwards.
    """
    kernel_member, initrd_member = installer_paths(arch)
    dest_dir.mkdir(parents=True, exist_ok=True)

    cmd = [BSDTAR, "xf", str(iso_path), "-C", str(dest_dir), kernel_member, initrd_member]
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise ExtractionError(f"Failed to extract kernel/initrd from ISO: {e}") from e
    if result.returncode != 0:
        raise ExtractionError(
            f"Failed to extract kernel/initrd from ISO: {result.stderr.strip()}"
        )

    kernel = dest_dir / kernel_member
    initrd = dest_dir / initrd_member
    missing = [str(p) for p in (kernel, initrd) if not p.is_file()]
    if missing:
        raise ExtractionError(f"Kernel or initrd not found after extraction: {', '.join(missing)}")

    logger.info("Extracted installer kernel to %s", kernel.parent)
    return InstallerKernel(kernel=kernel, initrd=initrd)


__all__ = ["INSTALLER_DIRS", "InstallerKernel", "extract_installer_kernel", "installer_paths"]
