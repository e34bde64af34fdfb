"""UEFI firmware discovery for arm64 guests.

The code image is read-only and shared; the vars image is a private,
writable copy per build so that boot entries written by the installer
survive into the second boot.
"""

from __future__ import annotations

import logging
import shutil
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from pim_build.errors import FirmwareNotFoundError

logger = logging.getLogger(__name__)

EFI_CODE_PATHS: tuple[str, ...] = (
    "/opt/homebrew/share/qemu/edk2-aarch64-code.fd",
    "/usr/local/share/qemu/edk2-aarch64-code.fd",
    "/usr/share/qemu/edk2-aarch64-code.fd",
    "/usr/share/AAVMF/AAVMF_CODE.fd",
    "/usr/share/qemu-efi-aarch64/QEMU_EFI.fd",
)

EFI_VARS_TEMPLATE_PATHS: tuple[str, ...] = (
    "/opt/homebrew/share/qemu/edk2-arm-vars.fd",
    "/usr/local/share/qemu/edk2-arm-vars.fd",
    "/usr/share/qemu/edk2-arm-vars.fd",
    "/usr/share/AAVMF/AAVMF_VARS.fd",
)

# pflash devices on the virt machine are 64 MiB
EFI_VARS_SIZE = 64 * 1024 * 1024


@dataclass(frozen=True)
class EfiFirmware:
    """Pair of pflash images for one VM."""

    code: Path
    vars: Path


def _first_existing(paths: Sequence[str | Path]) -> Path | None:
    for candidate in paths:
        path = Path(candidate)
        if path.is_file():
            return path
    return None


def find_efi_code(paths: Sequence[str | Path] = EFI_CODE_PATHS) -> Path | None:
    return _first_existing(paths)


def find_efi_vars_template(
    paths: Sequence[str | Path] = EFI_VARS_TEMPLATE_PATHS,
) -> Path | None:
    return _first_existing(paths)


def prepare_efi_firmware(
    dest_dir: Path,
    code_paths: Sequence[str | Path] = EFI_CODE_PATHS,
    vars_paths: Sequence[str | Path] = EFI_VARS_TEMPLATE_PATHS,
) -> EfiFirmware:
    """Locate the firmware code image and create a writable vars image.

    Args:
        dest_dir: Directory for the private vars copy.
        code_paths: Candidate locations for the code image.
        vars_paths: Candidate locations for the vars template.

    Returns:
        EfiFirmware with the code image and the new vars image.

    Raises:
        FirmwareNotFoundError: If no code image is installed.
    """
    code = find_efi_code(code_paths)
    if code is None:
        raise FirmwareNotFoundError([str(p) for p in code_paths])

    vars_path = dest_dir / "efivars.fd"
    template = find_efi_vars_template(vars_paths)
    if template is not None:
        shutil.copyfile(template, vars_path)
        logger.debug("Copied EFI vars template %s", template)
    else:
        with open(vars_path, "wb") as f:
            f.truncate(EFI_VARS_SIZE)
        logger.debug("Created empty EFI vars store %s", vars_path)

    return EfiFirmware(code=code, vars=vars_path)


__all__ = [
    "EFI_CODE_PATHS",
    "EFI_VARS_SIZE",
    "EFI_VARS_TEMPLATE_PATHS",
    "EfiFirmware",
    "find_efi_code",
    "find_efi_vars_template",
    "prepare_efi_firmware",
]
