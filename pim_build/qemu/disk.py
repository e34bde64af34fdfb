"""Disk image operations via qemu-img.

Every wrapper fails loudly: a non-zero exit from qemu-img raises
DiskImageError carrying the tool's own diagnostic.
"""

from __future__ import annotations

import json
import logging
import subprocess
from pathlib import Path
from typing import Any

from pim_build.errors import DiskImageError

logger = logging.getLogger(__name__)

QEMU_IMG = "qemu-img"


def _run_qemu_img(args: list[str], action: str) -> subprocess.CompletedProcess[str]:
    cmd = [QEMU_IMG, *args]
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    except OSError as e:
        raise DiskImageError(f"Failed to {action}: {e}") from e
    if result.returncode != 0:
        raise DiskImageError(f"Failed to {action}: {result.stderr.strip()}")
    return result


class DiskImage:
    """A disk image file managed with qemu-img.

    Args:
        path: Path to the image file.
    """

    def __init__(self, path: str | Path) -> None:
        self.path = Path(path).expanduser().resolve()

    def __repr__(self) -> str:
        return f"DiskImage({str(self.path)!r})"

    @classmethod
    def create(cls, path: str | Path, size: str, fmt: str = "qcow2") -> DiskImage:
        """Create a new blank disk image.

        Args:
            path: Destination path (parent directories are created).
            size: Size in qemu-img notation, e.g. "20G".
            fmt: Image format.

        Returns:
            DiskImage for the created file.

        Raises:
            DiskImageError: If qemu-img fails.
        """
        image = cls(path)
        image.path.parent.mkdir(parents=True, exist_ok=True)
        _run_qemu_img(["create", "-f", fmt, str(image.path), size], "create disk image")
        logger.info("Created %s disk image %s (%s)", fmt, image.path, size)
        return image

    def exists(self) -> bool:
        return self.path.is_file()

    def info(self) -> dict[str, Any]:
        """Return ``qemu-img info`` output as a dictionary."""
        result = _run_qemu_img(
            ["info", "--output=json", str(self.path)], "get image info"
        )
        try:
            data: dict[str, Any] = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise DiskImageError(f"Failed to parse image info: {e}") from e
        return data

    @property
    def actual_size(self) -> int | None:
        """Bytes used on the host filesystem."""
        if not self.exists():
            return None
        return self.info().get("actual-size")

    @property
    def virtual_size(self) -> int | None:
        """Guest-visible disk size in bytes."""
        if not self.exists():
            return None
        return self.info().get("virtual-size")

    def convert(
        self, output_path: str | Path, fmt: str = "qcow2", compress: bool = False
    ) -> DiskImage:
        """Convert to another format or compress into a new file."""
        output = Path(output_path).expanduser().resolve()
        args = ["convert"]
        if compress:
            args.append("-c")
        args += ["-O", fmt, str(self.path), str(output)]
        _run_qemu_img(args, "convert image")
        return DiskImage(output)

    def resize(self, size: str) -> None:
        """Resize the image (e.g. "+10G" or "40G")."""
        _run_qemu_img(["resize", str(self.path), size], "resize image")


__all__ = ["DiskImage"]
