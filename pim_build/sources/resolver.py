"""Installer ISO catalog.

The catalog is a set of YAML files ``isos.d/*.yml`` in the global and
project configuration directories. Each file maps ISO keys to entries::

    debian-12-arm64:
      architecture: arm64
      filename: debian-12.7.0-arm64-netinst.iso
      checksum: sha256:abc...
      url: https://cdimage.debian.org/...

Downloading is not handled here; an ISO that is catalogued but absent from
the ISO directory is reported as not downloaded.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from pim_build.arch import normalize
from pim_build.config import load_yaml_file
from pim_build.errors import SourceImageNotDownloadedError, SourceImageNotFoundError
from pim_build.types import SourceImage

logger = logging.getLogger(__name__)

ISOS_DIRNAME = "isos.d"


class SourceImageResolver:
    """Find the installer ISO for an architecture.

    Args:
        search_dirs: Base directories in priority order (project first).
        iso_dir: Directory holding downloaded ISO files.
    """

    def __init__(self, search_dirs: Sequence[Path], iso_dir: Path) -> None:
        self.search_dirs = [Path(d) for d in search_dirs]
        self.iso_dir = Path(iso_dir)

    def catalog(self) -> dict[str, dict[str, Any]]:
        """Return all catalogued ISOs keyed by ISO key.

        Project entries replace global entries with the same key.
        """
        entries: dict[str, dict[str, Any]] = {}
        for base in reversed(self.search_dirs):
            directory = base / ISOS_DIRNAME
            if not directory.is_dir():
                continue
            for path in sorted(directory.iterdir()):
                if not (path.is_file() and path.suffix in (".yml", ".yaml")):
                    continue
                for key, data in load_yaml_file(path).items():
                    if isinstance(data, dict):
                        entries[str(key)] = data
                    else:
                        logger.warning("Ignoring malformed ISO entry %s in %s", key, path)
        return entries

    def find(self, arch: str) -> SourceImage:
        """Return the first catalogued ISO for an architecture.

        The result may not be downloaded yet; check ``SourceImage.exists``.

        Raises:
            SourceImageNotFoundError: If no ISO matches the architecture.
        """
        target = normalize(arch)
        catalog = self.catalog()
        for key, data in catalog.items():
            if normalize(str(data.get("architecture", ""))) != target:
                continue
            filename = data.get("filename") or f"{key}.iso"
            return SourceImage(
                key=key,
                arch=target,
                path=self.iso_dir / filename,
                checksum=str(data.get("checksum") or ""),
            )
        raise SourceImageNotFoundError(
            target, [f"{k}: {v.get('architecture')}" for k, v in catalog.items()]
        )

    def resolve(self, arch: str) -> SourceImage:
        """Return the ISO for an architecture, which must be downloaded.

        Raises:
            SourceImageNotFoundError: If no ISO matches the architecture.
            SourceImageNotDownloadedError: If the ISO file is absent.
        """
        source = self.find(arch)
        if not source.exists:
            raise SourceImageNotDownloadedError(source.key, str(source.path))
        return source


__all__ = ["ISOS_DIRNAME", "SourceImageResolver"]
