"""Image registry for tracking built images.

The registry is a single YAML file stored alongside the images
(``<image_dir>/registry.yml``) and is the sole durable owner of image
metadata. It holds exactly one entry per (profile, architecture) pair;
a new successful build replaces the previous entry for that pair.

Writes are atomic: every mutation takes an exclusive lock, reloads the
file, applies the change, writes a temporary file in the same directory
and renames it over the registry. A crash mid-write leaves the previous
file intact. A file that cannot be parsed is copied to
``registry.yml.unreadable-<timestamp>`` before it is rewritten.
"""

from __future__ import annotations

import fcntl
import logging
import os
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import yaml
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "registry.yml"
REGISTRY_VERSION = 1


def image_key(profile: str, arch: str) -> str:
    """Registry key for a profile/architecture pair."""
    return f"{profile}-{arch}"


def efivars_path_for(image_path: str | Path) -> Path:
    """Location of the saved UEFI variable store for an image."""
    path = Path(image_path)
    return path.with_name(f"{path.stem}-efivars.fd")


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


class Deployment(BaseModel):
    """One deployment of a built image."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    target: str
    target_kind: str = Field(validation_alias=AliasChoices("target_kind", "target_type"))
    deployed_at: str


class RegistryEntry(BaseModel):
    """A built image.

    Attributes:
        profile: Profile name.
        arch: Canonical architecture.
        path: Absolute path to the disk image.
        filename: Basename of the disk image.
        source_image: Key of the ISO the image was installed from.
        cache_key: Cache key the image was built for.
        build_time: ISO-8601 UTC timestamp of registration.
        size: Image size in bytes at registration.
        deployments: Append-only deployment history.
    """

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    profile: str
    arch: str
    path: str
    filename: str
    source_image: str | None = Field(
        default=None, validation_alias=AliasChoices("source_image", "iso")
    )
    cache_key: str
    build_time: str
    size: int | None = None
    deployments: list[Deployment] = Field(default_factory=list)

    @property
    def key(self) -> str:
        return image_key(self.profile, self.arch)

    @property
    def exists(self) -> bool:
        return Path(self.path).is_file()


@contextmanager
def registry_lock(lock_path: Path) -> Iterator[None]:
    """Hold an exclusive lock on the registry for a read-modify-write cycle.

    Args:
        lock_path: Lock file path (created if missing).

    Yields:
        None while the lock is held.
    """
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(str(lock_path), os.O_RDWR | os.O_CREAT, 0o600)
    try:
        fcntl.flock(fd, fcntl.LOCK_EX)
        yield
    finally:
        fcntl.flock(fd, fcntl.LOCK_UN)
        os.close(fd)


class Registry:
    """Durable map of built images.

    Args:
        image_dir: Directory holding images and registry.yml.
    """

    def __init__(self, image_dir: Path) -> None:
        self.image_dir = Path(image_dir).expanduser().resolve()
        self.registry_path = self.image_dir / REGISTRY_FILENAME
        self._lock_path = self.image_dir / f"{REGISTRY_FILENAME}.lock"

    # Loading and saving

    def _load(self) -> tuple[dict[str, RegistryEntry], dict[str, Any]]:
        """Read the registry file.

        Returns:
            Tuple of (valid entries, raw entries that failed validation).
            Invalid raw entries are kept so a later write does not drop them.
        """
        if not self.registry_path.is_file():
            return {}, {}
        try:
            data = self._read_document()
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Failed to read registry %s: %s", self.registry_path, e)
            return {}, {}

        if not isinstance(data, dict) or not isinstance(data.get("images"), dict):
            return {}, {}

        entries: dict[str, RegistryEntry] = {}
        invalid: dict[str, Any] = {}
        for key, raw in data["images"].items():
            try:
                entries[str(key)] = RegistryEntry.model_validate(raw)
            except ValidationError as e:
                logger.warning("Skipping invalid registry entry %s: %s", key, e)
                invalid[str(key)] = raw
        return entries, invalid

    def _read_document(self) -> Any:
        with open(self.registry_path, encoding="utf-8") as f:
            return yaml.safe_load(f)

    def _backup_unreadable(self) -> Path | None:
        """Copy aside a registry file that cannot be parsed as a registry.

        Called before a rewrite so entries in a damaged file are not lost.

        Returns:
            Path of the backup copy, or None if no backup was needed.
        """
        if not self.registry_path.is_file():
            return None
        try:
            data = self._read_document()
        except OSError:
            return None
        except yaml.YAMLError:
            pass
        else:
            if data is None or (
                isinstance(data, dict) and isinstance(data.get("images"), dict)
            ):
                return None

        stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        backup = self.registry_path.with_name(f"{REGISTRY_FILENAME}.unreadable-{stamp}")
        shutil.copy2(self.registry_path, backup)
        logger.warning(
            "Registry %s could not be parsed; saved a copy as %s", self.registry_path, backup
        )
        return backup

    def _save(self, entries: dict[str, RegistryEntry], invalid: dict[str, Any]) -> None:
        images: dict[str, Any] = dict(invalid)
        for key, entry in entries.items():
            images[key] = entry.model_dump(mode="json")
        document = {"version": REGISTRY_VERSION, "images": images}

        self.image_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{REGISTRY_FILENAME}.", suffix=".tmp", dir=self.image_dir
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                yaml.safe_dump(document, f, sort_keys=True, default_flow_style=False)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, self.registry_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @contextmanager
    def _transaction(self) -> Iterator[tuple[dict[str, RegistryEntry], dict[str, Any]]]:
        with registry_lock(self._lock_path):
            entries, invalid = self._load()
            before = {k: v.model_dump(mode="json") for k, v in entries.items()}
            yield entries, invalid
            after = {k: v.model_dump(mode="json") for k, v in entries.items()}
            if after != before:
                self._backup_unreadable()
                self._save(entries, invalid)

    # Queries

    def images(self) -> dict[str, RegistryEntry]:
        """Return all valid entries keyed by "<profile>-<arch>"."""
        entries, _ = self._load()
        return entries

    def find(self, profile: str, arch: str) -> RegistryEntry | None:
        """Return the entry for a profile/architecture pair, if any."""
        return self.images().get(image_key(profile, arch))

    def list_entries(self) -> list[RegistryEntry]:
        """Return all entries, newest build first."""
        return sorted(self.images().values(), key=lambda e: e.build_time or "", reverse=True)

    def deployments(self, profile: str, arch: str) -> list[Deployment]:
        entry = self.find(profile, arch)
        return list(entry.deployments) if entry else []

    # Mutations

    def register(
        self,
        profile: str,
        arch: str,
        path: str | Path,
        source_image: str | None,
        cache_key: str,
        build_time: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RegistryEntry:
        """Record a built image, replacing any entry for the same pair.

        Args:
            profile: Profile name.
            arch: Canonical architecture.
            path: Path to the built image.
            source_image: ISO key the image was installed from.
            cache_key: Cache key of the build.
            build_time: ISO-8601 timestamp (defaults to now, UTC).
            metadata: Extra fields stored on the entry.

        Returns:
            The stored RegistryEntry.
        """
        image_path = Path(path).expanduser().resolve()
        entry = RegistryEntry.model_validate(
            {
                **(metadata or {}),
                "profile": profile,
                "arch": arch,
                "path": str(image_path),
                "filename": image_path.name,
                "source_image": source_image,
                "cache_key": cache_key,
                "build_time": build_time or _utcnow_iso(),
                "size": image_path.stat().st_size if image_path.is_file() else None,
                "deployments": [],
            }
        )
        with self._transaction() as (entries, _):
            entries[entry.key] = entry
        logger.info("Registered %s -> %s", entry.key, image_path)
        return entry

    def unregister(self, profile: str, arch: str) -> RegistryEntry | None:
        """Remove an entry; returns it, or None if absent."""
        with self._transaction() as (entries, _):
            return entries.pop(image_key(profile, arch), None)

    def record_deployment(
        self,
        profile: str,
        arch: str,
        target: str,
        target_kind: str,
        deployed_at: str | None = None,
    ) -> Deployment | None:
        """Append a deployment record to an entry.

        Returns:
            The new Deployment, or None if there is no entry for the pair.
        """
        with self._transaction() as (entries, _):
            entry = entries.get(image_key(profile, arch))
            if entry is None:
                return None
            deployment = Deployment(
                target=target,
                target_kind=target_kind,
                deployed_at=deployed_at or _utcnow_iso(),
            )
            entry.deployments.append(deployment)
            return deployment

    def clean_orphaned(self) -> list[str]:
        """Remove entries whose image file no longer exists.

        Returns:
            Keys of the removed entries.
        """
        with self._transaction() as (entries, _):
            removed = [key for key, entry in entries.items() if not entry.exists]
            for key in removed:
                del entries[key]
        for key in removed:
            logger.info("Removed orphaned registry entry %s", key)
        return removed

    def clean_all(self) -> list[str]:
        """Remove every entry and delete its image (and saved EFI vars).

        Returns:
            Keys of the removed entries.
        """
        with self._transaction() as (entries, _):
            removed = list(entries)
            for entry in entries.values():
                for file_path in (Path(entry.path), efivars_path_for(entry.path)):
                    if file_path.is_file():
                        file_path.unlink()
                        logger.info("Deleted %s", file_path)
            entries.clear()
        return removed


__all__ = [
    "REGISTRY_FILENAME",
    "REGISTRY_VERSION",
    "Deployment",
    "Registry",
    "RegistryEntry",
    "efivars_path_for",
    "image_key",
    "registry_lock",
]
