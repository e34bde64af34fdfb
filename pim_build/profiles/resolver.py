"""Profile loading and merging.

A profile is a YAML mapping stored as ``profiles.d/<name>.yml``. Files in
the project directory are merged over files of the same name in the global
configuration directory, and every profile other than ``default`` is merged
over the ``default`` profile. An unknown name resolves to an empty mapping;
callers decide whether that is an error.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pim_build.config import deep_merge, load_yaml_file

logger = logging.getLogger(__name__)

PROFILES_DIRNAME = "profiles.d"
DEFAULT_PROFILE = "default"
DEFAULT_SCRIPTS = ("base", "finalize")


@dataclass(frozen=True)
class Profile:
    """A resolved profile.

    Attributes:
        name: Profile name.
        data: Merged profile fields.
    """

    name: str
    data: dict[str, Any] = field(default_factory=dict)

    def _build_value(self, key: str) -> Any:
        build = self.data.get("build")
        if isinstance(build, dict):
            return build.get(key)
        return None

    @property
    def is_empty(self) -> bool:
        return not self.data

    @property
    def disk_size(self) -> str | None:
        value = self._build_value("disk_size")
        return str(value) if value is not None else None

    @property
    def memory(self) -> int | None:
        value = self._build_value("memory")
        return int(value) if value is not None else None

    @property
    def cpus(self) -> int | None:
        value = self._build_value("cpus")
        return int(value) if value is not None else None

    @property
    def ssh_timeout(self) -> int | None:
        value = self._build_value("ssh_timeout")
        return int(value) if value is not None else None

    @property
    def scripts(self) -> list[str]:
        value = self.data.get("scripts")
        if value is None:
            return list(DEFAULT_SCRIPTS)
        if isinstance(value, str):
            return [value]
        return [str(s) for s in value]

    @property
    def architectures(self) -> list[str] | None:
        """Supported architectures, or None when the profile does not restrict them."""
        value = self.data.get("architectures")
        if value is None:
            return None
        if isinstance(value, str):
            return [value]
        return [str(a) for a in value]

    @property
    def username(self) -> str | None:
        return self.data.get("username")

    @property
    def password(self) -> str | None:
        return self.data.get("password")

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


class ProfileResolver:
    """Resolve profile names to merged field maps.

    Args:
        search_dirs: Base directories in priority order (project first).
    """

    def __init__(self, search_dirs: Sequence[Path]) -> None:
        self.search_dirs = [Path(d) for d in search_dirs]

    def _profile_files(self, name: str) -> list[Path]:
        # lowest priority first
        return [
            base / PROFILES_DIRNAME / f"{name}{suffix}"
            for base in reversed(self.search_dirs)
            for suffix in (".yml", ".yaml")
        ]

    def _load_raw(self, name: str) -> dict[str, Any]:
        data: dict[str, Any] = {}
        for path in self._profile_files(name):
            if path.is_file():
                data = deep_merge(data, load_yaml_file(path))
        return data

    def names(self) -> list[str]:
        """Return all profile names found in any search directory."""
        found: set[str] = set()
        for base in self.search_dirs:
            directory = base / PROFILES_DIRNAME
            if not directory.is_dir():
                continue
            for path in directory.iterdir():
                if path.is_file() and path.suffix in (".yml", ".yaml"):
                    found.add(path.stem)
        return sorted(found)

    def profile_data(self, name: str) -> dict[str, Any]:
        """Return the merged fields for a profile, or {} if it does not exist."""
        if name == DEFAULT_PROFILE:
            return self._load_raw(DEFAULT_PROFILE)
        own = self._load_raw(name)
        if not own:
            return {}
        return deep_merge(self._load_raw(DEFAULT_PROFILE), own)

    def resolve(self, name: str) -> Profile:
        return Profile(name=name, data=self.profile_data(name))


__all__ = ["DEFAULT_PROFILE", "DEFAULT_SCRIPTS", "PROFILES_DIRNAME", "Profile", "ProfileResolver"]
