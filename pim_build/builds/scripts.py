"""Provisioning script resolution.

Scripts are referenced by name from a profile and resolved to
``scripts.d/<name>.sh``, searching the project directory before the global
configuration directory. Content is read once at resolution time so the
cache key and the upload see exactly the same bytes.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from pim_build.errors import ScriptNotFoundError

logger = logging.getLogger(__name__)

SCRIPTS_DIRNAME = "scripts.d"
SCRIPT_SUFFIX = ".sh"


@dataclass(frozen=True)
class ProvisioningScript:
    """A resolved provisioning script.

    Attributes:
        name: Name as referenced by the profile.
        path: File the content was read from.
        content: Script text.
    """

    name: str
    path: Path
    content: str
    digest: str = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "digest", hashlib.sha256(self.content.encode("utf-8")).hexdigest()
        )


class ScriptLoader:
    """Look up provisioning scripts by name.

    Args:
        search_dirs: Base directories, searched in order; each is expected
            to contain a ``scripts.d`` subdirectory.
    """

    def __init__(self, search_dirs: Sequence[Path]) -> None:
        self.search_dirs = [Path(d) for d in search_dirs]

    def find_script(self, name: str) -> Path | None:
        """Return the first matching script path, or None."""
        filename = name if name.endswith(SCRIPT_SUFFIX) else f"{name}{SCRIPT_SUFFIX}"
        for base in self.search_dirs:
            candidate = base / SCRIPTS_DIRNAME / filename
            if candidate.is_file():
                return candidate
        return None

    def load(self, name: str) -> ProvisioningScript:
        """Resolve and read one script.

        Raises:
            ScriptNotFoundError: If no search directory has the script.
        """
        path = self.find_script(name)
        if path is None:
            raise ScriptNotFoundError(name)
        logger.debug("Resolved script %s -> %s", name, path)
        return ProvisioningScript(name=name, path=path, content=path.read_text(encoding="utf-8"))

    def resolve_scripts(self, names: Iterable[str]) -> list[ProvisioningScript]:
        """Resolve scripts in order, failing on the first missing one."""
        return [self.load(name) for name in names]

    def status(self, names: Iterable[str]) -> list[tuple[str, Path | None]]:
        """Return (name, path-or-None) for each script without raising."""
        return [(name, self.find_script(name)) for name in names]


__all__ = ["SCRIPTS_DIRNAME", "ProvisioningScript", "ScriptLoader"]
