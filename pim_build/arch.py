"""Architecture normalization and builder routing.

This module handles:
- Folding architecture aliases (aarch64, amd64) to canonical tokens
- Detecting the host architecture
- Selecting a builder (local or a named remote) for a target architecture

Routing never falls back silently: a local builder on a mismatched host,
an unknown remote name, or a missing mapping for a foreign architecture are
all configuration errors.
"""

from __future__ import annotations

import logging
import platform
from dataclasses import dataclass

from pim_build.config import BuildConfig, RemoteBuilderConfig
from pim_build.errors import BuilderConfigurationError, UnsupportedArchitectureError
from pim_build.types import Architecture, BuilderKind

logger = logging.getLogger(__name__)

LOCAL_BUILDER = "local"

ARCH_ALIASES: dict[str, str] = {
    "arm64": Architecture.ARM64.value,
    "aarch64": Architecture.ARM64.value,
    "x86_64": Architecture.X86_64.value,
    "amd64": Architecture.X86_64.value,
}


def normalize(arch: str | Architecture) -> str:
    """Normalize an architecture name to its canonical token.

    Unknown names are lower-cased and returned unchanged, so normalization
    is idempotent for every input.

    Args:
        arch: Architecture name or alias.

    Returns:
        Canonical architecture string.
    """
    raw = arch.value if isinstance(arch, Architecture) else str(arch)
    key = raw.strip().lower()
    return ARCH_ALIASES.get(key, key)


def to_architecture(arch: str | Architecture) -> Architecture:
    """Convert a name or alias to an Architecture member.

    Raises:
        UnsupportedArchitectureError: If the architecture is not supported.
    """
    normalized = normalize(arch)
    try:
        return Architecture(normalized)
    except ValueError:
        raise UnsupportedArchitectureError(normalized) from None


def host_arch() -> str:
    """Return the normalized architecture of the running host."""
    return normalize(platform.machine())


@dataclass(frozen=True)
class BuilderSelection:
    """Outcome of builder routing.

    Attributes:
        kind: Local or remote execution.
        arch: Canonical target architecture.
        name: Remote builder name (None for local builds).
        remote: Remote builder definition (None for local builds).
    """

    kind: BuilderKind
    arch: str
    name: str | None = None
    remote: RemoteBuilderConfig | None = None

    def describe(self) -> str:
        if self.kind is BuilderKind.REMOTE:
            return f"remote ({self.name})"
        return self.kind.value


class ArchitectureRouter:
    """Map target architectures to builders.

    Args:
        config: Effective build configuration (builders/remotes mappings).
        host: Host architecture; normalized on construction.
    """

    def __init__(self, config: BuildConfig, host: str) -> None:
        self._config = config
        self.host_arch = normalize(host)

    def can_build_locally(self, target: str) -> bool:
        return normalize(target) == self.host_arch

    def configured_builder(self, target: str) -> str | None:
        return self._config.builder_for(normalize(target))

    def select_builder(self, target: str) -> BuilderSelection:
        """Select the builder for a target architecture.

        Args:
            target: Target architecture name or alias.

        Returns:
            BuilderSelection describing where the build runs.

        Raises:
            BuilderConfigurationError: If no usable builder exists.
        """
        arch = normalize(target)
        configured = self.configured_builder(arch)

        if configured is None:
            if self.can_build_locally(arch):
                return BuilderSelection(kind=BuilderKind.LOCAL, arch=arch)
            raise BuilderConfigurationError(
                f"No builder configured for {arch} architecture "
                f"(host is {self.host_arch})"
            )

        if configured == LOCAL_BUILDER:
            if self.can_build_locally(arch):
                return BuilderSelection(kind=BuilderKind.LOCAL, arch=arch)
            raise BuilderConfigurationError(
                f"Cannot build {arch} locally on {self.host_arch} host"
            )

        remote = self._config.remotes.get(configured)
        if remote is None:
            raise BuilderConfigurationError(f"Unknown remote builder: {configured}")

        logger.debug("Routing %s to remote builder %s", arch, configured)
        return BuilderSelection(
            kind=BuilderKind.REMOTE, arch=arch, name=configured, remote=remote
        )

    def describe(self, target: str) -> str:
        """Human-readable builder status for one architecture."""
        configured = self.configured_builder(target) or LOCAL_BUILDER
        if configured == LOCAL_BUILDER:
            if self.can_build_locally(target):
                return "local (available)"
            return "local (unavailable - wrong arch)"
        if configured not in self._config.remotes:
            return f"remote: {configured} (not defined)"
        return f"remote: {configured}"


__all__ = [
    "ARCH_ALIASES",
    "ArchitectureRouter",
    "BuilderSelection",
    "host_arch",
    "normalize",
    "to_architecture",
]
