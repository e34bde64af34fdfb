"""Build manager: resolution, caching and dispatch.

This module handles:
- Resolving profile, architecture, builder, ISO and scripts for a request
- Computing the cache key and short-circuiting on a cache hit
- Dispatching cache misses to the routed builder
- Producing a dry-run plan without side effects

Resolution order for a build:
1. Normalize the architecture (unknown names are configuration errors)
2. Load the profile and check it supports the architecture
3. Route to a builder (raises before anything is created)
4. Check host tools for local builds
5. Resolve the ISO (must be downloaded) and the scripts
6. Compute the cache key and consult the registry
7. Build on a miss (or when forced)
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pim_build.arch import ArchitectureRouter, BuilderSelection, normalize, to_architecture
from pim_build.builds.cache_key import cached_image, compute_cache_key
from pim_build.builds.orchestrator import FINALIZE_COMMANDS, BuildOptions, Builder, create_builder
from pim_build.builds.registry import Registry
from pim_build.builds.scripts import ProvisioningScript, ScriptLoader
from pim_build.builds.session import Reporter
from pim_build.config import BuildConfig
from pim_build.errors import (
    MissingToolsError,
    PimBuildError,
    ProfileNotFoundError,
    UnsupportedArchitectureError,
)
from pim_build.profiles.resolver import DEFAULT_PROFILE, Profile, ProfileResolver
from pim_build.qemu.deps import check_dependencies
from pim_build.sources.resolver import SourceImageResolver
from pim_build.types import Architecture, BuilderKind, BuildOutcome, SourceImage

logger = logging.getLogger(__name__)

BuilderFactory = Callable[..., Builder]


@dataclass
class ScriptStatus:
    """Resolution status of one provisioning script in a plan."""

    name: str
    path: Path | None

    @property
    def found(self) -> bool:
        return self.path is not None


@dataclass
class BuildPlan:
    """Everything a build would do, computed without side effects.

    Attributes:
        profile: Profile name.
        arch: Normalized target architecture.
        host_arch: Host architecture.
        builder: Builder description, or None if routing failed.
        image_dir: Directory the image would be written to.
        disk_size: Effective disk size.
        memory: Effective memory in MiB.
        cpus: Effective CPU count.
        ssh_timeout: Install and SSH wait budget in seconds.
        source: Resolved ISO, or None if none is catalogued.
        scripts: Per-script resolution status.
        cache_key: Cache key, or None if it could not be computed.
        cached_path: Cached image when the plan is a cache hit.
        missing_tools: Host tools missing from PATH.
        warnings: Problems that would make the real build fail.
    """

    profile: str
    arch: str
    host_arch: str
    builder: str | None
    image_dir: Path
    disk_size: str
    memory: int
    cpus: int
    ssh_timeout: int
    source: SourceImage | None = None
    scripts: list[ScriptStatus] = field(default_factory=list)
    cache_key: str | None = None
    cached_path: Path | None = None
    missing_tools: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def cache_hit(self) -> bool:
        return self.cached_path is not None

    @property
    def steps(self) -> list[str]:
        """Ordered build steps, for display."""
        return [
            f"Create disk image ({self.disk_size})",
            "Start answer-file server",
            "Extract installer kernel and initrd from ISO",
            "Boot installer with preseed URL (VM powers off when done)",
            f"Wait for installation (timeout: {self.ssh_timeout}s)",
            "Boot installed system from disk",
            f"Wait for SSH (timeout: {self.ssh_timeout}s)",
            f"Run provisioning scripts ({len(self.scripts)})",
            f"Finalize image ({len(FINALIZE_COMMANDS)} cleanup commands)",
            "Shutdown VM",
            "Register in registry",
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "profile": self.profile,
            "arch": self.arch,
            "host_arch": self.host_arch,
            "builder": self.builder,
            "image_dir": str(self.image_dir),
            "disk_size": self.disk_size,
            "memory": self.memory,
            "cpus": self.cpus,
            "ssh_timeout": self.ssh_timeout,
            "source_image": {
                "key": self.source.key,
                "path": str(self.source.path),
                "exists": self.source.exists,
                "checksum": self.source.checksum,
            }
            if self.source
            else None,
            "scripts": [
                {"name": s.name, "path": str(s.path) if s.path else None} for s in self.scripts
            ],
            "cache_key": self.cache_key,
            "cache_hit": self.cache_hit,
            "cached_path": str(self.cached_path) if self.cached_path else None,
            "missing_tools": self.missing_tools,
            "warnings": self.warnings,
            "steps": self.steps,
        }


class BuildManager:
    """Resolve build requests and run them.

    Args:
        config: Effective build configuration.
        host_arch: Host architecture (normalized internally).
        profiles: Profile resolver.
        sources: ISO resolver.
        scripts: Provisioning script loader.
        registry: Image registry.
        builder_factory: Creates a builder for a routing decision.
        dependency_check: Returns missing host tools for an architecture.
    """

    def __init__(
        self,
        config: BuildConfig,
        host_arch: str,
        profiles: ProfileResolver,
        sources: SourceImageResolver,
        scripts: ScriptLoader,
        registry: Registry,
        builder_factory: BuilderFactory = create_builder,
        dependency_check: Callable[[Architecture | None], list[str]] = check_dependencies,
    ) -> None:
        self.config = config
        self.router = ArchitectureRouter(config, host_arch)
        self.profiles = profiles
        self.sources = sources
        self.scripts = scripts
        self.registry = registry
        self.builder_factory = builder_factory
        self.dependency_check = dependency_check

    @classmethod
    def from_config(cls, config: BuildConfig, host_arch: str, **kwargs: Any) -> BuildManager:
        """Create a manager with the default resolvers for a configuration."""
        return cls(
            config=config,
            host_arch=host_arch,
            profiles=ProfileResolver(config.search_dirs),
            sources=SourceImageResolver(config.search_dirs, config.iso_dir),
            scripts=ScriptLoader(config.search_dirs),
            registry=Registry(config.image_dir),
            **kwargs,
        )

    @property
    def host_arch(self) -> str:
        return self.router.host_arch

    # Resolution steps

    def load_profile(self, name: str) -> Profile:
        """Resolve a profile; an unknown name other than "default" is an error.

        Raises:
            ProfileNotFoundError: If the profile does not exist.
        """
        profile = self.profiles.resolve(name)
        if profile.is_empty and name != DEFAULT_PROFILE:
            raise ProfileNotFoundError(name, self.profiles.names())
        return profile

    @staticmethod
    def verify_architecture(profile: Profile, arch: str) -> None:
        """Check the profile lists the architecture, when it lists any.

        Raises:
            UnsupportedArchitectureError: If the profile excludes the arch.
        """
        supported = profile.architectures
        if supported is None:
            return
        if normalize(arch) not in {normalize(a) for a in supported}:
            raise UnsupportedArchitectureError(arch, supported)

    def check_tools(self, arch: Architecture) -> None:
        missing = self.dependency_check(arch)
        if missing:
            raise MissingToolsError(missing)

    def compute_cache_key(
        self,
        profile: Profile,
        scripts: list[ProvisioningScript],
        source: SourceImage,
        arch: str,
    ) -> str:
        return compute_cache_key(profile.data, scripts, source.checksum, arch)

    # Operations

    def build(
        self,
        profile_name: str,
        arch: str | None = None,
        force: bool = False,
        options: BuildOptions | None = None,
        reporter: Reporter | None = None,
        on_output: Callable[[str, str], None] | None = None,
    ) -> BuildOutcome:
        """Build an image, or return the cached one.

        Args:
            profile_name: Profile to build.
            arch: Target architecture (defaults to the host's).
            force: Rebuild even when a cached image matches.
            options: VNC/console options for local builds.
            reporter: Progress callback (level, message).
            on_output: Provisioning script output callback.

        Returns:
            BuildOutcome with the image path and whether it was cached.

        Raises:
            PimBuildError: On any configuration, dependency or build failure.
        """

        def report(message: str, level: str = "info") -> None:
            logger.info(message)
            if reporter is not None:
                reporter(level, message)

        target = to_architecture(arch or self.host_arch)
        arch_name = target.value

        profile = self.load_profile(profile_name)
        self.verify_architecture(profile, arch_name)
        selection = self.router.select_builder(arch_name)

        if selection.kind is BuilderKind.LOCAL:
            self.check_tools(target)

        source = self.sources.resolve(arch_name)
        scripts = self.scripts.resolve_scripts(profile.scripts)
        cache_key = self.compute_cache_key(profile, scripts, source, arch_name)

        report(f"Profile:    {profile_name}")
        report(f"Arch:       {arch_name}")
        report(f"Builder:    {selection.describe()}")
        report(f"ISO:        {source.key}")
        report(f"Scripts:    {', '.join(s.name for s in scripts) or '(none)'}")
        report(f"Cache key:  {cache_key}")

        if not force:
            cached = cached_image(self.registry, profile_name, arch_name, cache_key)
            if cached is not None:
                report(f"Cache hit: {cached}", "success")
                return BuildOutcome(image_path=cached, cache_key=cache_key, cache_hit=True)

        builder = self._create_builder(selection, profile, source, options, reporter, on_output)
        image_path = builder.build(cache_key, scripts)
        return BuildOutcome(image_path=image_path, cache_key=cache_key, cache_hit=False)

    def _create_builder(
        self,
        selection: BuilderSelection,
        profile: Profile,
        source: SourceImage,
        options: BuildOptions | None,
        reporter: Reporter | None,
        on_output: Callable[[str, str], None] | None,
    ) -> Builder:
        kwargs: dict[str, Any] = {}
        if selection.kind is BuilderKind.LOCAL:
            kwargs = {"options": options, "reporter": reporter, "on_output": on_output}
        return self.builder_factory(
            selection,
            config=self.config,
            profile=profile,
            source=source,
            registry=self.registry,
            **kwargs,
        )

    def dry_run(self, profile_name: str, arch: str | None = None) -> BuildPlan:
        """Resolve everything a build would use, without side effects.

        Never raises for resolution problems: each one becomes a warning
        on the returned plan. No disk image, process or registry write is
        made.
        """
        arch_name = normalize(arch or self.host_arch)
        warnings: list[str] = []

        target: Architecture | None
        try:
            target = to_architecture(arch_name)
        except UnsupportedArchitectureError as e:
            warnings.append(e.message)
            target = None

        missing_tools = self.dependency_check(target)
        if missing_tools:
            warnings.append(f"Missing dependencies: {', '.join(missing_tools)}")

        try:
            profile = self.load_profile(profile_name)
        except ProfileNotFoundError as e:
            warnings.append(e.message)
            profile = Profile(name=profile_name)

        supported = profile.architectures
        if supported is not None and arch_name not in {normalize(a) for a in supported}:
            warnings.append(
                f"{arch_name} not in profile's architectures: {', '.join(supported)}"
            )

        builder: str | None
        try:
            builder = self.router.select_builder(arch_name).describe()
        except PimBuildError as e:
            warnings.append(e.message)
            builder = None

        source: SourceImage | None
        try:
            source = self.sources.find(arch_name)
            if not source.exists:
                warnings.append(f"ISO not downloaded: {source.key} (expected at {source.path})")
        except PimBuildError as e:
            warnings.append(e.message)
            source = None

        statuses = [ScriptStatus(name, path) for name, path in self.scripts.status(profile.scripts)]
        for status in statuses:
            if not status.found:
                warnings.append(f"Script not found: {status.name}.sh")

        plan = BuildPlan(
            profile=profile_name,
            arch=arch_name,
            host_arch=self.host_arch,
            builder=builder,
            image_dir=self.config.image_dir,
            disk_size=profile.disk_size or self.config.disk_size,
            memory=profile.memory or self.config.memory,
            cpus=profile.cpus or self.config.cpus,
            ssh_timeout=profile.ssh_timeout or self.config.ssh_timeout,
            source=source,
            scripts=statuses,
            missing_tools=missing_tools,
            warnings=warnings,
        )

        if source is not None:
            try:
                scripts = [self.scripts.load(s.name) for s in statuses if s.found]
                plan.cache_key = self.compute_cache_key(profile, scripts, source, arch_name)
            except (OSError, PimBuildError) as e:
                warnings.append(f"Cannot compute cache key: {e}")
            if plan.cache_key is not None:
                plan.cached_path = cached_image(
                    self.registry, profile_name, arch_name, plan.cache_key
                )

        return plan


__all__ = ["BuildManager", "BuildPlan", "ScriptStatus"]
