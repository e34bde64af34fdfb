"""Tests for architecture normalization and builder routing."""

import pytest

from pim_build.arch import ArchitectureRouter, BuilderSelection, normalize, to_architecture
from pim_build.config import RemoteBuilderConfig
from pim_build.errors import (
    CONFIGURATION_ERROR,
    BuilderConfigurationError,
    UnsupportedArchitectureError,
)
from pim_build.types import Architecture, BuilderKind


class TestNormalize:
    """Tests for normalize()."""

    @pytest.mark.parametrize(
        ("alias", "canonical"),
        [
            ("aarch64", "arm64"),
            ("arm64", "arm64"),
            ("amd64", "x86_64"),
            ("x86_64", "x86_64"),
            ("AARCH64", "arm64"),
            (" amd64 ", "x86_64"),
        ],
    )
    def test_aliases_fold_to_canonical(self, alias, canonical) -> None:
        """Both aliases of a family should map to the same token."""
        assert normalize(alias) == canonical

    @pytest.mark.parametrize("token", ["arm64", "x86_64", "riscv64", "AArch64", "Amd64"])
    def test_idempotent(self, token) -> None:
        """Normalizing twice should equal normalizing once."""
        assert normalize(normalize(token)) == normalize(token)

    def test_unknown_is_lowercased(self) -> None:
        """Unknown names pass through lower-cased."""
        assert normalize("RISCV64") == "riscv64"

    def test_accepts_enum(self) -> None:
        """Architecture members normalize to their value."""
        assert normalize(Architecture.ARM64) == "arm64"


class TestToArchitecture:
    """Tests for to_architecture()."""

    def test_alias(self) -> None:
        assert to_architecture("aarch64") is Architecture.ARM64

    def test_unknown_raises_configuration_error(self) -> None:
        """Unsupported architectures are configuration errors."""
        with pytest.raises(UnsupportedArchitectureError) as exc_info:
            to_architecture("riscv64")
        assert exc_info.value.code == CONFIGURATION_ERROR
        assert "riscv64" in exc_info.value.message


class TestArchitectureRouter:
    """Tests for ArchitectureRouter.select_builder()."""

    def test_unmapped_native_arch_builds_locally(self, build_config) -> None:
        """No mapping and matching host should select the local builder."""
        router = ArchitectureRouter(build_config, "aarch64")
        selection = router.select_builder("arm64")
        assert selection == BuilderSelection(kind=BuilderKind.LOCAL, arch="arm64")

    def test_unmapped_foreign_arch_raises(self, build_config) -> None:
        """No mapping for a foreign architecture should be an error."""
        router = ArchitectureRouter(build_config, "x86_64")
        with pytest.raises(BuilderConfigurationError, match="No builder configured for arm64"):
            router.select_builder("arm64")

    def test_explicit_local_on_wrong_host_raises(self, build_config) -> None:
        """A "local" mapping must not silently route elsewhere."""
        build_config.builders = {"x86_64": "local"}
        router = ArchitectureRouter(build_config, "arm64")
        with pytest.raises(BuilderConfigurationError, match="Cannot build x86_64 locally"):
            router.select_builder("amd64")

    def test_remote_mapping(self, build_config) -> None:
        """A named remote should be selected with its definition."""
        remote = RemoteBuilderConfig(host="builder.example", user="ci")
        build_config.builders = {"x86_64": "big-box"}
        build_config.remotes = {"big-box": remote}
        router = ArchitectureRouter(build_config, "arm64")

        selection = router.select_builder("x86_64")

        assert selection.kind is BuilderKind.REMOTE
        assert selection.name == "big-box"
        assert selection.remote == remote
        assert selection.describe() == "remote (big-box)"

    def test_unknown_remote_raises(self, build_config) -> None:
        build_config.builders = {"x86_64": "missing"}
        router = ArchitectureRouter(build_config, "arm64")
        with pytest.raises(BuilderConfigurationError, match="Unknown remote builder: missing"):
            router.select_builder("x86_64")

    def test_describe(self, build_config) -> None:
        """describe() should summarize each architecture for status output."""
        build_config.builders = {"x86_64": "big-box"}
        build_config.remotes = {"big-box": RemoteBuilderConfig(host="h")}
        router = ArchitectureRouter(build_config, "arm64")

        assert router.describe("arm64") == "local (available)"
        assert router.describe("x86_64") == "remote: big-box"

        build_config.builders = {}
        assert router.describe("x86_64") == "local (unavailable - wrong arch)"
