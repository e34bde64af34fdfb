"""Tests for shared types and the error taxonomy."""

from pathlib import Path

import pytest

from pim_build import errors
from pim_build.types import (
    BUILD_STATE_ORDER,
    Acceleration,
    Architecture,
    BuilderKind,
    BuildState,
    CommandResult,
    SourceImage,
)


class TestEnums:
    """Test enum definitions."""

    def test_architecture_values(self) -> None:
        """Architecture should hold the canonical tokens."""
        assert {a.value for a in Architecture} == {"arm64", "x86_64"}

    def test_builder_kind_values(self) -> None:
        """BuilderKind should be local or remote."""
        assert BuilderKind.LOCAL.value == "local"
        assert BuilderKind.REMOTE.value == "remote"

    def test_acceleration_order(self) -> None:
        """Acceleration members should be listed most preferred first."""
        assert list(Acceleration) == [
            Acceleration.HARDWARE,
            Acceleration.EMULATED,
            Acceleration.GENERIC,
        ]

    def test_state_order(self) -> None:
        """The happy path should start pending, end registered and exclude failed."""
        assert BUILD_STATE_ORDER[0] is BuildState.PENDING
        assert BUILD_STATE_ORDER[-1] is BuildState.REGISTERED
        assert BuildState.FAILED not in BUILD_STATE_ORDER
        assert len(BUILD_STATE_ORDER) == len(BuildState) - 1


class TestDataclasses:
    """Test small value types."""

    def test_source_image_exists(self, tmp_path: Path) -> None:
        """exists should track the ISO file."""
        source = SourceImage(key="k", arch="arm64", path=tmp_path / "k.iso", checksum="")
        assert not source.exists
        source.path.write_bytes(b"iso")
        assert source.exists

    def test_command_result_ok(self) -> None:
        """ok should reflect a zero exit code."""
        assert CommandResult("", "", 0).ok
        assert not CommandResult("", "boom", 1).ok


class TestErrors:
    """Test error codes."""

    @pytest.mark.parametrize(
        ("error", "code"),
        [
            (errors.ProfileNotFoundError("x"), errors.CONFIGURATION_ERROR),
            (errors.UnsupportedArchitectureError("riscv64"), errors.CONFIGURATION_ERROR),
            (errors.BuilderConfigurationError("no builder"), errors.CONFIGURATION_ERROR),
            (errors.MissingToolsError(["bsdtar"]), errors.DEPENDENCY_ERROR),
            (errors.SourceImageNotDownloadedError("k", "/p"), errors.DEPENDENCY_ERROR),
            (errors.FirmwareNotFoundError(["/a"]), errors.DEPENDENCY_ERROR),
            (errors.ExtractionError("x"), errors.EXTRACTION_ERROR),
            (errors.InstallTimeoutError(60), errors.TIMEOUT_ERROR),
            (errors.ShellTimeoutError(60), errors.TIMEOUT_ERROR),
            (errors.ProvisioningError("x", exit_code=1), errors.PROVISIONING_ERROR),
            (errors.RemoteBuildNotSupportedError("box"), errors.REMOTE_UNSUPPORTED),
            (errors.BuildError("x"), errors.BUILD_ERROR),
        ],
    )
    def test_codes(self, error: errors.PimBuildError, code: str) -> None:
        """Every error should carry its failure-class code."""
        assert isinstance(error, errors.PimBuildError)
        assert error.code == code

    def test_profile_not_found_lists_available(self) -> None:
        """The message should name the available profiles."""
        error = errors.ProfileNotFoundError("nope", ["default", "web"])
        assert error.message == "Profile not found: nope (available: default, web)"

    def test_timeout_message(self) -> None:
        """Timeouts should report the budget."""
        assert errors.InstallTimeoutError(1800).message == "Installation timed out after 1800s"
