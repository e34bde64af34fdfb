"""Error taxonomy for pim_build.

Every error raised by core modules derives from PimBuildError and carries
a stable ``code`` so that callers (the CLI, tests) can handle failure
classes without matching on message text:

- configuration: unknown profile, unsupported architecture, no builder
- dependency: missing host tools, ISO not downloaded, firmware absent
- extraction: kernel/initrd not found in the boot medium
- timeout: install never finished, SSH never came up
- provisioning: a script exited non-zero

Cache and registry read failures are deliberately absent: they degrade to
a cache miss instead of raising.
"""

from __future__ import annotations

# Error code constants
CONFIGURATION_ERROR = "configuration"
DEPENDENCY_ERROR = "dependency"
EXTRACTION_ERROR = "extraction"
TIMEOUT_ERROR = "timeout"
PROVISIONING_ERROR = "provisioning"
DISK_IMAGE_ERROR = "disk_image"
VM_ERROR = "vm_error"
REMOTE_UNSUPPORTED = "remote_unsupported"
BUILD_ERROR = "build_failed"


class PimBuildError(Exception):
    """Base error for all build operations."""

    def __init__(self, message: str, code: str = BUILD_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.code = code


class ConfigurationError(PimBuildError):
    """Invalid or incomplete configuration; the build never starts."""

    def __init__(self, message: str, code: str = CONFIGURATION_ERROR) -> None:
        super().__init__(message, code=code)


class ProfileNotFoundError(ConfigurationError):
    """The requested profile does not exist."""

    def __init__(self, profile: str, available: list[str] | None = None) -> None:
        message = f"Profile not found: {profile}"
        if available:
            message += f" (available: {', '.join(available)})"
        super().__init__(message)
        self.profile = profile
        self.available = available or []


class UnsupportedArchitectureError(ConfigurationError):
    """Architecture is unknown, or not listed by the profile."""

    def __init__(self, arch: str, supported: list[str] | None = None) -> None:
        if supported:
            message = (
                f"Profile does not support {arch} "
                f"(supported architectures: {', '.join(supported)})"
            )
        else:
            message = f"Unsupported architecture: {arch}"
        super().__init__(message)
        self.arch = arch
        self.supported = supported or []


class BuilderConfigurationError(ConfigurationError):
    """No usable builder for the requested architecture."""


class ScriptNotFoundError(ConfigurationError):
    """A provisioning script could not be resolved."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Script not found: {name}.sh")
        self.name = name


class DependencyError(PimBuildError):
    """A required host-side dependency is missing."""

    def __init__(self, message: str, code: str = DEPENDENCY_ERROR) -> None:
        super().__init__(message, code=code)


class MissingToolsError(DependencyError):
    """Required executables are not on PATH."""

    def __init__(self, missing: list[str]) -> None:
        super().__init__(f"Missing dependencies: {', '.join(missing)}")
        self.missing = missing


class SourceImageNotFoundError(DependencyError):
    """No ISO is catalogued for the architecture."""

    def __init__(self, arch: str, available: list[str] | None = None) -> None:
        super().__init__(f"No ISO found for architecture: {arch}")
        self.arch = arch
        self.available = available or []


class SourceImageNotDownloadedError(DependencyError):
    """The ISO is catalogued but not present on disk."""

    def __init__(self, key: str, path: str) -> None:
        super().__init__(f"ISO not downloaded: {key} (expected at {path})")
        self.key = key
        self.path = path


class FirmwareNotFoundError(DependencyError):
    """UEFI firmware code image is not installed."""

    def __init__(self, searched: list[str]) -> None:
        super().__init__(
            "EFI firmware (code) not found; searched: " + ", ".join(searched)
        )
        self.searched = searched


class ExtractionError(PimBuildError):
    """Installer kernel or initrd could not be extracted."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=EXTRACTION_ERROR)


class BuildTimeoutError(PimBuildError):
    """A bounded wait elapsed."""

    def __init__(self, message: str, timeout: float) -> None:
        super().__init__(message, code=TIMEOUT_ERROR)
        self.timeout = timeout


class InstallTimeoutError(BuildTimeoutError):
    """The installer VM did not power off in time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Installation timed out after {timeout:g}s", timeout)


class ShellTimeoutError(BuildTimeoutError):
    """SSH never became ready."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Timed out waiting for SSH after {timeout:g}s", timeout)


class ProvisioningError(PimBuildError):
    """A provisioning or finalization command failed."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message, code=PROVISIONING_ERROR)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class DiskImageError(PimBuildError):
    """qemu-img reported a failure."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=DISK_IMAGE_ERROR)


class VMError(PimBuildError):
    """QEMU process could not be started or controlled."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code=VM_ERROR)


class RemoteBuildNotSupportedError(PimBuildError):
    """Remote builders are routed but not implemented."""

    def __init__(self, name: str, host: str | None = None) -> None:
        where = f" ({host})" if host else ""
        super().__init__(
            f"Remote builds are not yet supported: builder '{name}'{where}",
            code=REMOTE_UNSUPPORTED,
        )
        self.name = name
        self.host = host


class BuildError(PimBuildError):
    """Generic build pipeline failure."""


__all__ = [
    "BuildError",
    "BuildTimeoutError",
    "BuilderConfigurationError",
    "ConfigurationError",
    "DependencyError",
    "DiskImageError",
    "ExtractionError",
    "FirmwareNotFoundError",
    "InstallTimeoutError",
    "MissingToolsError",
    "PimBuildError",
    "ProfileNotFoundError",
    "ProvisioningError",
    "RemoteBuildNotSupportedError",
    "ScriptNotFoundError",
    "ShellTimeoutError",
    "SourceImageNotDownloadedError",
    "SourceImageNotFoundError",
    "UnsupportedArchitectureError",
    "VMError",
]
