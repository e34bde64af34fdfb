"""Configuration settings for pim_build.

Two layers, both resolved once at the CLI entry point and then passed
explicitly into every component:

- ``Settings``: process-level settings from environment variables with the
  ``PIM_`` prefix (pydantic-settings). Locates the config, data and project
  directories.
- ``BuildConfig``: the ``build:`` section of ``pim.yml``, global file first
  and project file merged on top, over built-in defaults.

Configuration precedence: CLI flags > project pim.yml > global pim.yml >
env vars (directories only) > defaults.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from pim_build.errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILENAME = "pim.yml"


def _xdg_dir(var: str, fallback: str) -> Path:
    value = os.environ.get(var)
    return Path(value) if value else Path.home() / fallback


def _default_config_dir() -> Path:
    """Return the default global config directory."""
    return _xdg_dir("XDG_CONFIG_HOME", ".config") / "pim"


def _default_data_dir() -> Path:
    """Return the default data directory (images, ISOs)."""
    return _xdg_dir("XDG_DATA_HOME", ".local/share") / "pim"


class Settings(BaseSettings):
    """Process settings.

    Settings are loaded from environment variables with the PIM_ prefix.
    """

    model_config = SettingsConfigDict(
        env_prefix="PIM_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    config_dir: Path = Field(
        default_factory=_default_config_dir,
        description="Global configuration directory (pim.yml, profiles.d, scripts.d)",
    )
    data_dir: Path = Field(
        default_factory=_default_data_dir,
        description="Data directory holding images and ISOs",
    )
    project_dir: Path = Field(
        default_factory=Path.cwd,
        description="Project directory searched before the global directory",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="WARNING",
        description="Logging level",
    )


class SSHSettings(BaseModel):
    """SSH options used to reach the build VM."""

    model_config = ConfigDict(extra="ignore")

    user: str = "ansible"
    timeout: int = Field(default=1800, ge=1)
    port: int = Field(default=2222, ge=1, le=65535)


class RemoteBuilderConfig(BaseModel):
    """A named remote builder host."""

    model_config = ConfigDict(extra="allow")

    host: str
    port: int = 22
    user: str | None = None


class BuildConfig(BaseModel):
    """Effective build configuration.

    Attributes:
        image_dir: Directory holding built images and registry.yml.
        iso_dir: Directory where the ISO catalog expects downloaded ISOs.
        config_dir: Global configuration directory.
        project_dir: Project directory (searched first).
        disk_size: Default disk size passed to qemu-img.
        memory: Default guest memory in MiB.
        cpus: Default guest CPU count.
        ssh: SSH connection defaults.
        builders: Architecture -> "local" or remote builder name.
        remotes: Remote builder definitions by name.
    """

    model_config = ConfigDict(extra="ignore")

    image_dir: Path
    iso_dir: Path
    config_dir: Path
    project_dir: Path
    disk_size: str = "20G"
    memory: int = Field(default=2048, ge=128)
    cpus: int = Field(default=2, ge=1)
    ssh: SSHSettings = Field(default_factory=SSHSettings)
    builders: dict[str, str] = Field(default_factory=dict)
    remotes: dict[str, RemoteBuilderConfig] = Field(default_factory=dict)

    @property
    def ssh_user(self) -> str:
        return self.ssh.user

    @property
    def ssh_timeout(self) -> int:
        return self.ssh.timeout

    @property
    def ssh_port(self) -> int:
        return self.ssh.port

    def builder_for(self, arch: str) -> str | None:
        """Return the configured builder for an architecture, if any."""
        return self.builders.get(arch)

    @property
    def search_dirs(self) -> list[Path]:
        """Directories searched for profiles/scripts/templates, in order."""
        return [self.project_dir, self.config_dir]


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML mapping, tolerating absence and parse errors.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed mapping, or an empty dict if the file is missing, empty,
        not a mapping, or not valid YAML (a warning is logged).
    """
    if not path.is_file():
        return {}
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.warning("Failed to parse %s: %s", path, e)
        return {}
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Expected a YAML mapping in %s, got %s", path, type(data).__name__)
        return {}
    return data


def deep_merge(base: dict[str, Any] | None, overlay: dict[str, Any] | None) -> dict[str, Any]:
    """Recursively merge two mappings.

    Values from ``overlay`` win, except that ``None`` never replaces an
    existing value. Nested mappings are merged rather than replaced.
    """
    if base is None:
        return dict(overlay or {})
    if overlay is None:
        return dict(base)

    merged = dict(base)
    for key, new_val in overlay.items():
        old_val = merged.get(key)
        if new_val is None and key in merged:
            continue
        if isinstance(old_val, dict) and isinstance(new_val, dict):
            merged[key] = deep_merge(old_val, new_val)
        else:
            merged[key] = new_val
    return merged


def expand_dir(value: str | Path, data_home: Path) -> Path:
    """Expand $HOME, $XDG_DATA_HOME and ~ in a configured directory."""
    text = str(value)
    text = text.replace("$XDG_DATA_HOME", str(data_home))
    text = text.replace("$HOME", str(Path.home()))
    return Path(text).expanduser().resolve()


def load_runtime_config(config_dir: Path, project_dir: Path) -> dict[str, Any]:
    """Merge the global and project pim.yml files."""
    config = load_yaml_file(config_dir / CONFIG_FILENAME)
    return deep_merge(config, load_yaml_file(project_dir / CONFIG_FILENAME))


def load_build_config(settings: Settings) -> BuildConfig:
    """Build the effective BuildConfig for the given settings.

    Args:
        settings: Process settings locating the config/data/project dirs.

    Returns:
        Validated BuildConfig.

    Raises:
        ConfigurationError: If a pim.yml value fails validation.
    """
    runtime = load_runtime_config(settings.config_dir, settings.project_dir)
    build_section = runtime.get("build") or {}
    if not isinstance(build_section, dict):
        logger.warning("Ignoring non-mapping 'build' section in %s", CONFIG_FILENAME)
        build_section = {}

    data = dict(build_section)
    data_home = settings.data_dir.parent
    image_dir = data.pop("image_dir", None)
    iso_dir = data.pop("iso_dir", None)
    data.pop("config_dir", None)
    data.pop("project_dir", None)

    try:
        return BuildConfig(
            image_dir=expand_dir(image_dir, data_home)
            if image_dir
            else settings.data_dir / "images",
            iso_dir=expand_dir(iso_dir, data_home) if iso_dir else settings.data_dir / "isos",
            config_dir=settings.config_dir,
            project_dir=settings.project_dir,
            **data,
        )
    except ValidationError as e:
        raise ConfigurationError(f"Invalid {CONFIG_FILENAME}: {e}") from e


def get_settings() -> Settings:
    """Get the process settings.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "BuildConfig",
    "RemoteBuilderConfig",
    "SSHSettings",
    "Settings",
    "deep_merge",
    "get_settings",
    "load_build_config",
    "load_runtime_config",
    "load_yaml_file",
    "print_settings_json",
]
