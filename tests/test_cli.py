"""Smoke tests for the CLI.

These tests verify CLI behaviour against a temporary configuration tree,
without requiring QEMU or network access.
"""

import json
from pathlib import Path
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from pim_build import __version__
from pim_build.builds.registry import Registry
from pim_build.cli import app, human_size
from pim_build.errors import VMError

runner = CliRunner()


@pytest.fixture
def env(tmp_path: Path) -> dict[str, str]:
    """Environment pointing pim at a temporary configuration tree."""
    config_dir = tmp_path / "config"
    (config_dir / "profiles.d").mkdir(parents=True)
    (config_dir / "scripts.d").mkdir()
    (config_dir / "isos.d").mkdir()
    (config_dir / "profiles.d" / "default.yml").write_text(
        yaml.safe_dump({"hostname": "pim", "username": "ansible"})
    )
    (config_dir / "scripts.d" / "base.sh").write_text("#!/bin/sh\n")
    (config_dir / "scripts.d" / "finalize.sh").write_text("#!/bin/sh\n")
    (config_dir / "isos.d" / "debian.yml").write_text(
        yaml.safe_dump(
            {"debian-12-arm64": {"architecture": "arm64", "checksum": "sha256:abc"}}
        )
    )
    project_dir = tmp_path / "project"
    project_dir.mkdir()
    return {
        "PIM_CONFIG_DIR": str(config_dir),
        "PIM_DATA_DIR": str(tmp_path / "data"),
        "PIM_PROJECT_DIR": str(project_dir),
        "PIM_LOG_LEVEL": "WARNING",
    }


@pytest.fixture
def registry(tmp_path: Path, env: dict[str, str]) -> Registry:
    """Registry in the CLI's image directory with one present and one missing image."""
    image_dir = tmp_path / "data" / "images"
    image_dir.mkdir(parents=True)
    present = image_dir / "default-arm64.qcow2"
    present.write_bytes(b"x" * 2048)
    gone = image_dir / "web-arm64.qcow2"
    gone.write_bytes(b"x")
    registry = Registry(image_dir)
    registry.register("default", "arm64", present, "debian-12-arm64", "0123456789abcdef")
    registry.register("web", "arm64", gone, "debian-12-arm64", "fedcba9876543210")
    gone.unlink()
    return registry


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Build provisioned VM images" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_build_help(self) -> None:
        """build --help should list the subcommands."""
        result = runner.invoke(app, ["build", "--help"])
        assert result.exit_code == 0
        for command in ("run", "list", "show", "clean", "status"):
            assert command in result.stdout


class TestConfigCommand:
    """Test config command."""

    def test_config_json(self, env: dict[str, str]) -> None:
        """config --json should include settings and the build section."""
        result = runner.invoke(app, ["config", "--json"], env=env)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["config_dir"] == env["PIM_CONFIG_DIR"]
        assert data["build"]["disk_size"] == "20G"
        assert data["build"]["ssh"]["user"] == "ansible"

    def test_config_text(self, env: dict[str, str]) -> None:
        """config should print the effective configuration."""
        result = runner.invoke(app, ["config"], env=env)
        assert result.exit_code == 0
        assert "Effective Configuration" in result.stdout
        assert "Disk size" in result.stdout


class TestBuildRun:
    """Test build run command."""

    def test_dry_run(self, env: dict[str, str]) -> None:
        """A dry run should print the plan without building."""
        result = runner.invoke(app, ["build", "run", "default", "--arch", "arm64", "--dry-run"], env=env)
        assert result.exit_code == 0
        assert "Dry run: default for arm64" in result.stdout
        assert "Build steps" in result.stdout
        assert "ISO not downloaded" in result.stdout

    def test_dry_run_json(self, env: dict[str, str]) -> None:
        """--dry-run --json should emit the plan as JSON."""
        result = runner.invoke(
            app, ["build", "run", "default", "--arch", "aarch64", "--dry-run", "--json"], env=env
        )
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["arch"] == "arm64"
        assert data["source_image"]["key"] == "debian-12-arm64"
        assert len(data["cache_key"]) == 16
        assert data["cache_hit"] is False

    def test_unknown_profile_fails(self, env: dict[str, str]) -> None:
        """A missing profile should exit 1 with an error."""
        result = runner.invoke(app, ["build", "run", "nope", "--arch", "arm64"], env=env)
        assert result.exit_code == 1
        assert "Profile not found: nope" in result.stdout

    def test_unsupported_arch_fails(self, env: dict[str, str]) -> None:
        """An unknown architecture should exit 1."""
        result = runner.invoke(app, ["build", "run", "default", "--arch", "riscv64"], env=env)
        assert result.exit_code == 1
        assert "Unsupported architecture" in result.stdout


class TestBuildList:
    """Test build list command."""

    def test_empty(self, env: dict[str, str]) -> None:
        """An empty registry should say so."""
        result = runner.invoke(app, ["build", "list"], env=env)
        assert result.exit_code == 0
        assert "No images built yet" in result.stdout

    def test_keys(self, env: dict[str, str], registry: Registry) -> None:
        """Plain list should print one key per image."""
        result = runner.invoke(app, ["build", "list"], env=env)
        assert result.exit_code == 0
        assert "default-arm64" in result.stdout
        assert "web-arm64" in result.stdout

    def test_long(self, env: dict[str, str], registry: Registry) -> None:
        """--long should show a table with file status."""
        result = runner.invoke(app, ["build", "list", "--long"], env=env)
        assert result.exit_code == 0
        assert "PROFILE" in result.stdout
        assert "OK" in result.stdout
        assert "MISSING" in result.stdout

    def test_json(self, env: dict[str, str], registry: Registry) -> None:
        """--json should emit registry entries."""
        result = runner.invoke(app, ["build", "list", "--json"], env=env)
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert {entry["profile"] for entry in data} == {"default", "web"}


class TestBuildShow:
    """Test build show command."""

    def test_show(self, env: dict[str, str], registry: Registry) -> None:
        """show should print the entry details."""
        result = runner.invoke(app, ["build", "show", "default", "--arch", "aarch64"], env=env)
        assert result.exit_code == 0
        assert "0123456789abcdef" in result.stdout
        assert "debian-12-arm64" in result.stdout

    def test_show_missing(self, env: dict[str, str]) -> None:
        """show for an unknown image should exit 1."""
        result = runner.invoke(app, ["build", "show", "nope", "--arch", "arm64"], env=env)
        assert result.exit_code == 1
        assert "No image found for nope-arm64" in result.stdout


class TestBuildClean:
    """Test build clean command."""

    def test_requires_a_mode(self, env: dict[str, str]) -> None:
        """clean without flags should exit 1."""
        result = runner.invoke(app, ["build", "clean"], env=env)
        assert result.exit_code == 1

    def test_rejects_both_modes(self, env: dict[str, str]) -> None:
        """--orphaned and --all together should exit 1."""
        result = runner.invoke(app, ["build", "clean", "--orphaned", "--all"], env=env)
        assert result.exit_code == 1

    def test_orphaned(self, env: dict[str, str], registry: Registry) -> None:
        """--orphaned should drop only entries whose image is gone."""
        result = runner.invoke(app, ["build", "clean", "--orphaned"], env=env)
        assert result.exit_code == 0
        assert "web-arm64" in result.stdout
        assert list(registry.images()) == ["default-arm64"]

    def test_all_aborted(self, env: dict[str, str], registry: Registry) -> None:
        """Declining the prompt should keep everything."""
        result = runner.invoke(app, ["build", "clean", "--all"], input="n\n", env=env)
        assert result.exit_code == 0
        assert "Aborted" in result.stdout
        assert len(registry.images()) == 2

    def test_all_confirmed(self, env: dict[str, str], registry: Registry, tmp_path: Path) -> None:
        """--all --yes should delete images and entries."""
        result = runner.invoke(app, ["build", "clean", "--all", "--yes"], env=env)
        assert result.exit_code == 0
        assert "Deleted 2 image(s)" in result.stdout
        assert registry.images() == {}
        assert not (tmp_path / "data" / "images" / "default-arm64.qcow2").exists()


class TestBuildStatus:
    """Test build status command."""

    def test_status(self, env: dict[str, str], registry: Registry) -> None:
        """status should describe builders and count cached images."""
        result = runner.invoke(app, ["build", "status"], env=env)
        assert result.exit_code == 0
        assert "Host architecture" in result.stdout
        assert "arm64:" in result.stdout
        assert "x86_64:" in result.stdout
        assert "Cached images: 2" in result.stdout


class TestCLIErrors:
    """Test that configuration and runtime errors exit cleanly."""

    def test_invalid_config_value(self, env: dict[str, str]) -> None:
        """A bad pim.yml value should print an error and exit 1."""
        (Path(env["PIM_PROJECT_DIR"]) / "pim.yml").write_text(
            yaml.safe_dump({"build": {"memory": "lots"}})
        )
        result = runner.invoke(app, ["build", "status"], env=env)
        assert result.exit_code == 1
        assert result.exception is None or isinstance(result.exception, SystemExit)
        assert "Invalid pim.yml" in result.stdout

    def test_invalid_config_value_on_config_command(self, env: dict[str, str]) -> None:
        """config should report an invalid pim.yml instead of crashing."""
        (Path(env["PIM_CONFIG_DIR"]) / "pim.yml").write_text(
            yaml.safe_dump({"build": {"cpus": "many"}})
        )
        result = runner.invoke(app, ["config", "--json"], env=env)
        assert result.exit_code == 1
        assert "Error:" in result.stdout

    def test_invalid_log_level(self, env: dict[str, str]) -> None:
        """An invalid PIM_LOG_LEVEL should be reported as a configuration error."""
        result = runner.invoke(app, ["build", "list"], env={**env, "PIM_LOG_LEVEL": "LOUD"})
        assert result.exit_code == 1
        assert "Invalid environment settings" in result.stdout

    def test_build_error_during_run(self, env: dict[str, str]) -> None:
        """A VM error raised mid-build should exit 1 with the message."""
        with patch(
            "pim_build.builds.manager.BuildManager.build",
            side_effect=VMError("No available port found in range 2222-2322"),
        ):
            result = runner.invoke(app, ["build", "run", "default", "--arch", "arm64"], env=env)
        assert result.exit_code == 1
        assert "No available port found" in result.stdout


class TestHumanSize:
    """Test human_size helper."""

    def test_units(self) -> None:
        """Sizes should be scaled to the largest sensible unit."""
        assert human_size(None) == "-"
        assert human_size(512) == "512B"
        assert human_size(2048) == "2.0K"
        assert human_size(3 * 1024**3) == "3.0G"
