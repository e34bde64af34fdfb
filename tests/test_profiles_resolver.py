"""Tests for profile resolution and merging."""

from pathlib import Path

import pytest
import yaml

from pim_build.profiles.resolver import DEFAULT_SCRIPTS, Profile, ProfileResolver


def _write_profile(base: Path, name: str, data: dict) -> None:
    directory = base / "profiles.d"
    directory.mkdir(parents=True, exist_ok=True)
    (directory / f"{name}.yml").write_text(yaml.safe_dump(data))


@pytest.fixture
def dirs(tmp_path: Path) -> tuple[Path, Path]:
    """Project and global directories with a default and a web profile."""
    project = tmp_path / "project"
    global_dir = tmp_path / "global"
    _write_profile(
        global_dir,
        "default",
        {
            "hostname": "pim",
            "packages": ["openssh-server"],
            "build": {"memory": 2048, "cpus": 2},
        },
    )
    _write_profile(global_dir, "web", {"hostname": "web", "build": {"memory": 4096}})
    _write_profile(project, "web", {"packages": ["nginx"], "build": {"disk_size": "40G"}})
    return project, global_dir


class TestProfileResolver:
    """Tests for ProfileResolver."""

    def test_default_profile(self, dirs) -> None:
        profile = ProfileResolver(list(dirs)).resolve("default")
        assert profile.get("hostname") == "pim"
        assert profile.memory == 2048

    def test_named_profile_merges_over_default(self, dirs) -> None:
        """Named profiles inherit from default with nested maps merged."""
        profile = ProfileResolver(list(dirs)).resolve("web")
        assert profile.get("hostname") == "web"
        assert profile.memory == 4096
        assert profile.cpus == 2
        assert profile.disk_size == "40G"

    def test_project_overrides_global(self, dirs) -> None:
        profile = ProfileResolver(list(dirs)).resolve("web")
        assert profile.get("packages") == ["nginx"]

    def test_unknown_profile_is_empty(self, dirs) -> None:
        """An unknown name resolves to no data rather than to default."""
        profile = ProfileResolver(list(dirs)).resolve("nope")
        assert profile.is_empty

    def test_names(self, dirs) -> None:
        assert ProfileResolver(list(dirs)).names() == ["default", "web"]

    def test_missing_directories(self, tmp_path) -> None:
        resolver = ProfileResolver([tmp_path / "a", tmp_path / "b"])
        assert resolver.names() == []
        assert resolver.resolve("default").is_empty


class TestProfile:
    """Tests for Profile accessors."""

    def test_defaults_when_unset(self) -> None:
        profile = Profile(name="bare")
        assert profile.scripts == list(DEFAULT_SCRIPTS)
        assert profile.architectures is None
        assert profile.disk_size is None
        assert profile.memory is None
        assert profile.username is None

    def test_explicit_values(self) -> None:
        profile = Profile(
            name="p",
            data={
                "scripts": ["base"],
                "architectures": ["arm64"],
                "username": "admin",
                "password": "secret",
                "build": {"ssh_timeout": "600"},
            },
        )
        assert profile.scripts == ["base"]
        assert profile.architectures == ["arm64"]
        assert profile.username == "admin"
        assert profile.password == "secret"
        assert profile.ssh_timeout == 600

    def test_empty_scripts_list(self) -> None:
        assert Profile(name="p", data={"scripts": []}).scripts == []

    def test_scalar_values_become_single_item_lists(self) -> None:
        """A bare string for a list setting should not be split into characters."""
        profile = Profile(name="p", data={"architectures": "arm64", "scripts": "base"})
        assert profile.architectures == ["arm64"]
        assert profile.scripts == ["base"]
