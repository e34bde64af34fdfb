"""Shared fixtures for pim_build tests."""

from pathlib import Path

import pytest

from pim_build.config import BuildConfig


@pytest.fixture
def build_config(tmp_path: Path) -> BuildConfig:
    """BuildConfig rooted in a temporary directory."""
    config_dir = tmp_path / "config"
    project_dir = tmp_path / "project"
    config_dir.mkdir()
    project_dir.mkdir()
    return BuildConfig(
        image_dir=tmp_path / "images",
        iso_dir=tmp_path / "isos",
        config_dir=config_dir,
        project_dir=project_dir,
    )
