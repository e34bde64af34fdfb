"""Installer ISO catalog lookup."""

from pim_build.sources.resolver import ISOS_DIRNAME, SourceImageResolver

__all__ = ["ISOS_DIRNAME", "SourceImageResolver"]
