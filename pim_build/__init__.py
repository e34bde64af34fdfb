"""PIM image builder - unattended QEMU image builds with a local cache.

This package drives QEMU through an unattended OS install, provisions the
result over SSH, and keeps the built disk images in a content-addressed
registry.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
