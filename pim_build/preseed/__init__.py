"""Answer-file server for unattended Debian installs."""

from pim_build.preseed.server import (
    INSTALL_SCRIPT_PATH,
    PRESEED_PATH,
    AnswerFileServer,
    create_app,
    host_address,
)

__all__ = [
    "INSTALL_SCRIPT_PATH",
    "PRESEED_PATH",
    "AnswerFileServer",
    "create_app",
    "host_address",
]
