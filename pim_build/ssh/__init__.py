"""SSH access to build VMs."""

from pim_build.ssh.client import SSHConnection

__all__ = ["SSHConnection"]
