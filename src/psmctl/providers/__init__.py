"""Provider interfaces for psmctl."""
from __future__ import annotations

from .ec2 import EC2Client, SecurityGroup, SpotPrice
from .ssh import CommandResult, RemoteExecutor, Script, SSHSessionFactory

__all__ = [
    "CommandResult",
    "EC2Client",
    "RemoteExecutor",
    "SSHSessionFactory",
    "Script",
    "SecurityGroup",
    "SpotPrice",
]
