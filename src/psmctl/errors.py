"""Error taxonomy shared by the registry, providers and orchestrator.

Every failure aborts the current lifecycle operation. The CLI translates the
exception class into an :class:`~psmctl.exit_codes.ExitCode` via
:func:`exit_code_for`.
"""
from __future__ import annotations

from .exit_codes import ExitCode


class PsmError(RuntimeError):
    """Base class for psmctl failures."""

    exit_code: ExitCode = ExitCode.PROVIDER


class ServerNotFoundError(PsmError):
    """Raised when a server name is not present in the registry."""

    exit_code = ExitCode.VALIDATION


class ServerConflictError(PsmError):
    """Raised when a server name is already registered."""

    exit_code = ExitCode.VALIDATION


class NotRunningError(PsmError):
    """Raised when an operation requires a running server."""

    exit_code = ExitCode.VALIDATION


class AlreadyRunningError(PsmError):
    """Raised when a restart targets a server that is still live."""

    exit_code = ExitCode.VALIDATION


class StorageError(PsmError):
    """Raised when the registry file cannot be read, parsed or written."""

    exit_code = ExitCode.ENVIRONMENT


class CloudError(PsmError):
    """Raised when a single cloud API call fails."""


class ProvisioningExhaustedError(PsmError):
    """Raised when no region/zone/instance type candidate could be created."""


class AuthError(PsmError):
    """Raised when the SSH identity is rejected by the remote host."""

    exit_code = ExitCode.ENVIRONMENT


class ConnectError(PsmError):
    """Raised when an SSH session cannot be established."""


class RemoteCommandError(PsmError):
    """Raised when a remote command fails or reports an unusable result."""


class ScriptTimeoutError(PsmError):
    """Raised when a remote maintenance script outlives the poll deadline."""


class ReadinessTimeoutError(PsmError):
    """Raised when a freshly provisioned host never becomes reachable."""


class TransferError(PsmError):
    """Raised when copying a blob between roots fails."""


def exit_code_for(exc: BaseException) -> ExitCode:
    """Return the CLI exit code associated with *exc*."""
    if isinstance(exc, PsmError):
        return exc.exit_code
    return ExitCode.PROVIDER


__all__ = [
    "AlreadyRunningError",
    "AuthError",
    "CloudError",
    "ConnectError",
    "NotRunningError",
    "ProvisioningExhaustedError",
    "PsmError",
    "ReadinessTimeoutError",
    "RemoteCommandError",
    "ScriptTimeoutError",
    "ServerConflictError",
    "ServerNotFoundError",
    "StorageError",
    "TransferError",
    "exit_code_for",
]
