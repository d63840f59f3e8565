"""Exit code mapping for the error taxonomy."""
from __future__ import annotations

import pytest

from psmctl.errors import (
    AlreadyRunningError,
    AuthError,
    CloudError,
    ConnectError,
    NotRunningError,
    ProvisioningExhaustedError,
    ReadinessTimeoutError,
    RemoteCommandError,
    ScriptTimeoutError,
    ServerConflictError,
    ServerNotFoundError,
    StorageError,
    TransferError,
    exit_code_for,
)
from psmctl.exit_codes import ExitCode


@pytest.mark.parametrize(
    "error, expected",
    [
        (ServerNotFoundError("x"), ExitCode.VALIDATION),
        (ServerConflictError("x"), ExitCode.VALIDATION),
        (NotRunningError("x"), ExitCode.VALIDATION),
        (AlreadyRunningError("x"), ExitCode.VALIDATION),
        (StorageError("x"), ExitCode.ENVIRONMENT),
        (AuthError("x"), ExitCode.ENVIRONMENT),
        (CloudError("x"), ExitCode.PROVIDER),
        (ProvisioningExhaustedError("x"), ExitCode.PROVIDER),
        (ConnectError("x"), ExitCode.PROVIDER),
        (RemoteCommandError("x"), ExitCode.PROVIDER),
        (ScriptTimeoutError("x"), ExitCode.PROVIDER),
        (ReadinessTimeoutError("x"), ExitCode.PROVIDER),
        (TransferError("x"), ExitCode.PROVIDER),
        (ValueError("x"), ExitCode.PROVIDER),
    ],
)
def test_exit_code_for(error: Exception, expected: ExitCode) -> None:
    """Each failure class maps onto its documented exit code."""
    assert exit_code_for(error) is expected
