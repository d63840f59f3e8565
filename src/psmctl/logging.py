"""Structured operation logging for psmctl.

Two sinks are maintained:

* ``psmctl.log`` receives human-readable records from the standard
  :mod:`logging` hierarchy (rotated daily, UTC timestamps) and the same records
  are echoed to stderr through :class:`rich.logging.RichHandler`.
* ``operations.jsonl`` receives one JSON document per CLI operation
  describing the command, its arguments, the steps performed and the result.

Logging must never break an operation: if the log directory is unavailable
the structured logger disables itself and the operation proceeds.
"""
from __future__ import annotations

import getpass
import json
import logging
import logging.handlers
import os
import secrets
import socket
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from . import __version__

LOG_FILE_NAME = "psmctl.log"
OPERATIONS_FILE_NAME = "operations.jsonl"
_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(logs_dir: Path | None, *, verbose: bool = False) -> None:
    """Install file and console handlers on the ``psmctl`` logger."""
    root = logging.getLogger("psmctl")
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    console = RichHandler(console=Console(stderr=True), show_path=False, rich_tracebacks=False)
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.addHandler(console)

    if logs_dir is None:
        return
    try:
        logs_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.handlers.TimedRotatingFileHandler(
            logs_dir / LOG_FILE_NAME,
            when="midnight",
            backupCount=14,
            encoding="utf-8",
            utc=True,
        )
    except OSError as exc:
        root.warning("File logging disabled; cannot open %s: %s", logs_dir, exc)
        return
    formatter = logging.Formatter(_LOG_FORMAT)
    formatter.converter = time.gmtime
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)
    root.addHandler(file_handler)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _sanitize(value: object) -> object:
    """Return a JSON-safe representation of *value*."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_sanitize(item) for item in value]
    return str(value)


def _detect_actor() -> dict[str, object]:
    try:
        user = getpass.getuser()
    except Exception:  # pragma: no cover - depends on environment
        user = "unknown"
    return {"user": user, "pid": os.getpid(), "host": socket.gethostname()}


class OperationScope:
    """Collects steps and the final result for a single CLI operation."""

    def __init__(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Initialise the scope for *command*."""
        self.command = command
        self.op_id = f"{datetime.now(tz=UTC):%Y%m%dT%H%M%SZ}-{secrets.token_hex(4)}"
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.actor: Mapping[str, object] = _detect_actor()
        self.started_at = _now_iso()
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self._start = time.perf_counter()

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record a completed (or skipped/failed) step."""
        step: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail:
            step["detail"] = detail
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            rc=0,
            changed=changed,
            warnings=warnings,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            rc=rc,
            errors=list(errors) if errors else [message],
            context=context,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        rc: int,
        changed: int = 0,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "rc": rc,
            "changed": changed,
            "warnings": list(warnings or []),
            "errors": list(errors or []),
        }
        if context:
            result["context"] = _sanitize(context)
        self.result = result

    def to_record(self) -> dict[str, object]:
        """Return the JSON document describing this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "args": _sanitize(self.args),
            "target": _sanitize(self.target),
            "actor": _sanitize(self.actor),
            "steps": _sanitize(self.steps),
            "result": self.result,
            "context": {"psmctl_version": __version__},
        }


class StructuredLogger:
    """Append operation records to ``operations.jsonl`` under *logs_dir*."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the log directory, disabling the logger if that fails."""
        self._logs_dir = Path(logs_dir).expanduser()
        self._operations_log_path = self._logs_dir / OPERATIONS_FILE_NAME
        self._enabled = True
        try:
            self._logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            self._enabled = False

    @property
    def operations_log_path(self) -> Path:
        """Return the path of the JSONL operations log."""
        return self._operations_log_path

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(
                    f"Operation aborted: {exc.__class__.__name__}",
                    errors=[str(exc) or exc.__class__.__name__],
                )
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.", changed=0)
            self._write(scope.to_record())

    def _write(self, record: Mapping[str, object]) -> None:
        if not self._enabled:
            return
        try:
            with self._operations_log_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=False))
                handle.write("\n")
        except OSError:
            self._enabled = False


__all__ = ["OperationScope", "StructuredLogger", "configure_logging"]
