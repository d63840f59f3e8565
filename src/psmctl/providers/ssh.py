"""SSH sessions and remote maintenance script execution.

Maintenance scripts are launched detached (``nohup ... &``) so no session is
held open for the script's full duration. Completion is observed by polling
the remote process table, and the script's result is the last line it wrote
to the shared log file. The backup script relies on this to report the save
identifier it produced.
"""
from __future__ import annotations

import logging
import shlex
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum

import paramiko

from ..config import SSHConfig
from ..errors import (
    AuthError,
    ConnectError,
    ReadinessTimeoutError,
    RemoteCommandError,
    ScriptTimeoutError,
)

LOGGER = logging.getLogger(__name__)

SCRIPTS_DIR = "scripts"
SCRIPT_LOG_NAME = "psm_script.log"


class Script(str, Enum):
    """Maintenance scripts shipped to every game host."""

    INSTALL = "install_server.sh"
    RESTORE = "restore_save.sh"
    START = "start_server.sh"
    BACKUP = "backup_save.sh"

    @property
    def relative_path(self) -> str:
        """Return the script path relative to the local/remote root."""
        return f"{SCRIPTS_DIR}/{self.value}"

    @property
    def process_pattern(self) -> str:
        """Return a ``pgrep -f`` pattern that never matches the pgrep itself."""
        return f"[{self.value[0]}]{self.value[1:]}"


@dataclass(frozen=True)
class CommandResult:
    """Outcome of a single remote command."""

    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        """Return ``True`` when the command exited with status zero."""
        return self.exit_status == 0


@dataclass(frozen=True)
class SSHSessionFactory:
    """Open authenticated paramiko sessions with the configured identity."""

    config: SSHConfig

    def _new_client(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        return client

    @contextmanager
    def session(self, host: str, *, timeout: float | None = None) -> Iterator[paramiko.SSHClient]:
        """Yield a connected client for *host*, closing it afterwards."""
        client = self._new_client()
        try:
            client.connect(
                hostname=host,
                port=self.config.port,
                username=self.config.user,
                key_filename=str(self.config.private_key),
                timeout=timeout,
                auth_timeout=timeout,
                banner_timeout=timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as exc:
            client.close()
            raise AuthError(
                f"SSH authentication as {self.config.user}@{host} failed: {exc}"
            ) from exc
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise ConnectError(f"Unable to connect to {host}:{self.config.port}: {exc}") from exc
        try:
            yield client
        finally:
            client.close()


@dataclass
class RemoteExecutor:
    """Run maintenance scripts on a remote host and collect their result."""

    sessions: SSHSessionFactory
    remote_dir: str
    poll_interval: float = 5.0
    script_timeout: float | None = None
    probe_timeout: float = 10.0

    @property
    def log_path(self) -> str:
        """Return the remote log file that backgrounded scripts append to."""
        return f"{self.remote_dir.rstrip('/')}/{SCRIPT_LOG_NAME}"

    # ------------------------------------------------------------------
    def execute(self, host: str, command: str, *, timeout: float | None = None) -> CommandResult:
        """Run *command* in a fresh session and return its output."""
        with self.sessions.session(host, timeout=timeout) as client:
            try:
                _, stdout, stderr = client.exec_command(command, timeout=timeout)
                out = stdout.read().decode("utf-8", errors="replace")
                err = stderr.read().decode("utf-8", errors="replace")
                status = stdout.channel.recv_exit_status()
            except (paramiko.SSHException, OSError) as exc:
                raise ConnectError(f"Command on {host} failed mid-session: {exc}") from exc
        LOGGER.debug("ssh %s: %s -> rc=%s", host, command, status)
        return CommandResult(exit_status=status, stdout=out, stderr=err)

    def probe(self, host: str) -> bool:
        """Return ``True`` when *host* accepts a session and runs a no-op."""
        try:
            result = self.execute(host, "true", timeout=self.probe_timeout)
        except ConnectError as exc:
            LOGGER.debug("Probe of %s failed: %s", host, exc)
            return False
        return result.ok

    def wait_until_reachable(
        self,
        host: str,
        *,
        timeout: float,
        initial_delay: float = 1.0,
        max_delay: float = 15.0,
    ) -> int:
        """Probe *host* with exponential backoff until it answers.

        Returns the number of probes performed. Raises
        :class:`ReadinessTimeoutError` once *timeout* seconds have elapsed.
        """
        deadline = time.monotonic() + timeout
        delay = initial_delay
        attempts = 0
        while True:
            attempts += 1
            if self.probe(host):
                LOGGER.info("Host %s reachable after %d probe(s).", host, attempts)
                return attempts
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ReadinessTimeoutError(
                    f"Host {host} did not become reachable within {timeout:.0f}s "
                    f"({attempts} probes)."
                )
            time.sleep(min(delay, remaining))
            delay = min(delay * 2, max_delay)

    # ------------------------------------------------------------------
    def launch(self, host: str, script: Script, *args: str) -> None:
        """Start *script* detached on *host*."""
        argv = " ".join(shlex.quote(arg) for arg in (script.relative_path, *args))
        command = (
            f"cd {shlex.quote(self.remote_dir)} && "
            f"nohup bash {argv} >> {shlex.quote(self.log_path)} 2>&1 < /dev/null &"
        )
        result = self.execute(host, command)
        if not result.ok:
            detail = result.stderr.strip() or result.stdout.strip() or "no output"
            raise RemoteCommandError(
                f"Failed to launch {script.value} on {host} (exit {result.exit_status}): {detail}"
            )
        LOGGER.info("Launched %s on %s.", script.value, host)

    def running_count(self, host: str, script: Script) -> int:
        """Return how many processes on *host* match *script*."""
        command = f"pgrep -fc -- {shlex.quote(script.process_pattern)}"
        result = self.execute(host, command)
        text = result.stdout.strip()
        try:
            return int(text.splitlines()[-1]) if text else 0
        except ValueError as exc:
            raise RemoteCommandError(
                f"Unexpected process count from {host} for {script.value}: {text!r}"
            ) from exc

    def wait_for_exit(self, host: str, script: Script) -> int:
        """Poll until *script* is no longer running; return the poll count."""
        deadline = (
            time.monotonic() + self.script_timeout if self.script_timeout else None
        )
        polls = 0
        while True:
            time.sleep(self.poll_interval)
            polls += 1
            count = self.running_count(host, script)
            if count == 0:
                return polls
            LOGGER.debug("%s still running on %s (%d process(es)).", script.value, host, count)
            if deadline is not None and time.monotonic() >= deadline:
                raise ScriptTimeoutError(
                    f"{script.value} on {host} still running after {self.script_timeout:.0f}s."
                )

    def last_log_line(self, host: str) -> str:
        """Return the final line of the remote script log."""
        result = self.execute(host, f"tail -n 1 {shlex.quote(self.log_path)}")
        if not result.ok:
            detail = result.stderr.strip() or "no output"
            raise RemoteCommandError(f"Unable to read {self.log_path} on {host}: {detail}")
        return result.stdout.strip()

    def run(self, host: str, script: Script, *args: str) -> str:
        """Launch *script*, wait for it to finish and return its result line."""
        self.launch(host, script, *args)
        polls = self.wait_for_exit(host, script)
        output = self.last_log_line(host)
        LOGGER.info("%s finished on %s after %d poll(s): %s", script.value, host, polls, output)
        return output


__all__ = ["CommandResult", "RemoteExecutor", "SSHSessionFactory", "Script"]
