"""Copy scripts and save archives between the local and remote roots."""
from __future__ import annotations

import logging
import os
import posixpath
import stat
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

import paramiko

from .errors import TransferError
from .providers.ssh import SSHSessionFactory, Script

LOGGER = logging.getLogger(__name__)

SAVES_DIR = "saves"
SCRIPTS = (Script.INSTALL, Script.RESTORE, Script.START, Script.BACKUP)


def normalise_relative(path: str) -> str:
    """Return *path* as a clean relative POSIX path inside a root."""
    candidate = PurePosixPath(path.strip())
    if not candidate.parts or candidate.is_absolute() or ".." in candidate.parts:
        raise TransferError(f"Invalid relative path {path!r}.")
    return candidate.as_posix()


def save_path(save: str) -> str:
    """Return the relative path of the save archive *save*."""
    return normalise_relative(f"{SAVES_DIR}/{save}")


@dataclass(frozen=True)
class LocalRoot:
    """Blob storage rooted at a local directory."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", Path(self.root).expanduser())

    def describe(self) -> str:
        """Return a short human-readable label."""
        return f"local:{self.root}"

    def _resolve(self, relative: str) -> Path:
        return self.root / normalise_relative(relative)

    def read(self, relative: str) -> bytes:
        """Return the content stored at *relative*."""
        path = self._resolve(relative)
        try:
            return path.read_bytes()
        except OSError as exc:
            raise TransferError(f"Failed to read {path}: {exc}") from exc

    def write(self, relative: str, data: bytes) -> None:
        """Atomically store *data* at *relative*."""
        path = self._resolve(relative)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
        except OSError as exc:
            raise TransferError(f"Failed to prepare {path.parent}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as handle:
                handle.write(data)
            os.replace(tmp_path, path)
        except OSError as exc:
            raise TransferError(f"Failed to write {path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)


@dataclass(frozen=True)
class RemoteRoot:
    """Blob storage rooted at a directory on a remote host, reached over SFTP."""

    host: str
    root: str
    sessions: SSHSessionFactory

    def describe(self) -> str:
        """Return a short human-readable label."""
        return f"sftp:{self.host}:{self.root}"

    def _resolve(self, relative: str) -> str:
        return posixpath.join(self.root, normalise_relative(relative))

    def read(self, relative: str) -> bytes:
        """Return the content stored at *relative* on the remote host."""
        path = self._resolve(relative)
        with self.sessions.session(self.host) as client:
            try:
                with client.open_sftp() as sftp, sftp.open(path, "rb") as handle:
                    return handle.read()
            except (OSError, paramiko.SSHException) as exc:
                raise TransferError(f"Failed to read {self.host}:{path}: {exc}") from exc

    def write(self, relative: str, data: bytes) -> None:
        """Store *data* at *relative* on the remote host, replacing atomically."""
        path = self._resolve(relative)
        partial = f"{path}.part"
        with self.sessions.session(self.host) as client:
            try:
                with client.open_sftp() as sftp:
                    _makedirs(sftp, posixpath.dirname(path))
                    with sftp.open(partial, "wb") as handle:
                        handle.write(data)
                    sftp.posix_rename(partial, path)
            except (OSError, paramiko.SSHException) as exc:
                raise TransferError(f"Failed to write {self.host}:{path}: {exc}") from exc


Backend = LocalRoot | RemoteRoot


def _makedirs(sftp: paramiko.SFTPClient, directory: str) -> None:
    """Create *directory* and its parents on the remote host when missing."""
    if not directory or directory == "/":
        return
    try:
        attrs = sftp.stat(directory)
    except FileNotFoundError:
        _makedirs(sftp, posixpath.dirname(directory))
        sftp.mkdir(directory)
        return
    if attrs.st_mode is not None and not stat.S_ISDIR(attrs.st_mode):
        raise TransferError(f"Remote path {directory} exists and is not a directory.")


@dataclass(frozen=True)
class TransferAgent:
    """Move whole blobs between a local root and per-host remote roots."""

    local: LocalRoot
    remote_dir: str
    sessions: SSHSessionFactory

    def remote(self, host: str) -> RemoteRoot:
        """Return the remote root on *host*."""
        return RemoteRoot(host=host, root=self.remote_dir, sessions=self.sessions)

    def copy(self, source: Backend, destination: Backend, relative: str) -> int:
        """Copy *relative* from *source* to *destination*; return the byte count."""
        data = source.read(relative)
        destination.write(relative, data)
        LOGGER.info(
            "Copied %s (%d bytes) %s -> %s",
            relative,
            len(data),
            source.describe(),
            destination.describe(),
        )
        return len(data)

    def upload_scripts(self, host: str) -> list[str]:
        """Push every maintenance script to *host*."""
        remote = self.remote(host)
        copied: list[str] = []
        for script in SCRIPTS:
            self.copy(self.local, remote, script.relative_path)
            copied.append(script.relative_path)
        return copied

    def upload_save(self, save: str, host: str) -> int:
        """Push the save archive *save* to *host*."""
        return self.copy(self.local, self.remote(host), save_path(save))

    def download_save(self, save: str, host: str) -> int:
        """Pull the save archive *save* from *host*."""
        return self.copy(self.remote(host), self.local, save_path(save))


__all__ = [
    "Backend",
    "LocalRoot",
    "RemoteRoot",
    "TransferAgent",
    "normalise_relative",
    "save_path",
]
