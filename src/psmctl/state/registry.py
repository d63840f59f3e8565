"""Helpers for interacting with the psmctl server registry.

The registry is a single YAML file (``servers.yml`` by default) holding a
``servers`` list. Every mutation re-reads the file and rewrites the whole
collection atomically (temporary file + ``os.replace``) so an interrupted
write never leaves a half-applied file behind. There is no locking: only one
psmctl process may operate on a registry at a time.
"""
from __future__ import annotations

import logging
import os
import tempfile
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from pathlib import Path

from ..errors import ServerConflictError, ServerNotFoundError, StorageError
from .models import Server

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage the psmctl registry. Install with `pip install psmctl`."
    ) from exc

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ServerRegistry:
    """High-level interface to the YAML server registry."""

    path: Path

    def __post_init__(self) -> None:
        """Normalise the registry path after initialisation."""
        object.__setattr__(self, "path", Path(self.path).expanduser())

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> ServerRegistry:
        """Open the registry at *path*, creating an empty one when missing."""
        registry = cls(Path(path))
        if not registry.path.exists():
            LOGGER.info("Registry %s not found; initialising empty registry.", registry.path)
            registry.write([])
        else:
            registry.read()
        return registry

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def read(self) -> list[Server]:
        """Return every server record stored in the registry file."""
        if not self.path.exists():
            return []
        try:
            data = yaml.safe_load(self.path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StorageError(f"Failed to parse registry file {self.path}: {exc}") from exc
        except OSError as exc:
            raise StorageError(f"Failed to read registry file {self.path}: {exc}") from exc

        if data is None:
            return []
        if not isinstance(data, Mapping):
            raise StorageError(f"Registry file {self.path} must contain a mapping.")
        raw_servers = data.get("servers", [])
        if raw_servers is None:
            return []
        if not isinstance(raw_servers, list):
            raise StorageError(f"Registry file {self.path}: 'servers' must be a list.")

        servers: list[Server] = []
        seen: set[str] = set()
        for entry in raw_servers:
            server = Server.from_dict(entry)
            if server.name in seen:
                raise StorageError(
                    f"Registry file {self.path} lists server '{server.name}' more than once."
                )
            seen.add(server.name)
            servers.append(server)
        return servers

    def write(self, servers: Iterable[Server]) -> None:
        """Atomically persist *servers* as the full registry contents."""
        payload = {"servers": [server.to_dict() for server in servers]}
        directory = self.path.parent
        try:
            directory.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(dir=str(directory), prefix=f".{self.path.name}.")
        except OSError as exc:
            raise StorageError(f"Failed to prepare registry directory {directory}: {exc}") from exc

        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(payload, handle, sort_keys=False)
            os.replace(tmp_path, self.path)
            os.chmod(self.path, 0o640)
        except OSError as exc:
            raise StorageError(f"Failed to write registry file {self.path}: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def list_servers(self) -> list[Server]:
        """Return all servers in registry order."""
        return self.read()

    def names(self) -> list[str]:
        """Return the registered server names."""
        return [server.name for server in self.read()]

    def __contains__(self, name: object) -> bool:
        """Return ``True`` when *name* is registered."""
        return isinstance(name, str) and name in self.names()

    # Server helpers ---------------------------------------------------
    def get(self, name: str) -> Server:
        """Return the server named *name*."""
        for server in self.read():
            if server.name == name:
                return server
        raise ServerNotFoundError(f"Server '{name}' not found in registry.")

    def add(self, server: Server) -> None:
        """Register a new *server*; names must be unique."""
        _check_record(server)
        servers = self.read()
        if any(existing.name == server.name for existing in servers):
            raise ServerConflictError(f"Server '{server.name}' already exists.")
        servers.append(server)
        self.write(servers)
        LOGGER.debug("Registered server %s (status=%s).", server.name, server.status.value)

    def update(self, name: str, server: Server) -> None:
        """Replace the record for *name* with *server*."""
        if server.name != name:
            raise StorageError(
                f"Cannot store server '{server.name}' under the name '{name}'."
            )
        _check_record(server)
        servers = self.read()
        updated: list[Server] = []
        found = False
        for existing in servers:
            if existing.name == name:
                updated.append(server)
                found = True
            else:
                updated.append(existing)
        if not found:
            raise ServerNotFoundError(f"Server '{name}' not found in registry.")
        self.write(updated)
        LOGGER.debug("Updated server %s (status=%s).", name, server.status.value)


def _check_record(server: Server) -> None:
    if not server.is_consistent():
        raise StorageError(
            f"Refusing to store server '{server.name}' with an inconsistent instance record "
            f"(status={server.status.value}, ip={server.ip}, region={server.region}, "
            f"instance_id={server.instance_id})."
        )


__all__ = ["ServerRegistry"]
