"""Server records persisted in the registry."""
from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, replace
from enum import Enum

from ..errors import StorageError


class ServerStatus(str, Enum):
    """Last known lifecycle phase of a server (not live cloud truth)."""

    CREATING = "Creating"
    RUNNING = "Running"
    STOPPING = "Stopping"
    STOPPED = "Stopped"


class ServiceTier(str, Enum):
    """Logical capacity tier mapped onto concrete EC2 instance types."""

    T2C2G = "T2C2G"
    T2C16G = "T2C16G"
    T4C16G = "T4C16G"
    T4C32G = "T4C32G"

    @property
    def instance_types(self) -> tuple[str, ...]:
        """Return acceptable instance types for this tier, preferred first."""
        return TIER_INSTANCE_TYPES[self]

    @classmethod
    def parse(cls, value: object) -> ServiceTier:
        """Return the tier for *value* (case-insensitive)."""
        if isinstance(value, ServiceTier):
            return value
        text = str(value).strip().upper()
        try:
            return cls(text)
        except ValueError as exc:
            allowed = ", ".join(tier.value for tier in cls)
            raise ValueError(f"Unknown service tier '{value}'. Allowed: {allowed}.") from exc


TIER_INSTANCE_TYPES: dict[ServiceTier, tuple[str, ...]] = {
    ServiceTier.T2C2G: ("t3.small", "t3a.small"),
    ServiceTier.T2C16G: ("r5.large", "r5a.large", "r6i.large"),
    ServiceTier.T4C16G: ("m5.xlarge", "m5a.xlarge", "m6i.xlarge"),
    ServiceTier.T4C32G: ("r5.xlarge", "r5a.xlarge", "r6i.xlarge"),
}


@dataclass(frozen=True)
class Server:
    """A named game save and the compute instance currently hosting it.

    ``ip``, ``region`` and ``instance_id`` form the instance triple: they are
    either all set (an instance is allocated) or all ``None``.
    """

    name: str
    status: ServerStatus
    service_instance_type: ServiceTier
    save: str | None = None
    ip: str | None = None
    region: str | None = None
    instance_id: str | None = None

    @property
    def has_instance(self) -> bool:
        """Return ``True`` when the instance triple is populated."""
        return self.ip is not None and self.region is not None and self.instance_id is not None

    def is_consistent(self) -> bool:
        """Return ``True`` when the triple and status invariants hold."""
        triple = (self.ip, self.region, self.instance_id)
        all_set = all(value is not None for value in triple)
        none_set = all(value is None for value in triple)
        if not (all_set or none_set):
            return False
        if self.status is ServerStatus.RUNNING and not all_set:
            return False
        if self.status is ServerStatus.STOPPED and not none_set:
            return False
        return True

    def detach_instance(self) -> Server:
        """Return a stopped copy with the instance triple cleared."""
        return replace(
            self,
            status=ServerStatus.STOPPED,
            ip=None,
            region=None,
            instance_id=None,
        )

    def with_save(self, save: str | None) -> Server:
        """Return a copy pointing at *save*."""
        return replace(self, save=save)

    def to_dict(self) -> dict[str, object]:
        """Return the registry representation of this record."""
        return {
            "name": self.name,
            "status": self.status.value,
            "service_instance_type": self.service_instance_type.value,
            "save": self.save,
            "ip": self.ip,
            "region": self.region,
            "instance_id": self.instance_id,
        }

    @classmethod
    def from_dict(cls, entry: Mapping[str, object]) -> Server:
        """Build a server from a registry mapping, validating its fields."""
        if not isinstance(entry, Mapping):
            raise StorageError("Server entry must be a mapping.")

        name_raw = entry.get("name")
        name = str(name_raw).strip() if name_raw is not None else ""
        if not name:
            raise StorageError("Server entry missing 'name'.")

        try:
            status = ServerStatus(str(entry.get("status", ServerStatus.STOPPED.value)))
        except ValueError as exc:
            raise StorageError(
                f"Server '{name}' has unknown status {entry.get('status')!r}."
            ) from exc

        try:
            tier = ServiceTier.parse(entry.get("service_instance_type", ServiceTier.T2C2G.value))
        except ValueError as exc:
            raise StorageError(f"Server '{name}': {exc}") from exc

        server = cls(
            name=name,
            status=status,
            service_instance_type=tier,
            save=_optional_str(entry.get("save")),
            ip=_optional_str(entry.get("ip")),
            region=_optional_str(entry.get("region")),
            instance_id=_optional_str(entry.get("instance_id")),
        )
        if not server.is_consistent():
            raise StorageError(
                f"Server '{name}' has an inconsistent instance record "
                f"(status={status.value}, ip={server.ip}, region={server.region}, "
                f"instance_id={server.instance_id})."
            )
        return server


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


__all__ = ["Server", "ServerStatus", "ServiceTier", "TIER_INSTANCE_TYPES"]
