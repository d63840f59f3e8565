"""Configuration loader for psmctl.

This module centralises the logic for reading configuration values from
multiple sources:

1. Built-in defaults.
2. ``./psmctl.yml`` (or an override path).
3. Environment variables prefixed with ``PSMCTL_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export PSMCTL_SSH__USER=ubuntu
    export PSMCTL_TIMING__POLL_INTERVAL=10

Values are coerced via PyYAML's ``safe_load`` so that booleans, numbers and
lists are parsed naturally. The resulting configuration is exposed as
immutable ``dataclasses`` for convenient access and type safety.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import cast

from .state.models import ServiceTier

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load psmctl configuration. Install with "
        "`pip install psmctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "PSMCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class CloudConfig:
    """Spot capacity search settings for the EC2 provider."""

    regions: tuple[str, ...] = ("us-east-1", "us-east-2", "us-west-2")
    reference_region: str = "us-east-1"
    security_group_tag: str = "palworld"
    profile: str | None = None
    images: Mapping[str, str] | None = None
    image_parameter: str = "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64"
    max_spot_price: str | None = None

    def image_for(self, region: str) -> str | None:
        """Return the pinned AMI for *region* when configured."""
        if not self.images:
            return None
        return self.images.get(region)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "regions": list(self.regions),
            "reference_region": self.reference_region,
            "security_group_tag": self.security_group_tag,
            "profile": self.profile,
            "images": dict(self.images or {}),
            "image_parameter": self.image_parameter,
            "max_spot_price": self.max_spot_price,
        }


@dataclass(frozen=True)
class SSHConfig:
    """Identity used for remote shell sessions and SFTP."""

    private_key: Path = Path("~/.ssh/id_rsa")
    user: str = "root"
    port: int = 22
    probe_timeout: float = 10.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "private_key": str(self.private_key),
            "user": self.user,
            "port": self.port,
            "probe_timeout": self.probe_timeout,
        }


@dataclass(frozen=True)
class StorageConfig:
    """Local and remote roots for scripts and save archives."""

    local_dir: Path = Path("data")
    remote_dir: str = "/root/psm"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"local_dir": str(self.local_dir), "remote_dir": self.remote_dir}


@dataclass(frozen=True)
class TimingConfig:
    """Delays and polling bounds used while driving remote hosts."""

    settle_delay: float = 10.0
    step_delay: float = 1.0
    poll_interval: float = 5.0
    script_timeout: float | None = 3600.0
    ready_timeout: float = 300.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "settle_delay": self.settle_delay,
            "step_delay": self.step_delay,
            "poll_interval": self.poll_interval,
            "script_timeout": self.script_timeout,
            "ready_timeout": self.ready_timeout,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for psmctl."""

    config_file: Path
    registry_file: Path
    logs_dir: Path
    default_tier: ServiceTier
    self_test_name: str
    cloud: CloudConfig
    ssh: SSHConfig
    storage: StorageConfig
    timing: TimingConfig

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "registry_file": str(self.registry_file),
            "logs_dir": str(self.logs_dir),
            "default_tier": self.default_tier.value,
            "self_test_name": self.self_test_name,
            "cloud": self.cloud.to_dict(),
            "ssh": self.ssh.to_dict(),
            "storage": self.storage.to_dict(),
            "timing": self.timing.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "psmctl.yml",
    "registry_file": "servers.yml",
    "logs_dir": "logs",
    "default_tier": ServiceTier.T2C2G.value,
    "self_test_name": "test",
    "cloud": {
        "regions": ["us-east-1", "us-east-2", "us-west-2"],
        "reference_region": "us-east-1",
        "security_group_tag": "palworld",
        "profile": None,
        "images": {},
        "image_parameter": "/aws/service/ami-amazon-linux-latest/al2023-ami-kernel-default-x86_64",
        "max_spot_price": None,
    },
    "ssh": {
        "private_key": "~/.ssh/id_rsa",
        "user": "root",
        "port": 22,
        "probe_timeout": 10.0,
    },
    "storage": {
        "local_dir": "data",
        "remote_dir": "/root/psm",
    },
    "timing": {
        "settle_delay": 10.0,
        "step_delay": 1.0,
        "poll_interval": 5.0,
        "script_timeout": 3600.0,
        "ready_timeout": 300.0,
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "cloud": {
        "regions",
        "reference_region",
        "security_group_tag",
        "profile",
        "images",
        "image_parameter",
        "max_spot_price",
    },
    "ssh": {"private_key", "user", "port", "probe_timeout"},
    "storage": {"local_dir", "remote_dir"},
    "timing": {"settle_delay", "step_delay", "poll_interval", "script_timeout", "ready_timeout"},
}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        section_map = _as_dict(raw.get(section), section)
        unknown = set(section_map.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    tier = raw.get("default_tier")
    if tier is not None:
        try:
            ServiceTier.parse(tier)
        except ValueError as exc:
            raise ConfigError(f"default_tier: {exc}") from exc


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    config_file = _to_path(raw.get("config_file"))
    registry_file = _to_path(raw.get("registry_file"))
    logs_dir = _to_path(raw.get("logs_dir"))
    default_tier = ServiceTier.parse(raw.get("default_tier", ServiceTier.T2C2G.value))

    self_test_name = str(raw.get("self_test_name") or "").strip()
    if not self_test_name:
        raise ConfigError("self_test_name must be a non-empty string.")

    cloud_mapping = _as_dict(raw.get("cloud"), "cloud")
    regions = tuple(
        str(region).strip()
        for region in _as_sequence(cloud_mapping.get("regions", []), "cloud.regions")
        if str(region).strip()
    )
    if not regions:
        raise ConfigError("cloud.regions must list at least one region.")
    images_mapping = _as_dict(cloud_mapping.get("images"), "cloud.images")
    max_price = cloud_mapping.get("max_spot_price")
    profile = cloud_mapping.get("profile")
    cloud = CloudConfig(
        regions=regions,
        reference_region=str(cloud_mapping.get("reference_region") or regions[0]),
        security_group_tag=str(cloud_mapping.get("security_group_tag", "palworld")),
        profile=str(profile) if profile else None,
        images={str(key): str(value) for key, value in images_mapping.items()},
        image_parameter=str(cloud_mapping.get("image_parameter", "")),
        max_spot_price=str(max_price) if max_price not in (None, "") else None,
    )

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    user = str(ssh_mapping.get("user") or "").strip()
    if not user:
        raise ConfigError("ssh.user must be a non-empty string.")
    port = _expect_int(ssh_mapping.get("port"), "ssh.port", default=22)
    if not 0 < port < 65536:
        raise ConfigError(f"ssh.port must be between 1 and 65535. Got {port}.")
    ssh = SSHConfig(
        private_key=_to_path(ssh_mapping.get("private_key", "~/.ssh/id_rsa")),
        user=user,
        port=port,
        probe_timeout=_expect_positive_float(
            ssh_mapping.get("probe_timeout"), "ssh.probe_timeout", default=10.0
        ),
    )

    storage_mapping = _as_dict(raw.get("storage"), "storage")
    remote_dir = str(storage_mapping.get("remote_dir") or "").strip()
    if not remote_dir:
        raise ConfigError("storage.remote_dir must be a non-empty string.")
    storage = StorageConfig(
        local_dir=_to_path(storage_mapping.get("local_dir", "data")),
        remote_dir=remote_dir,
    )

    timing_mapping = _as_dict(raw.get("timing"), "timing")
    timing = TimingConfig(
        settle_delay=_expect_non_negative_float(
            timing_mapping.get("settle_delay"), "timing.settle_delay", default=10.0
        ),
        step_delay=_expect_non_negative_float(
            timing_mapping.get("step_delay"), "timing.step_delay", default=1.0
        ),
        poll_interval=_expect_positive_float(
            timing_mapping.get("poll_interval"), "timing.poll_interval", default=5.0
        ),
        script_timeout=_optional_timeout(
            timing_mapping.get("script_timeout", 3600.0), "timing.script_timeout"
        ),
        ready_timeout=_expect_positive_float(
            timing_mapping.get("ready_timeout"), "timing.ready_timeout", default=300.0
        ),
    )

    return AppConfig(
        config_file=config_file,
        registry_file=registry_file,
        logs_dir=logs_dir,
        default_tier=default_tier,
        self_test_name=self_test_name,
        cloud=cloud,
        ssh=ssh,
        storage=storage,
        timing=timing,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, str):
        # Env overrides may provide a comma-separated list.
        return [item for item in value.split(",")]
    if isinstance(value, bytes) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero or greater. Got {numeric}.")
    return numeric


def _optional_timeout(value: object | None, label: str) -> float | None:
    """Return a positive timeout, or ``None`` when disabled via null/0."""
    if value is None:
        return None
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must be zero (disabled) or greater. Got {numeric}.")
    return numeric or None


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "CloudConfig",
    "ConfigError",
    "SSHConfig",
    "StorageConfig",
    "TimingConfig",
    "load_config",
]
