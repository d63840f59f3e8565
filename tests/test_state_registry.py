"""Server registry and record model tests."""
from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest
import yaml
from conftest import running_server, stopped_server

from psmctl.errors import ServerConflictError, ServerNotFoundError, StorageError
from psmctl.state import Server, ServerRegistry, ServerStatus, ServiceTier


def test_load_creates_empty_registry(tmp_path: Path) -> None:
    """Loading a missing registry file initialises it empty."""
    path = tmp_path / "nested" / "servers.yml"

    registry = ServerRegistry.load(path)

    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.list_servers() == []
    assert yaml.safe_load(path.read_text()) == {"servers": []}


def test_add_then_get_returns_record(registry: ServerRegistry) -> None:
    """A freshly added record is returned unchanged."""
    server = running_server("foo")

    registry.add(server)

    assert registry.get("foo") == server
    assert "foo" in registry
    assert registry.names() == ["foo"]


def test_duplicate_add_leaves_registry_unchanged(registry: ServerRegistry) -> None:
    """Adding an existing name fails without modifying the stored records."""
    original = stopped_server("foo")
    registry.add(original)
    before = registry.path.read_text()

    with pytest.raises(ServerConflictError):
        registry.add(running_server("foo"))

    assert registry.path.read_text() == before
    assert registry.get("foo") == original


def test_get_missing_raises(registry: ServerRegistry) -> None:
    """Unknown names raise ServerNotFoundError."""
    with pytest.raises(ServerNotFoundError):
        registry.get("ghost")


def test_update_missing_raises(registry: ServerRegistry) -> None:
    """Updating an unknown name raises and writes nothing."""
    registry.add(stopped_server("foo"))

    with pytest.raises(ServerNotFoundError):
        registry.update("bar", stopped_server("bar"))

    assert registry.names() == ["foo"]


def test_update_replaces_exactly_one_record(registry: ServerRegistry) -> None:
    """Only the named record changes; order and others are preserved."""
    registry.add(stopped_server("alpha"))
    registry.add(stopped_server("beta"))
    registry.add(stopped_server("gamma"))

    changed = running_server("beta", save="save-new.tar")
    registry.update("beta", changed)

    servers = registry.list_servers()
    assert [server.name for server in servers] == ["alpha", "beta", "gamma"]
    assert servers[1] == changed
    assert servers[0] == stopped_server("alpha")
    assert servers[2] == stopped_server("gamma")


def test_update_rejects_renamed_record(registry: ServerRegistry) -> None:
    """A record cannot be stored under another server's name."""
    registry.add(stopped_server("a"))
    registry.add(stopped_server("b"))

    with pytest.raises(StorageError, match="under the name 'a'"):
        registry.update("a", running_server("b"))

    assert registry.get("a") == stopped_server("a")
    assert registry.get("b") == stopped_server("b")


def test_add_rejects_inconsistent_record(registry: ServerRegistry) -> None:
    """Inconsistent records are refused before the file is rewritten."""
    registry.add(stopped_server("ok"))
    bad = Server(name="bad", status=ServerStatus.RUNNING, service_instance_type=ServiceTier.T2C2G)

    with pytest.raises(StorageError, match="inconsistent"):
        registry.add(bad)

    assert registry.names() == ["ok"]
    assert registry.get("ok") == stopped_server("ok")


def test_update_rejects_inconsistent_record(registry: ServerRegistry) -> None:
    """Updates must keep the instance triple whole."""
    registry.add(running_server("foo"))
    registry.add(stopped_server("bar"))

    with pytest.raises(StorageError, match="inconsistent"):
        registry.update("foo", replace(running_server("foo"), region=None))

    assert registry.get("foo") == running_server("foo")
    assert registry.get("bar") == stopped_server("bar")


def test_records_survive_reload(tmp_path: Path) -> None:
    """Every field persists across a fresh registry instance."""
    path = tmp_path / "servers.yml"
    first = ServerRegistry.load(path)
    running = running_server("foo")
    stopped = Server(
        name="bar",
        status=ServerStatus.STOPPED,
        service_instance_type=ServiceTier.T4C32G,
        save=None,
    )
    first.add(running)
    first.add(stopped)

    second = ServerRegistry.load(path)

    assert second.list_servers() == [running, stopped]


def test_registry_file_uses_flat_records(registry: ServerRegistry) -> None:
    """Records are stored with status and tier as plain strings."""
    registry.add(running_server("foo"))

    data = yaml.safe_load(registry.path.read_text())

    assert data["servers"][0] == {
        "name": "foo",
        "status": "Running",
        "service_instance_type": "T2C2G",
        "save": "save-old.tar",
        "ip": "198.51.100.7",
        "region": "us-east-1",
        "instance_id": "i-existing",
    }


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Malformed YAML surfaces as StorageError."""
    path = tmp_path / "servers.yml"
    path.write_text("servers: [unclosed\n")

    with pytest.raises(StorageError):
        ServerRegistry.load(path)


@pytest.mark.parametrize(
    "content",
    [
        "- just\n- a list\n",
        "servers: {name: foo}\n",
        "servers:\n  - name: foo\n    status: Sleeping\n",
        "servers:\n  - name: foo\n    status: Stopped\n    service_instance_type: HUGE\n",
        "servers:\n  - status: Stopped\n",
        "servers:\n  - name: foo\n  - name: foo\n",
    ],
)
def test_malformed_registry_content_raises(tmp_path: Path, content: str) -> None:
    """Structurally invalid registries are rejected."""
    path = tmp_path / "servers.yml"
    path.write_text(content)

    with pytest.raises(StorageError):
        ServerRegistry(path).read()


def test_partial_instance_triple_is_rejected(tmp_path: Path) -> None:
    """A record with only some of ip/region/instance_id set fails to load."""
    path = tmp_path / "servers.yml"
    path.write_text(
        "servers:\n"
        "  - name: foo\n"
        "    status: Creating\n"
        "    service_instance_type: T2C2G\n"
        "    ip: 198.51.100.7\n"
    )

    with pytest.raises(StorageError, match="inconsistent"):
        ServerRegistry(path).read()


def test_consistency_rules() -> None:
    """Running requires the triple; Stopped forbids it."""
    assert running_server().is_consistent()
    assert stopped_server().is_consistent()
    assert not replace(running_server(), ip=None, region=None, instance_id=None).is_consistent()
    assert not replace(stopped_server(), ip="1.2.3.4", region="r", instance_id="i").is_consistent()
    assert not replace(running_server(), region=None).is_consistent()


def test_detach_instance_clears_triple() -> None:
    """Detaching returns a stopped record without instance fields."""
    detached = running_server().detach_instance()

    assert detached.status is ServerStatus.STOPPED
    assert (detached.ip, detached.region, detached.instance_id) == (None, None, None)
    assert detached.save == "save-old.tar"
    assert not detached.has_instance


def test_service_tier_parse_is_case_insensitive() -> None:
    """Tier names are matched regardless of case."""
    assert ServiceTier.parse("t4c16g") is ServiceTier.T4C16G
    assert ServiceTier.T2C2G.instance_types[0] == "t3.small"
    with pytest.raises(ValueError, match="Allowed"):
        ServiceTier.parse("T8C64G")
