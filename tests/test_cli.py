"""Tests for the psmctl command line."""
from __future__ import annotations

import json
from pathlib import Path

import pytest
from conftest import FakeCloud, FakeExecutor, FakeTransfer, offer, running_server, stopped_server
from typer.testing import CliRunner, Result

from psmctl import __version__, cli
from psmctl.cli import app
from psmctl.config import AppConfig
from psmctl.orchestrator import LifecycleOrchestrator, OrchestratorSettings
from psmctl.provisioner import Provisioner
from psmctl.state import ServerRegistry, ServerStatus

runner = CliRunner()


class Harness:
    """Config file, registry and fakes shared by one CLI test."""

    def __init__(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        self.tmp_path = tmp_path
        self.config_path = tmp_path / "psmctl.yml"
        self.registry_path = tmp_path / "servers.yml"
        self.logs_dir = tmp_path / "logs"
        self.config_path.write_text(
            f"registry_file: {self.registry_path}\n"
            f"logs_dir: {self.logs_dir}\n"
            "cloud:\n"
            "  regions: [us-east-1]\n"
            "timing:\n"
            "  settle_delay: 0\n"
            "  step_delay: 0\n"
        )
        self.registry = ServerRegistry.load(self.registry_path)
        self.cloud = FakeCloud(prices={"us-east-1": [offer(0.0091, "us-east-1", "us-east-1a")]})
        self.executor = FakeExecutor()
        self.transfer = FakeTransfer()
        self.built = 0
        monkeypatch.setattr(cli, "_build_orchestrator", self._build)

    def _build(self, config: AppConfig, registry: ServerRegistry) -> LifecycleOrchestrator:
        self.built += 1
        return LifecycleOrchestrator(
            registry=registry,
            provisioner=Provisioner(
                cloud=self.cloud,
                reference_region=config.cloud.reference_region,
                security_group_tag=config.cloud.security_group_tag,
            ),
            executor=self.executor,  # type: ignore[arg-type]
            transfer=self.transfer,  # type: ignore[arg-type]
            cloud=self.cloud,
            settings=OrchestratorSettings.from_config(config),
        )

    def invoke(self, *args: str) -> Result:
        return runner.invoke(app, ["--config-file", str(self.config_path), *args])

    def operations(self) -> list[dict[str, object]]:
        path = self.logs_dir / "operations.jsonl"
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


@pytest.fixture
def harness(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Harness:
    """CLI harness with every provider faked."""
    return Harness(tmp_path, monkeypatch)


def _json_payload(result: Result) -> object:
    text = result.stdout
    return json.loads(text[text.index("{") :])


def test_version_flag_reports_version(harness: Harness) -> None:
    """--version prints the version and logs the operation."""
    result = harness.invoke("--version")

    assert result.exit_code == 0
    assert f"psmctl {__version__}" in result.stdout
    (record,) = harness.operations()
    assert record["command"] == "root --version"


def test_help_lists_commands(harness: Harness) -> None:
    """Running without a subcommand prints help."""
    result = harness.invoke()

    assert result.exit_code == 0
    for command in ("new", "start", "save", "stop", "test", "list", "show"):
        assert command in result.stdout


def test_new_creates_running_server(harness: Harness) -> None:
    """`new` provisions a server and records it as Running."""
    result = harness.invoke("new", "foo")

    assert result.exit_code == 0, result.output
    assert "203.0.113.1" in result.stdout
    server = harness.registry.get("foo")
    assert server.status is ServerStatus.RUNNING
    assert server.save is None
    (record,) = harness.operations()
    assert record["command"] == "new"
    assert record["result"]["status"] == "success"
    assert [step["name"] for step in record["steps"]][:2] == ["provision", "ready"]


def test_new_rejects_unknown_tier(harness: Harness) -> None:
    """An unknown tier is a validation error and builds nothing."""
    result = harness.invoke("new", "foo", "--tier", "T9C99G")

    assert result.exit_code == 2
    assert harness.cloud.launches == []
    assert "foo" not in harness.registry


def test_new_existing_name_is_conflict(harness: Harness) -> None:
    """Duplicate names exit with the validation code."""
    harness.registry.add(stopped_server("foo"))

    result = harness.invoke("new", "foo")

    assert result.exit_code == 2
    (record,) = harness.operations()
    assert record["result"]["status"] == "error"
    assert record["result"]["rc"] == 2
    assert record["result"]["errors"][0].startswith("ServerConflictError")


def test_new_without_capacity_is_provider_error(harness: Harness) -> None:
    """Exhausted spot capacity exits with the provider code."""
    harness.cloud.failing_zones = {"us-east-1a"}

    result = harness.invoke("new", "foo")

    assert result.exit_code == 4
    assert "foo" not in harness.registry


def test_start_on_running_server_is_refused(harness: Harness) -> None:
    """`start` on a reachable server exits 2 without provisioning."""
    harness.registry.add(running_server("foo"))

    result = harness.invoke("start", "foo")

    assert result.exit_code == 2
    assert harness.cloud.launches == []


def test_start_restores_stopped_server(harness: Harness) -> None:
    """`start` brings a stopped save back online."""
    harness.registry.add(stopped_server("foo", save="save-old.tar"))

    result = harness.invoke("start", "foo")

    assert result.exit_code == 0, result.output
    assert harness.registry.get("foo").instance_id == "i-0001"
    assert harness.transfer.save_uploads == [("save-old.tar", "203.0.113.1")]


def test_save_reports_new_save(harness: Harness) -> None:
    """`save` prints and records the produced save name."""
    harness.registry.add(running_server("foo"))

    result = harness.invoke("save", "foo")

    assert result.exit_code == 0, result.output
    assert "save-2024-01-01.tar" in result.stdout
    assert harness.registry.get("foo").save == "save-2024-01-01.tar"


def test_stop_on_stopped_server_exits_validation(harness: Harness) -> None:
    """`stop` on a stopped server exits 2 and terminates nothing."""
    harness.registry.add(stopped_server("foo"))

    result = harness.invoke("stop", "foo")

    assert result.exit_code == 2
    assert harness.cloud.terminated == []


def test_stop_running_server(harness: Harness) -> None:
    """`stop` backs up, terminates and marks the server stopped."""
    harness.registry.add(running_server("foo"))

    result = harness.invoke("stop", "foo")

    assert result.exit_code == 0, result.output
    assert harness.cloud.terminated == [("us-east-1", "i-existing")]
    assert harness.registry.get("foo").status is ServerStatus.STOPPED


def test_self_test_command(harness: Harness) -> None:
    """`test` reruns restore and start on the test record."""
    harness.registry.add(running_server("test"))

    result = harness.invoke("test")

    assert result.exit_code == 0, result.output
    assert len(harness.executor.runs) == 2


def test_list_json(harness: Harness) -> None:
    """`list --json` emits every record without building providers."""
    harness.registry.add(running_server("foo"))
    harness.registry.add(stopped_server("bar"))

    result = harness.invoke("list", "--json")

    assert result.exit_code == 0
    payload = _json_payload(result)
    assert [server["name"] for server in payload["servers"]] == ["foo", "bar"]
    assert harness.built == 0


def test_list_table_when_empty(harness: Harness) -> None:
    """An empty registry is reported plainly."""
    result = harness.invoke("list")

    assert result.exit_code == 0
    assert "No servers registered." in result.stdout


def test_show_json_and_missing(harness: Harness) -> None:
    """`show` renders one record or exits 2 when unknown."""
    harness.registry.add(running_server("foo"))

    shown = harness.invoke("show", "foo", "--json")
    missing = harness.invoke("show", "ghost")

    assert shown.exit_code == 0
    assert _json_payload(shown)["ip"] == "198.51.100.7"
    assert missing.exit_code == 2


def test_config_show_json(harness: Harness) -> None:
    """`config show --json` renders the merged configuration."""
    result = harness.invoke("config", "show", "--json")

    assert result.exit_code == 0
    payload = _json_payload(result)
    assert payload["cloud"]["regions"] == ["us-east-1"]
    assert payload["timing"]["settle_delay"] == 0.0


def test_invalid_config_exits_validation(harness: Harness) -> None:
    """Unknown configuration keys stop the CLI before any command runs."""
    harness.config_path.write_text("mystery: true\n")

    result = harness.invoke("list")

    assert result.exit_code == 2


def test_corrupt_registry_exits_environment(harness: Harness) -> None:
    """An unreadable registry is an environment failure."""
    harness.registry_path.write_text("servers: [unclosed\n")

    result = harness.invoke("list")

    assert result.exit_code == 3
