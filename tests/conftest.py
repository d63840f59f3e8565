"""Pytest configuration helpers and shared fakes for the test suite."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path

import pytest

from psmctl.errors import CloudError, ConnectError
from psmctl.orchestrator import LifecycleOrchestrator, OrchestratorSettings
from psmctl.providers.ec2 import SecurityGroup, SpotPrice
from psmctl.providers.ssh import Script
from psmctl.provisioner import Provisioner
from psmctl.state import Server, ServerRegistry, ServerStatus, ServiceTier


@dataclass
class FakeCloud:
    """In-memory stand-in for :class:`psmctl.providers.ec2.EC2Client`."""

    prices: dict[str, list[SpotPrice]] = field(default_factory=dict)
    keys: list[str] = field(default_factory=lambda: ["psm-key"])
    groups: list[SecurityGroup] = field(
        default_factory=lambda: [
            SecurityGroup("sg-default", "default"),
            SecurityGroup("sg-game", "PalWorld-game"),
        ]
    )
    failing_zones: set[str] = field(default_factory=set)
    failing_regions: set[str] = field(default_factory=set)
    key_lookups: list[str] = field(default_factory=list)
    launches: list[tuple[str, str, str, tuple[str, ...], tuple[str, ...]]] = field(
        default_factory=list
    )
    terminated: list[tuple[str, str]] = field(default_factory=list)

    def spot_prices(self, region: str, instance_types: Sequence[str]) -> list[SpotPrice]:
        if region in self.failing_regions:
            raise CloudError(f"pricing unavailable in {region}")
        return [
            offer for offer in self.prices.get(region, []) if offer.instance_type in instance_types
        ]

    def key_pair_names(self, region: str) -> list[str]:
        self.key_lookups.append(region)
        return list(self.keys)

    def security_groups(self, region: str) -> list[SecurityGroup]:
        return list(self.groups)

    def run_instance(
        self,
        region: str,
        zone: str,
        instance_type: str,
        key_names: Sequence[str],
        security_group_ids: Sequence[str],
    ) -> str:
        self.launches.append(
            (region, zone, instance_type, tuple(key_names), tuple(security_group_ids))
        )
        if zone in self.failing_zones:
            raise CloudError(f"InsufficientInstanceCapacity in {zone}")
        return f"i-{len(self.launches):04d}"

    def instance_ip(self, region: str, instance_id: str) -> str:
        return f"203.0.113.{int(instance_id.split('-')[1])}"

    def terminate_instance(self, region: str, instance_id: str) -> None:
        self.terminated.append((region, instance_id))


@dataclass
class FakeExecutor:
    """Records script runs and answers probes without a network."""

    reachable: bool = True
    outputs: dict[Script, str] = field(
        default_factory=lambda: {
            Script.INSTALL: "install ok",
            Script.RESTORE: "restore ok",
            Script.START: "server started",
            Script.BACKUP: "save-2024-01-01.tar",
        }
    )
    runs: list[tuple[str, Script, tuple[str, ...]]] = field(default_factory=list)
    probes: list[str] = field(default_factory=list)
    waits: list[tuple[str, float]] = field(default_factory=list)

    def probe(self, host: str) -> bool:
        self.probes.append(host)
        return self.reachable

    def wait_until_reachable(self, host: str, *, timeout: float) -> int:
        self.waits.append((host, timeout))
        if not self.reachable:
            raise ConnectError(f"{host} unreachable")
        return 1

    def run(self, host: str, script: Script, *args: str) -> str:
        self.runs.append((host, script, args))
        return self.outputs[script]


@dataclass
class FakeTransfer:
    """Records blob movements requested by the orchestrator."""

    script_uploads: list[str] = field(default_factory=list)
    save_uploads: list[tuple[str, str]] = field(default_factory=list)
    save_downloads: list[tuple[str, str]] = field(default_factory=list)

    def upload_scripts(self, host: str) -> list[str]:
        self.script_uploads.append(host)
        return [script.relative_path for script in Script]

    def upload_save(self, save: str, host: str) -> int:
        self.save_uploads.append((save, host))
        return 1

    def download_save(self, save: str, host: str) -> int:
        self.save_downloads.append((save, host))
        return 1


def offer(price: float, region: str, zone: str, instance_type: str = "t3.small") -> SpotPrice:
    """Return a spot offer for tests."""
    return SpotPrice(price=price, region=region, zone=zone, instance_type=instance_type)


def running_server(name: str = "foo", *, save: str | None = "save-old.tar") -> Server:
    """Return a consistent running record."""
    return Server(
        name=name,
        status=ServerStatus.RUNNING,
        service_instance_type=ServiceTier.T2C2G,
        save=save,
        ip="198.51.100.7",
        region="us-east-1",
        instance_id="i-existing",
    )


def stopped_server(name: str = "foo", *, save: str | None = "save-old.tar") -> Server:
    """Return a consistent stopped record."""
    return Server(
        name=name,
        status=ServerStatus.STOPPED,
        service_instance_type=ServiceTier.T2C2G,
        save=save,
    )


@pytest.fixture
def fake_cloud() -> FakeCloud:
    """Cloud with one cheap offer in each of two regions."""
    return FakeCloud(
        prices={
            "us-east-1": [offer(0.0091, "us-east-1", "us-east-1a")],
            "us-west-2": [offer(0.0120, "us-west-2", "us-west-2b")],
        }
    )


@pytest.fixture
def fake_executor() -> FakeExecutor:
    """Executor whose hosts are reachable."""
    return FakeExecutor()


@pytest.fixture
def fake_transfer() -> FakeTransfer:
    """Transfer agent that only records calls."""
    return FakeTransfer()


@pytest.fixture
def registry(tmp_path: Path) -> ServerRegistry:
    """Empty registry backed by a temporary file."""
    return ServerRegistry.load(tmp_path / "servers.yml")


@pytest.fixture
def orchestrator(
    registry: ServerRegistry,
    fake_cloud: FakeCloud,
    fake_executor: FakeExecutor,
    fake_transfer: FakeTransfer,
) -> LifecycleOrchestrator:
    """Orchestrator wired to fakes with all delays disabled."""
    settings = OrchestratorSettings(
        regions=("us-east-1", "us-west-2"),
        settle_delay=0,
        step_delay=0,
        ready_timeout=5,
    )
    provisioner = Provisioner(
        cloud=fake_cloud,
        reference_region="us-east-1",
        security_group_tag="palworld",
    )
    return LifecycleOrchestrator(
        registry=registry,
        provisioner=provisioner,
        executor=fake_executor,  # type: ignore[arg-type]
        transfer=fake_transfer,  # type: ignore[arg-type]
        cloud=fake_cloud,
        settings=settings,
    )
