"""Lifecycle orchestration for game servers hosted on spot instances.

Each public method drives one CLI operation to completion. Every step that
changes a server record persists it before the next step starts, so after a
failure the registry reflects the last completed step. Cloud and remote side
effects are not rolled back; an operator reconciles them by hand.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, replace

from .config import AppConfig
from .errors import AlreadyRunningError, NotRunningError, RemoteCommandError, ServerConflictError
from .logging import OperationScope
from .providers.ssh import RemoteExecutor, Script
from .provisioner import CloudClient, Provisioner
from .state.models import Server, ServerStatus, ServiceTier
from .state.registry import ServerRegistry
from .transfer import TransferAgent

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class OrchestratorSettings:
    """Tunables for lifecycle operations."""

    regions: tuple[str, ...]
    default_tier: ServiceTier = ServiceTier.T2C2G
    settle_delay: float = 10.0
    step_delay: float = 1.0
    ready_timeout: float = 300.0
    self_test_name: str = "test"

    @classmethod
    def from_config(cls, config: AppConfig) -> OrchestratorSettings:
        """Derive settings from the resolved application config."""
        return cls(
            regions=config.cloud.regions,
            default_tier=config.default_tier,
            settle_delay=config.timing.settle_delay,
            step_delay=config.timing.step_delay,
            ready_timeout=config.timing.ready_timeout,
            self_test_name=config.self_test_name,
        )


def _pause(seconds: float) -> None:
    if seconds > 0:
        time.sleep(seconds)


def _address(server: Server) -> str:
    if server.ip is None:
        raise NotRunningError(f"Server '{server.name}' has no instance address.")
    return server.ip


def _instance_ref(server: Server) -> tuple[str, str]:
    if server.region is None or server.instance_id is None:
        raise NotRunningError(f"Server '{server.name}' has no instance attached.")
    return server.region, server.instance_id


def _record(
    op: OperationScope | None,
    name: str,
    *,
    status: str = "success",
    detail: str = "",
) -> None:
    if op is not None:
        op.add_step(name, status=status, detail=detail or None)


@dataclass
class LifecycleOrchestrator:
    """Drive create/restart/backup/stop for named servers."""

    registry: ServerRegistry
    provisioner: Provisioner
    executor: RemoteExecutor
    transfer: TransferAgent
    cloud: CloudClient
    settings: OrchestratorSettings

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------
    def new_save(
        self,
        name: str,
        *,
        tier: ServiceTier | None = None,
        op: OperationScope | None = None,
    ) -> Server:
        """Provision a fresh server for the new save *name*."""
        LOGGER.info("Creating new save: %s", name)
        if name in self.registry:
            raise ServerConflictError(f"Save '{name}' already exists.")

        server = self.provisioner.provision(
            name, self.settings.regions, tier or self.settings.default_tier
        )
        self.registry.add(server)
        _record(op, "provision", detail=f"{server.instance_id} {server.region} {server.ip}")

        self._await_host(server, op)
        self._bring_up(server, op)
        return self.registry.get(name)

    def restart_save(self, name: str, *, op: OperationScope | None = None) -> Server:
        """Bring the stopped server *name* back on a new instance."""
        LOGGER.info("Restarting save: %s", name)
        server = self.registry.get(name)

        if server.has_instance:
            if self.executor.probe(_address(server)):
                server = replace(server, status=ServerStatus.RUNNING)
                self.registry.update(name, server)
                _record(op, "probe", detail=f"{server.ip} reachable")
                raise AlreadyRunningError(f"Server '{name}' is already running at {server.ip}.")
            LOGGER.warning(
                "Instance %s (%s) is unreachable; treating server %s as stopped.",
                server.instance_id,
                server.ip,
                name,
            )
            server = server.detach_instance()
            self.registry.update(name, server)
            _record(op, "probe", status="warning", detail="instance unreachable; record cleared")

        provisioned = self.provisioner.provision(
            name, self.settings.regions, server.service_instance_type
        )
        server = replace(
            server,
            status=ServerStatus.RUNNING,
            ip=provisioned.ip,
            region=provisioned.region,
            instance_id=provisioned.instance_id,
        )
        self.registry.update(name, server)
        _record(op, "provision", detail=f"{server.instance_id} {server.region} {server.ip}")

        self._await_host(server, op)
        self._bring_up(server, op)
        return self.registry.get(name)

    def save_backup(self, name: str, *, op: OperationScope | None = None) -> Server:
        """Capture a save from the running server *name*."""
        LOGGER.info("Backing up save: %s", name)
        server = self._require_running(self.registry.get(name))
        return self._backup(server, op)

    def stop_server(self, name: str, *, op: OperationScope | None = None) -> Server:
        """Back up, terminate the instance and mark *name* stopped."""
        LOGGER.info("Stopping server: %s", name)
        server = self._require_running(self.registry.get(name))
        server = self._backup(server, op)

        server = replace(server, status=ServerStatus.STOPPING)
        self.registry.update(name, server)

        region, instance_id = _instance_ref(server)
        self.cloud.terminate_instance(region, instance_id)
        _record(op, "terminate", detail=f"{instance_id} {region}")

        server = server.detach_instance()
        self.registry.update(name, server)
        _record(op, "registry.update", detail="status=Stopped")
        return server

    def self_test(self, *, op: OperationScope | None = None) -> Server:
        """Run restore and start against the well-known test record."""
        name = self.settings.self_test_name
        LOGGER.info("Running self-test against server: %s", name)
        server = self.registry.get(name)
        if not server.has_instance:
            raise NotRunningError(f"Self-test server '{name}' has no instance attached.")
        self._restore(server, op)
        _pause(self.settings.step_delay)
        self._start(server, op)
        return server

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------
    def _require_running(self, server: Server) -> Server:
        if server.status is not ServerStatus.RUNNING or not server.has_instance:
            raise NotRunningError(
                f"Server '{server.name}' is not running (status={server.status.value})."
            )
        return server

    def _await_host(self, server: Server, op: OperationScope | None) -> None:
        host = _address(server)
        LOGGER.info(
            "Waiting for instance to be ready (settle %.0fs, timeout %.0fs)...",
            self.settings.settle_delay,
            self.settings.ready_timeout,
        )
        _pause(self.settings.settle_delay)
        probes = self.executor.wait_until_reachable(host, timeout=self.settings.ready_timeout)
        _record(op, "ready", detail=f"{host} after {probes} probe(s)")

    def _bring_up(self, server: Server, op: OperationScope | None) -> None:
        self._install(server, op)
        _pause(self.settings.step_delay)
        self._restore(server, op)
        _pause(self.settings.step_delay)
        self._start(server, op)

    def _install(self, server: Server, op: OperationScope | None) -> None:
        host = _address(server)
        LOGGER.info("[2] Initialising server %s at %s", server.name, host)
        self.transfer.upload_scripts(host)
        output = self.executor.run(host, Script.INSTALL)
        LOGGER.info("[2] Install done: %s", output)
        _record(op, "install", detail=output)

    def _restore(self, server: Server, op: OperationScope | None) -> None:
        host = _address(server)
        if server.save is None:
            LOGGER.info("[3] No save recorded for %s; skipping restore.", server.name)
            _record(op, "restore", status="skipped", detail="no save")
            return
        LOGGER.info("[3] Restoring %s to %s at %s", server.save, server.name, host)
        self.transfer.upload_save(server.save, host)
        output = self.executor.run(host, Script.RESTORE, server.save)
        LOGGER.info("[3] Restore done: %s", output)
        _record(op, "restore", detail=server.save)

    def _start(self, server: Server, op: OperationScope | None) -> None:
        host = _address(server)
        LOGGER.info("[4] Starting server %s at %s", server.name, host)
        output = self.executor.run(host, Script.START)
        LOGGER.info("[4] Start done: %s", output)
        _record(op, "start", detail=output)

    def _backup(self, server: Server, op: OperationScope | None) -> Server:
        host = _address(server)
        LOGGER.info("[5] Backing up %s at %s", server.name, host)
        # The backup script reports the produced save name as its last log line.
        save = self.executor.run(host, Script.BACKUP).strip()
        if not save:
            raise RemoteCommandError(f"Backup on {host} reported no save name.")
        self.transfer.download_save(save, host)
        server = server.with_save(save)
        self.registry.update(server.name, server)
        LOGGER.info("[5] Backup done: %s", save)
        _record(op, "backup", detail=save)
        return server


__all__ = ["LifecycleOrchestrator", "OrchestratorSettings"]
