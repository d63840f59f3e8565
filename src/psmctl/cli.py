"""Typer-powered command line for ``psmctl``.

Each lifecycle subcommand resolves the runtime once, wraps its work in a
structured operation scope and maps :class:`~psmctl.errors.PsmError`
subclasses onto the CLI exit codes.
"""
from __future__ import annotations

import textwrap
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, TypeVar

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import AppConfig, ConfigError, load_config
from .errors import PsmError, exit_code_for
from .exit_codes import ExitCode
from .logging import OperationScope, StructuredLogger, configure_logging
from .orchestrator import LifecycleOrchestrator, OrchestratorSettings
from .providers import EC2Client, RemoteExecutor, SSHSessionFactory
from .provisioner import Provisioner
from .state import Server, ServerRegistry, ServiceTier
from .transfer import LocalRoot, TransferAgent

console = Console()

T = TypeVar("T")

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to psmctl's YAML config file.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit output as JSON instead of a table.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Game server lifecycle manager.

        Saves live locally between sessions. Starting a save provisions the
        cheapest matching spot instance, installs the server, restores the
        save and starts the game; stopping backs the save up and releases
        the instance.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: ServerRegistry
    logger: StructuredLogger
    orchestrator: LifecycleOrchestrator | None = None


def _build_orchestrator(config: AppConfig, registry: ServerRegistry) -> LifecycleOrchestrator:
    """Wire the cloud, SSH and transfer providers into an orchestrator."""
    cloud = EC2Client(config.cloud)
    sessions = SSHSessionFactory(config.ssh)
    executor = RemoteExecutor(
        sessions=sessions,
        remote_dir=config.storage.remote_dir,
        poll_interval=config.timing.poll_interval,
        script_timeout=config.timing.script_timeout,
        probe_timeout=config.ssh.probe_timeout,
    )
    transfer = TransferAgent(
        local=LocalRoot(config.storage.local_dir),
        remote_dir=config.storage.remote_dir,
        sessions=sessions,
    )
    provisioner = Provisioner(
        cloud=cloud,
        reference_region=config.cloud.reference_region,
        security_group_tag=config.cloud.security_group_tag,
    )
    return LifecycleOrchestrator(
        registry=registry,
        provisioner=provisioner,
        executor=executor,
        transfer=transfer,
        cloud=cloud,
        settings=OrchestratorSettings.from_config(config),
    )


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    verbose: bool = False,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    try:
        config = load_config(config_file=config_file)
        configure_logging(config.logs_dir, verbose=verbose)
        registry = ServerRegistry.load(config.registry_file)
    except ConfigError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc
    except PsmError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(exit_code_for(exc))) from exc

    runtime = RuntimeContext(
        config=config,
        registry=registry,
        logger=StructuredLogger(config.logs_dir),
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


def _get_orchestrator(runtime: RuntimeContext) -> LifecycleOrchestrator:
    if runtime.orchestrator is None:
        runtime.orchestrator = _build_orchestrator(runtime.config, runtime.registry)
    return runtime.orchestrator


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the psmctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Log debug detail to the console.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, verbose)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"psmctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, verbose)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = 2,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _run_step(op: OperationScope, action: Callable[[], T]) -> T:
    """Run *action*, translating psmctl failures into CLI exits."""
    try:
        return action()
    except PsmError as exc:
        _command_error(
            op,
            str(exc),
            rc=int(exit_code_for(exc)),
            errors=[f"{exc.__class__.__name__}: {exc}"],
        )


def _server_rows(server: Server) -> list[tuple[str, str]]:
    return [
        ("Name", server.name),
        ("Status", server.status.value),
        ("Tier", server.service_instance_type.value),
        ("Save", server.save or "-"),
        ("IP", server.ip or "-"),
        ("Region", server.region or "-"),
        ("Instance", server.instance_id or "-"),
    ]


def _render_server(server: Server) -> None:
    table = Table(show_header=False)
    for key, value in _server_rows(server):
        table.add_row(key, value)
    console.print(table)


def _target(name: str) -> dict[str, object]:
    return {"kind": "server", "name": name}


@app.command("new")
def new_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the new save."),
    tier: str | None = typer.Option(
        None,
        "--tier",
        help="Service tier for the instance (T2C2G, T2C16G, T4C16G, T4C32G).",
    ),
) -> None:
    """Create a new save on a freshly provisioned instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "new",
        args={"name": name, "tier": tier},
        target=_target(name),
    ) as op:
        selected: ServiceTier | None = None
        if tier is not None:
            try:
                selected = ServiceTier.parse(tier)
            except ValueError as exc:
                _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))

        orchestrator = _get_orchestrator(runtime)
        server = _run_step(op, lambda: orchestrator.new_save(name, tier=selected, op=op))
        console.print(f"[green]Server '{server.name}' is running at {server.ip}.[/green]")
        _render_server(server)
        op.success(
            f"Created server '{server.name}'.",
            changed=1,
            context={"server": server.to_dict()},
        )


@app.command("start")
def start_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the save to start."),
) -> None:
    """Start a stopped save on a new instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("start", args={"name": name}, target=_target(name)) as op:
        orchestrator = _get_orchestrator(runtime)
        server = _run_step(op, lambda: orchestrator.restart_save(name, op=op))
        console.print(f"[green]Server '{server.name}' is running at {server.ip}.[/green]")
        _render_server(server)
        op.success(
            f"Started server '{server.name}'.",
            changed=1,
            context={"server": server.to_dict()},
        )


@app.command("save")
def save_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the running server to back up."),
) -> None:
    """Back up the save of a running server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("save", args={"name": name}, target=_target(name)) as op:
        orchestrator = _get_orchestrator(runtime)
        server = _run_step(op, lambda: orchestrator.save_backup(name, op=op))
        console.print(f"[green]Saved '{server.name}' as {server.save}.[/green]")
        op.success(
            f"Backed up server '{server.name}'.",
            changed=1,
            context={"save": server.save},
        )


@app.command("stop")
def stop_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the running server to stop."),
) -> None:
    """Back up a running server and release its instance."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation("stop", args={"name": name}, target=_target(name)) as op:
        orchestrator = _get_orchestrator(runtime)
        server = _run_step(op, lambda: orchestrator.stop_server(name, op=op))
        console.print(f"[green]Server '{server.name}' stopped; save {server.save}.[/green]")
        op.success(
            f"Stopped server '{server.name}'.",
            changed=1,
            context={"save": server.save},
        )


@app.command("test")
def test_command(ctx: typer.Context) -> None:
    """Re-run restore and start against the self-test server."""
    runtime = _get_runtime(ctx)
    name = runtime.config.self_test_name
    with runtime.logger.operation("test", args={}, target=_target(name)) as op:
        orchestrator = _get_orchestrator(runtime)
        server = _run_step(op, lambda: orchestrator.self_test(op=op))
        console.print(f"[green]Self-test against '{server.name}' completed.[/green]")
        op.success(f"Self-test against '{server.name}' completed.", changed=0)


@app.command("list")
def list_command(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """List known servers and their last recorded state."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "list",
        args={"json": json_output},
        target={"kind": "server", "scope": "all"},
    ) as op:
        servers = _run_step(op, runtime.registry.list_servers)
        if json_output:
            console.print_json(data={"servers": [server.to_dict() for server in servers]})
            op.success("Listed servers as JSON.", changed=0)
            return

        if not servers:
            console.print("No servers registered.")
            op.success("Listed servers.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        for column, _ in _server_rows(servers[0]):
            table.add_column(column)
        for server in servers:
            table.add_row(*(value for _, value in _server_rows(server)))
        console.print(table)
        op.success("Listed servers.", changed=0)


@app.command("show")
def show_command(
    ctx: typer.Context,
    name: str = typer.Argument(..., help="Name of the server to display."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the recorded state of one server."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "show",
        args={"name": name, "json": json_output},
        target=_target(name),
    ) as op:
        server = _run_step(op, lambda: runtime.registry.get(name))
        if json_output:
            console.print_json(data=server.to_dict())
            op.success("Displayed server details as JSON.", changed=0)
            return
        _render_server(server)
        op.success("Displayed server details.", changed=0)


@config_app.command("show")
def config_show(ctx: typer.Context, json_output: bool = JSON_OPTION) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for section, value in data.items():
            if isinstance(value, dict):
                for key, item in value.items():
                    table.add_row(f"{section}.{key}", str(item))
            else:
                table.add_row(section, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["RuntimeContext", "app", "main"]
