"""Granular operations and status.

Each command does one thing the protocols are built from, for operators
who need to finish a partially failed run by hand:
- status: roles, replication, applications and edge membership
- promote: promote the local standby
- rebuild-standby: resync the local node from a primary
- enable-replication: allow a standby to stream from the local database
- switch-db: repoint the local application
- edge add/remove: change membership of one node on every edge
"""

import asyncio
from typing import Awaitable, Callable, Optional, TypeVar

import typer
from rich.markup import escape
from rich.table import Table

from idp_failover.cli.common import (
    CliState,
    auto_confirm,
    confirm_yes,
    console,
    get_credential,
)
from idp_failover.exceptions import (
    ConfigError,
    Declined,
    HostUnreachable,
    MutationFailure,
    StepWarning,
    ValidationError,
)
from idp_failover.factory import build_services
from idp_failover.status import collect_status
from idp_failover.types import ReplicationRole

edge_app = typer.Typer(help="Edge load balancer membership")

T = TypeVar("T")

_ROLE_STYLES = {
    ReplicationRole.PRIMARY: "[bold green]primary[/bold green]",
    ReplicationRole.STANDBY: "[cyan]standby[/cyan]",
    ReplicationRole.UNREACHABLE: "[red]unreachable[/red]",
    ReplicationRole.ERROR: "[red]error[/red]",
}


def _execute(state: CliState, operation: Callable[[], Awaitable[T]]) -> T:
    """Run an async operation, mapping failures onto exit codes 1 and 2."""
    try:
        return asyncio.run(operation())
    except Declined:
        console.print("[yellow]Aborted.[/yellow]")
        raise typer.Exit(1)
    except (ValidationError, ConfigError) as e:
        console.print(f"[red]Error:[/red] {escape(state.redactor.redact(str(e)))}")
        raise typer.Exit(1)
    except (MutationFailure, HostUnreachable) as e:
        console.print(f"[red]Failed:[/red] {escape(state.redactor.redact(str(e)))}")
        for key, value in getattr(e, "observed", {}).items():
            console.print(f"  observed {key}: {escape(state.redactor.redact(value))}")
        raise typer.Exit(2)


def status(
    ctx: typer.Context,
    as_json: bool = typer.Option(False, "--json", help="Print JSON instead of tables"),
) -> None:
    """Show database, application and edge state for both nodes."""
    state: CliState = ctx.obj
    cluster = state.cluster()

    async def _status():
        return await collect_status(build_services(cluster))

    report = _execute(state, _status)
    if as_json:
        typer.echo(report.model_dump_json(indent=2))
        return

    table = Table(title="IDP Cluster Status")
    table.add_column("Node", style="cyan")
    table.add_column("Database")
    table.add_column("Role")
    table.add_column("Replication", style="dim")
    table.add_column("Application")
    table.add_column("DB URL", style="blue")
    for node in report.nodes:
        name = f"{node.node} (local)" if node.local else node.node
        table.add_row(
            name,
            node.database,
            _ROLE_STYLES.get(node.role, node.role.value),
            escape(node.replication or "-"),
            escape(node.application),
            escape(node.db_url or "-"),
        )
    console.print(table)

    edges = Table(title="Edge Membership")
    edges.add_column("Edge", style="cyan")
    for node in report.nodes:
        edges.add_column(node.node)
    for edge in report.edges:
        if edge.error:
            cells = [f"[yellow]{escape(edge.error)}[/yellow]"] * len(report.nodes)
        else:
            cells = [
                "[green]yes[/green]" if cluster.node(node.node).app_endpoint in edge.backends
                else "[red]no[/red]"
                for node in report.nodes
            ]
        edges.add_row(edge.name, *cells)
    console.print(edges)


def promote(
    ctx: typer.Context,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Promote the local standby database to primary."""
    state: CliState = ctx.obj
    cluster = state.cluster()
    confirm = auto_confirm if yes else confirm_yes
    if not confirm(f"Promote {cluster.local.id} to PRIMARY?"):
        console.print("[yellow]Aborted.[/yellow]")
        raise typer.Exit(1)

    async def _promote():
        return await build_services(cluster).promotion.promote(cluster.local)

    _execute(state, _promote)
    console.print(f"[green]{cluster.local.id} promoted to primary[/green]")


def rebuild_standby(
    ctx: typer.Context,
    source: str = typer.Option(..., "--source", help="Node id of the primary to copy from"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    replication_password: Optional[str] = typer.Option(
        None, "--replication-password", help="Replication password (default: $REPL_PASSWORD or prompt)"
    ),
) -> None:
    """Destroy local database data and rebuild it as a standby of SOURCE."""
    state: CliState = ctx.obj
    cluster = state.cluster()
    try:
        source_node = cluster.node(source)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    credential = get_credential(state, replication_password)

    async def _rebuild():
        services = build_services(cluster, confirm=auto_confirm if yes else confirm_yes)
        return await services.resync.resync(cluster.local, source_node, credential)

    try:
        result = _execute(state, _rebuild)
    except StepWarning as e:
        console.print(f"[yellow]Warning:[/yellow] {escape(str(e))}")
        return
    console.print(f"[green]{result.node_id} is running as standby of {result.source_id}[/green]")


def enable_replication(
    ctx: typer.Context,
    standby: Optional[str] = typer.Option(
        None, "--standby", help="Node id allowed to stream from this node (default: the peer)"
    ),
) -> None:
    """Let a standby stream from the local database by granting it in pg_hba.conf."""
    state: CliState = ctx.obj
    cluster = state.cluster()
    try:
        standby_node = cluster.node(standby) if standby else cluster.peer
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)
    if standby_node.id == cluster.local.id:
        console.print(f"[red]Error:[/red] self-reference: {cluster.local.id} cannot replicate from itself")
        raise typer.Exit(1)

    async def _allow():
        result = await build_services(cluster).db.allow_replication(cluster.local, standby_node)
        if not result.ok:
            raise MutationFailure("enable-replication", cluster.local.id, result.summary())
        return result

    _execute(state, _allow)
    console.print(
        f"[green]{cluster.local.id} accepts replication from {standby_node.id} "
        f"({escape(standby_node.replication_client)})[/green]"
    )


def switch_db(
    ctx: typer.Context,
    db_host: str = typer.Option(..., "--db-host", help="Database host, or 'local' for this node's container"),
) -> None:
    """Point the local application at DB_HOST and restart it."""
    state: CliState = ctx.obj
    cluster = state.cluster()

    async def _switch():
        services = build_services(cluster)
        target = db_host
        if db_host == "local":
            target = await services.redirector.resolve_target(cluster.local, cluster.local)
        return await services.redirector.redirect(cluster.local, target)

    url = _execute(state, _switch)
    console.print(f"[green]Application now uses {escape(url)}[/green]")


def _membership(ctx: typer.Context, action: str, target: str | None) -> None:
    state: CliState = ctx.obj
    cluster = state.cluster()
    try:
        node = cluster.node(target) if target else cluster.local
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {escape(str(e))}")
        raise typer.Exit(1)

    async def _update():
        edges = build_services(cluster).edges
        if action == "add":
            return await edges.add_backend(node)
        return await edges.remove_backend(node)

    result = _execute(state, _update)
    table = Table(title=f"{action} {node.app_endpoint}")
    table.add_column("Edge", style="cyan")
    table.add_column("Result")
    for name in result.applied:
        table.add_row(name, "[green]changed[/green]")
    for name in result.unchanged:
        table.add_row(name, "[dim]unchanged[/dim]")
    for name, reason in result.failed.items():
        table.add_row(name, f"[red]failed: {escape(reason)}[/red]")
    console.print(table)
    if not result.ok:
        console.print("[yellow]Membership differs between edges; needs manual reconciliation[/yellow]")


@edge_app.command("add")
def edge_add(
    ctx: typer.Context,
    target: Optional[str] = typer.Option(None, "--target", help="Node id (default: this node)"),
) -> None:
    """Add a node's backend URL on every edge."""
    _membership(ctx, "add", target)


@edge_app.command("remove")
def edge_remove(
    ctx: typer.Context,
    target: Optional[str] = typer.Option(None, "--target", help="Node id (default: this node)"),
) -> None:
    """Remove a node's backend URL from every edge."""
    _membership(ctx, "remove", target)
