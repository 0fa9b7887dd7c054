"""idp-failover CLI - role transitions for the two-node identity stack."""

import asyncio
from pathlib import Path
from typing import Callable, Optional

import typer

from idp_failover.cli import ops
from idp_failover.cli.common import (
    CliState,
    auto_confirm,
    confirm_yes,
    get_credential,
    render_run,
    setup_logging,
)
from idp_failover.config import CONFIG_ENV_VAR, Cluster
from idp_failover.factory import Services, build_services
from idp_failover.orchestrator import (
    EmergencyFailover,
    PlannedSwitchover,
    Reinstatement,
    RoleTransition,
)

app = typer.Typer(
    name="idp-failover",
    help="Failover, switchover and reinstatement for the two-node identity stack",
    no_args_is_help=True,
)

app.add_typer(ops.edge_app, name="edge")
app.command("status")(ops.status)
app.command("promote")(ops.promote)
app.command("rebuild-standby")(ops.rebuild_standby)
app.command("enable-replication")(ops.enable_replication)
app.command("switch-db")(ops.switch_db)


@app.callback()
def main_callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(
        None, "--config", "-c", envvar=CONFIG_ENV_VAR,
        help="Cluster map (default: /etc/idp-failover/cluster.yaml)",
    ),
    node: Optional[str] = typer.Option(
        None, "--node", "-n", help="Local node id (default: detected from hostname)"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
) -> None:
    """Global options."""
    state = CliState(config_path=config, node=node, verbose=verbose)
    setup_logging(verbose, state.redactor)
    ctx.obj = state


def _run_protocol(
    state: CliState,
    cluster: Cluster,
    build: Callable[[Services], RoleTransition],
    as_json: bool,
) -> None:
    async def _run():
        return await build(build_services(cluster)).run()

    run = asyncio.run(_run())
    render_run(run, state.redactor, as_json=as_json)
    raise typer.Exit(run.exit_code)


@app.command("emergency-failover")
def emergency_failover(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Proceed even if the peer still answers"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run preflight and list the steps only"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    as_json: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
) -> None:
    """Promote this standby after the primary has FAILED.

    Removes the peer from every edge, stops it if it still answers, promotes
    the local database and points the local application at it.
    """
    state: CliState = ctx.obj
    cluster = state.cluster()
    confirm = auto_confirm if yes else confirm_yes
    _run_protocol(
        state,
        cluster,
        lambda services: EmergencyFailover(services, confirm, force=force, dry_run=dry_run),
        as_json,
    )


@app.command("planned-switchover")
def planned_switchover(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Run preflight and list the steps only"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    as_json: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
    replication_password: Optional[str] = typer.Option(
        None, "--replication-password", help="Replication password (default: $REPL_PASSWORD or prompt)"
    ),
) -> None:
    """Swap roles with a healthy primary. Run on the current standby."""
    state: CliState = ctx.obj
    cluster = state.cluster()
    confirm = auto_confirm if yes else confirm_yes
    _run_protocol(
        state,
        cluster,
        lambda services: PlannedSwitchover(
            services, confirm, lambda: get_credential(state, replication_password), dry_run=dry_run
        ),
        as_json,
    )


@app.command("reinstate")
def reinstate(
    ctx: typer.Context,
    primary: str = typer.Option(..., "--primary", help="Node id of the current primary"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Run preflight and list the steps only"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    as_json: bool = typer.Option(False, "--json", help="Print the run summary as JSON"),
    replication_password: Optional[str] = typer.Option(
        None, "--replication-password", help="Replication password (default: $REPL_PASSWORD or prompt)"
    ),
) -> None:
    """Bring this repaired node back as standby of PRIMARY and re-add it to the edges."""
    state: CliState = ctx.obj
    cluster = state.cluster()
    confirm = auto_confirm if yes else confirm_yes
    _run_protocol(
        state,
        cluster,
        lambda services: Reinstatement(
            services, confirm, primary, lambda: get_credential(state, replication_password), dry_run=dry_run
        ),
        as_json,
    )


def main() -> None:
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
