"""Shared CLI plumbing: state, logging, confirmation, credential, rendering."""

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

from idp_failover.config import Cluster, load_cluster_config, resolve_cluster
from idp_failover.exceptions import ConfigError
from idp_failover.redaction import RedactingFilter, SecretRedactor
from idp_failover.types import ProtocolRun, RunOutcome, StepStatus

CREDENTIAL_ENV_VAR = "REPL_PASSWORD"

console = Console()
err_console = Console(stderr=True)

_STATUS_STYLES = {
    StepStatus.COMPLETED: "[green]completed[/green]",
    StepStatus.WARNED: "[yellow]warned[/yellow]",
    StepStatus.SKIPPED: "[dim]skipped[/dim]",
    StepStatus.FAILED: "[red]failed[/red]",
    StepStatus.NOT_RUN: "[dim]not run[/dim]",
    StepStatus.PLANNED: "[cyan]planned[/cyan]",
}

_OUTCOME_STYLES = {
    RunOutcome.COMPLETE: "green",
    RunOutcome.DRY_RUN: "cyan",
    RunOutcome.DECLINED: "yellow",
    RunOutcome.ABORTED_AT_PREFLIGHT: "red",
    RunOutcome.PARTIAL_FAILURE: "bold red",
}


@dataclass
class CliState:
    """Global options shared by every command through ``ctx.obj``."""

    config_path: Path | None = None
    node: str | None = None
    verbose: bool = False
    redactor: SecretRedactor = field(default_factory=SecretRedactor)

    def cluster(self) -> Cluster:
        """Load the cluster map and resolve the local node, exiting 1 on error."""
        try:
            config = load_cluster_config(self.config_path)
            return resolve_cluster(config, self.node)
        except ConfigError as e:
            console.print(f"[red]Error:[/red] {escape(str(e))}")
            raise typer.Exit(1)


def setup_logging(verbose: bool, redactor: SecretRedactor) -> None:
    """Route library logging through rich with credential scrubbing."""
    handler = RichHandler(console=err_console, show_path=False, markup=False)
    handler.addFilter(RedactingFilter(redactor))
    root = logging.getLogger()
    root.handlers = [h for h in root.handlers if not isinstance(h, RichHandler)] + [handler]
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def confirm_yes(prompt: str) -> bool:
    """Interactive confirmation: only the literal answer ``yes`` proceeds."""
    err_console.print(f"\n[bold yellow]WARNING:[/bold yellow] {escape(prompt)}")
    answer = typer.prompt("Type 'yes' to continue", default="no", show_default=False, err=True)
    return answer.strip().lower() == "yes"


def auto_confirm(prompt: str) -> bool:
    err_console.print(f"[dim]Confirmed by --yes: {escape(prompt)}[/dim]")
    return True


def get_credential(state: CliState, explicit: str | None) -> str:
    """Replication credential from the option, $REPL_PASSWORD, or a hidden prompt.

    The value is registered with the redactor before it is returned and is
    never written anywhere.
    """
    credential = explicit or os.environ.get(CREDENTIAL_ENV_VAR)
    if not credential:
        credential = typer.prompt("Replication password", hide_input=True, err=True)
    state.redactor.register(credential)
    return credential


def render_run(run: ProtocolRun, redactor: SecretRedactor, as_json: bool = False) -> None:
    """Print the run summary as a table, or as JSON with ``as_json``."""
    if as_json:
        data = redactor.redact_dict(run.model_dump(mode="json"))
        typer.echo(json.dumps(data, indent=2))
        return

    table = Table(title=f"{run.protocol} on {run.local_node}")
    table.add_column("#", style="dim")
    table.add_column("Step", style="cyan")
    table.add_column("Status")
    table.add_column("Detail")
    for index, step in enumerate(run.steps, start=1):
        status = _STATUS_STYLES.get(step.status, step.status.value)
        table.add_row(
            str(index), escape(step.description), status, escape(redactor.redact(step.detail or ""))
        )
    if run.steps:
        console.print(table)

    if run.topology_before:
        console.print(f"Before: {_roles(run.topology_before)}")
    if run.topology_after:
        console.print(f"After:  {_roles(run.topology_after)}")
    for warning in run.warnings:
        console.print(f"[yellow]Warning:[/yellow] {escape(redactor.redact(warning))}")
    for item in run.reconciliation:
        console.print(f"[yellow]Needs manual reconciliation:[/yellow] {escape(redactor.redact(item))}")
    if run.error:
        console.print(f"[red]Error:[/red] {escape(redactor.redact(run.error))}")
    for key, value in run.observed.items():
        console.print(f"  observed {key}: {escape(redactor.redact(value))}")

    style = _OUTCOME_STYLES.get(run.outcome, "white")
    outcome = run.outcome.value if run.outcome else "unknown"
    console.print(f"\n[{style}]Outcome: {outcome}[/{style}]")
    if run.next_steps:
        console.print("\n[bold]Next steps:[/bold]")
        for hint in run.next_steps:
            console.print(f"  - {escape(hint)}")


def _roles(roles: dict[str, str]) -> str:
    return ", ".join(f"{node}={role}" for node, role in roles.items())
