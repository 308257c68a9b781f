"""
Orchestrator CLI

Command-line interface for running workflows and ledger maintenance.
"""

import asyncio
import json
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from ledgercore.cache.models import CacheKey
from ledgercore.config import CoreConfig, configure_logging
from ledgercore.errors import LedgerCoreError, RunNotFound
from ledgercore.orchestrator.orchestrator import Orchestrator
from ledgercore.workflows.models import RunStatus, WorkflowRun

console = Console()

STATUS_DISPLAY = {
    RunStatus.COMPLETED: ("✅", "green"),
    RunStatus.FAILED: ("❌", "red"),
    RunStatus.RUNNING: ("🔄", "blue"),
}


def _orchestrator(ctx: click.Context) -> Orchestrator:
    orchestrator = Orchestrator(config=ctx.obj["config"])
    ctx.call_on_close(orchestrator.close)
    return orchestrator


@click.group()
@click.version_option(version="0.1.0")
@click.option("--tenant", "-t", default=None, help="Tenant to act for")
@click.option("--db", type=click.Path(dir_okay=False), default=None,
              help="SQLite ledger file (overrides LEDGER_STORE_BACKEND)")
@click.option("--workflows", "-w", "workflows_path", type=click.Path(exists=True, dir_okay=False),
              default=None, help="Workflow definitions YAML (overrides WORKFLOW_DEFINITIONS_PATH)")
@click.pass_context
def cli(ctx: click.Context, tenant: Optional[str], db: Optional[str], workflows_path: Optional[str]):
    """Orchestrator CLI

    Run workflows, inspect runs and predictions, and verify ledgers.
    """
    cfg = CoreConfig()
    if db:
        cfg.store.backend = "sqlite"
        cfg.store.sqlite_path = db
    if workflows_path:
        cfg.workflow.definitions_path = workflows_path

    configure_logging(cfg.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["tenant"] = tenant or cfg.orchestrator.default_tenant_id


@cli.command()
@click.pass_context
def workflows(ctx: click.Context):
    """List registered workflows."""
    orchestrator = _orchestrator(ctx)
    definitions = orchestrator.registry.list()

    if not definitions:
        console.print("[yellow]No workflows registered[/yellow]")
        console.print("Point WORKFLOW_DEFINITIONS_PATH or --workflows at a YAML file")
        return

    table = Table(title=f"Workflows ({len(definitions)})")
    table.add_column("ID", style="cyan")
    table.add_column("Name", style="white")
    table.add_column("Steps", style="green")
    table.add_column("Enabled")

    for definition in definitions:
        table.add_row(
            definition.workflow_id,
            definition.name or "-",
            " → ".join(definition.step_names),
            "[green]✓[/green]" if definition.enabled else "[red]✗[/red]",
        )

    console.print(table)


@cli.command()
@click.argument("workflow_id")
@click.option("--input", "-i", "input_json", default="{}", help="Run input as a JSON object")
@click.option("--actor", "-a", default=None, help="Actor id recorded in the ledger")
@click.option("--output", "-o", type=click.Path(), help="Save the run to JSON")
@click.option("--verbose", "-v", is_flag=True, help="Show step outputs and errors")
@click.pass_context
def run(ctx: click.Context, workflow_id: str, input_json: str, actor: Optional[str],
        output: Optional[str], verbose: bool):
    """Run a workflow once and wait for it to finish."""
    try:
        run_input = json.loads(input_json)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"not valid JSON: {e}", param_hint="--input")
    if not isinstance(run_input, dict):
        raise click.BadParameter("must be a JSON object", param_hint="--input")

    orchestrator = _orchestrator(ctx)

    try:
        result = asyncio.run(orchestrator.start_workflow(
            workflow_id,
            input=run_input,
            actor_id=actor,
            tenant_id=ctx.obj["tenant"],
        ))
    except LedgerCoreError as e:
        console.print(f"[red]✗ {e.kind}: {e}[/red]")
        ctx.exit(2)

    _display_run(result, verbose)

    if output:
        with open(output, "w") as f:
            json.dump(result.to_dict(), f, indent=2, default=str)
        console.print(f"\n[green]✓ Run saved to {output}[/green]")

    if result.status != RunStatus.COMPLETED:
        ctx.exit(1)


@cli.command()
@click.option("--workflow", "-w", "workflow_id", default=None, help="Filter by workflow id")
@click.option("--limit", "-l", default=10, help="Number of runs to show")
@click.option("--run-id", default=None, help="Show a single run in detail")
@click.pass_context
def runs(ctx: click.Context, workflow_id: Optional[str], limit: int, run_id: Optional[str]):
    """Show recent workflow runs."""
    orchestrator = _orchestrator(ctx)
    tenant_id = ctx.obj["tenant"]

    if run_id:
        try:
            _display_run(orchestrator.get_run(run_id, tenant_id=tenant_id), verbose=True)
        except RunNotFound:
            console.print(f"[red]Run not found: {run_id}[/red]")
            ctx.exit(1)
        return

    recent = orchestrator.list_runs(workflow_id=workflow_id, limit=limit, tenant_id=tenant_id)
    if not recent:
        console.print("[yellow]No runs recorded[/yellow]")
        return

    table = Table(title=f"Recent Runs ({len(recent)})")
    table.add_column("ID", style="cyan")
    table.add_column("Workflow", style="white")
    table.add_column("Status")
    table.add_column("Steps", style="green")
    table.add_column("Duration", style="dim")
    table.add_column("Started", style="dim")

    for item in recent:
        emoji, color = STATUS_DISPLAY.get(item.status, ("❓", "white"))
        succeeded = sum(1 for s in item.step_results if s.succeeded)
        table.add_row(
            item.id,
            item.workflow_id,
            f"[{color}]{emoji} {item.status.value.upper()}[/{color}]",
            f"{succeeded}/{len(item.step_results)}",
            f"{item.duration_ms}ms" if item.duration_ms is not None else "-",
            item.started_at.strftime("%Y-%m-%d %H:%M"),
        )

    console.print(table)


@cli.command()
@click.argument("subject")
@click.argument("horizon")
@click.pass_context
def cache(ctx: click.Context, subject: str, horizon: str):
    """Show the cached prediction for SUBJECT and HORIZON."""
    orchestrator = _orchestrator(ctx)
    try:
        key = CacheKey(subject, horizon)
    except ValueError as e:
        raise click.BadParameter(str(e))

    entry = orchestrator.cache(ctx.obj["tenant"]).get_entry(key)
    if entry is None:
        console.print(f"[yellow]No fresh entry for {key}[/yellow]")
        ctx.exit(1)

    console.print(Panel(
        f"[bold]Generated:[/bold] {entry.generated_at.isoformat()}\n"
        f"[bold]Expires:[/bold] {entry.expires_at.isoformat()}\n\n"
        f"{json.dumps(entry.value, indent=2, sort_keys=True)}",
        title=f"Prediction: {key}",
        border_style="cyan"
    ))


@cli.command()
@click.pass_context
def maintain(ctx: click.Context):
    """Verify every tenant's chain and purge expired cache entries."""
    orchestrator = _orchestrator(ctx)
    report = asyncio.run(orchestrator.run_maintenance())

    if not report.tenants:
        console.print("[yellow]No tenants to maintain[/yellow]")
        return

    table = Table(title="Maintenance")
    table.add_column("Tenant", style="cyan")
    table.add_column("Chain")
    table.add_column("Records", style="green")
    table.add_column("Purged", style="dim")
    table.add_column("Detail", style="white")

    for outcome in report.tenants:
        verification = outcome.verification
        if outcome.error:
            chain, detail = "[red]ERROR[/red]", outcome.error
        elif verification.valid:
            chain, detail = "[green]✓ intact[/green]", ""
        else:
            chain, detail = "[red]✗ broken[/red]", f"{verification.broken_at}: {verification.reason}"

        table.add_row(
            outcome.tenant_id,
            chain,
            str(verification.records_checked) if verification else "-",
            str(outcome.purged_cache_entries),
            detail,
        )

    console.print(table)

    if not report.healthy:
        ctx.exit(1)


def _display_run(run: WorkflowRun, verbose: bool = False):
    """Display a workflow run."""
    emoji, color = STATUS_DISPLAY.get(run.status, ("❓", "white"))

    lines = [
        f"{emoji} [bold]Status: [{color}]{run.status.value.upper()}[/{color}][/bold]\n",
        f"Run ID: {run.id}",
        f"Workflow: {run.workflow_id}",
        f"Duration: {run.duration_ms}ms" if run.duration_ms is not None else "Duration: -",
    ]
    if run.error_message:
        lines.append(f"Error ({run.error_kind.value if run.error_kind else '-'}): {run.error_message}")

    console.print(Panel("\n".join(lines), title="Workflow Run", border_style=color))

    if run.step_results:
        table = Table(title="Steps")
        table.add_column("#", style="dim", justify="right")
        table.add_column("Step", style="cyan")
        table.add_column("Status")
        table.add_column("Duration", style="dim")

        for step in run.step_results:
            step_status = {
                "success": "[green]✓ SUCCESS[/green]",
                "failed": "[red]✗ FAILED[/red]",
            }.get(step.status.value, step.status.value)

            table.add_row(
                str(step.index + 1),
                step.step_name,
                step_status,
                f"{step.duration_ms}ms" if step.duration_ms is not None else "-",
            )

        console.print(table)

    if verbose:
        for step in run.step_results:
            if step.error:
                console.print(f"\n[red]Error in {step.step_name}:[/red] {step.error}")
            elif step.output is not None:
                console.print(f"\n[bold]{step.step_name}:[/bold] {json.dumps(step.output, default=str)}")


if __name__ == "__main__":
    cli()
