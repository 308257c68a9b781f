"""
Audit CLI

Command-line interface for inspecting and verifying the audit ledger.
"""

import csv
import io
import json
from typing import Optional

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel

from ledgercore.audit.ledger import AuditLedger
from ledgercore.audit.models import AuditQuery, AuditRecord
from ledgercore.audit.store import create_store
from ledgercore.config import CoreConfig, configure_logging
from ledgercore.errors import RecordNotFound

console = Console()

EXPORT_FIELDS = [
    "sequence", "id", "timestamp", "action_type", "resource_type",
    "resource_id", "actor_id", "previous_digest", "digest",
]


def _ledger(ctx: click.Context) -> AuditLedger:
    cfg: CoreConfig = ctx.obj["config"]
    store = create_store(cfg.store)
    ctx.call_on_close(store.close)
    return AuditLedger(store, tenant_id=ctx.obj["tenant"], config=cfg.ledger)


def _short(digest: str) -> str:
    return f"{digest[:10]}…{digest[-6:]}"


@click.group()
@click.version_option(version="0.1.0")
@click.option("--tenant", "-t", default=None, help="Tenant whose chain to use")
@click.option("--db", type=click.Path(dir_okay=False), default=None,
              help="SQLite ledger file (overrides LEDGER_STORE_BACKEND)")
@click.pass_context
def cli(ctx: click.Context, tenant: Optional[str], db: Optional[str]):
    """Audit CLI

    Query and verify the hash-chained audit ledger.
    """
    cfg = CoreConfig()
    if db:
        cfg.store.backend = "sqlite"
        cfg.store.sqlite_path = db

    configure_logging(cfg.log_level)

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg
    ctx.obj["tenant"] = tenant or cfg.orchestrator.default_tenant_id


@cli.command()
@click.pass_context
def status(ctx: click.Context):
    """Show ledger status."""
    ledger = _ledger(ctx)
    stats = ledger.get_stats()
    database = stats["database"]

    by_action = "\n".join(
        f"  {action}: {count}" for action, count in sorted(stats["by_action_type"].items())
    ) or "  (none)"

    console.print(Panel(
        f"[bold]Tenant:[/bold] {stats['tenant_id']}\n"
        f"[bold]Store:[/bold] {database.get('mode', 'unknown')}\n\n"
        f"[bold]Records:[/bold] {stats['records']}\n"
        f"[bold]Head:[/bold] #{stats['head_sequence']} {_short(stats['head_digest'])}\n\n"
        f"[bold]By action type:[/bold]\n{by_action}",
        title="Audit Ledger Status",
        border_style="cyan"
    ))


@cli.command("list")
@click.option("--action", "-a", "action_type", default=None, help="Filter by action type")
@click.option("--resource-type", "-r", default=None, help="Filter by resource type")
@click.option("--resource-id", default=None, help="Filter by resource id")
@click.option("--actor", default=None, help="Filter by actor id")
@click.option("--limit", "-l", default=20, help="Number of records to show")
@click.option("--oldest-first", is_flag=True, help="Show in insertion order")
@click.option("--verbose", "-v", is_flag=True, help="Show payloads")
@click.pass_context
def list_records(ctx: click.Context, action_type: Optional[str], resource_type: Optional[str],
                 resource_id: Optional[str], actor: Optional[str], limit: int,
                 oldest_first: bool, verbose: bool):
    """List audit records (newest first)."""
    ledger = _ledger(ctx)
    records = ledger.list(AuditQuery(
        action_type=action_type,
        resource_type=resource_type,
        resource_id=resource_id,
        actor_id=actor,
        limit=limit,
        newest_first=not oldest_first,
    ))

    if not records:
        console.print("[yellow]No audit records found[/yellow]")
        return

    table = Table(title=f"Audit Records ({len(records)})")
    table.add_column("#", style="dim", justify="right")
    table.add_column("Action", style="yellow", no_wrap=True)
    table.add_column("Resource", style="green")
    table.add_column("Actor", style="blue")
    table.add_column("Digest", style="cyan")
    table.add_column("Time", style="dim")

    for record in records:
        table.add_row(
            str(record.sequence),
            record.action_type,
            f"{record.resource_type}/{record.resource_id}",
            record.actor_id or "-",
            record.digest[:10],
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)

    if verbose:
        for record in records[:5]:
            console.print(Panel(
                json.dumps(record.payload, indent=2, sort_keys=True),
                title=f"#{record.sequence} {record.action_type}",
                border_style="dim"
            ))


@cli.command()
@click.argument("record_id")
@click.pass_context
def show(ctx: click.Context, record_id: str):
    """Show a record by id."""
    ledger = _ledger(ctx)
    try:
        record = ledger.get(record_id)
    except RecordNotFound:
        console.print(f"[red]Record not found: {record_id}[/red]")
        ctx.exit(1)

    _print_record(record)


@cli.command()
@click.argument("digest")
@click.pass_context
def lookup(ctx: click.Context, digest: str):
    """Find the record owning a digest."""
    ledger = _ledger(ctx)
    try:
        record = ledger.find_by_digest(digest)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        ctx.exit(2)

    if record is None:
        console.print(f"[yellow]No record with digest {_short(digest)}[/yellow]")
        ctx.exit(1)

    _print_record(record)


@cli.command()
@click.option("--from", "from_id", default=None, help="First record id of the range")
@click.option("--to", "to_id", default=None, help="Last record id of the range")
@click.option("--links-only", is_flag=True, help="Skip recomputing digests")
@click.pass_context
def verify(ctx: click.Context, from_id: Optional[str], to_id: Optional[str], links_only: bool):
    """Verify the chain. Exits 1 when a link is broken."""
    ledger = _ledger(ctx)
    try:
        result = ledger.verify(from_id=from_id, to_id=to_id, full=False if links_only else None)
    except (RecordNotFound, ValueError) as e:
        console.print(f"[red]Cannot verify: {e}[/red]")
        ctx.exit(2)

    mode = "links only" if not result.full else "full"

    if result.valid:
        console.print(Panel(
            f"[green]✓ Chain intact[/green]\n\n"
            f"Records checked: {result.records_checked}\n"
            f"Mode: {mode}",
            title=f"Verification ({ledger.tenant_id})",
            border_style="green"
        ))
        return

    console.print(Panel(
        f"[red]✗ Chain broken[/red]\n\n"
        f"Broken at: {result.broken_at}\n"
        f"Reason: {result.reason}\n"
        f"Records checked before break: {result.records_checked}\n"
        f"Mode: {mode}",
        title=f"Verification ({ledger.tenant_id})",
        border_style="red"
    ))
    ctx.exit(1)


@cli.command()
@click.option("--output", "-o", type=click.Path(), help="Output file path")
@click.option("--format", "-f", "output_format",
              type=click.Choice(["json", "csv"]),
              default="json", help="Output format")
@click.option("--limit", "-l", default=1000, help="Maximum records to export")
@click.pass_context
def export(ctx: click.Context, output: Optional[str], output_format: str, limit: int):
    """Export records in insertion order."""
    ledger = _ledger(ctx)
    records = ledger.list(AuditQuery(limit=limit))

    if not records:
        console.print("[yellow]No records to export[/yellow]")
        return

    if output_format == "json":
        content = json.dumps([r.to_dict() for r in records], indent=2, sort_keys=True)
    else:
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS + ["payload"], extrasaction="ignore")
        writer.writeheader()
        for record in records:
            row = record.to_dict()
            row["payload"] = json.dumps(row["payload"], sort_keys=True)
            writer.writerow(row)
        content = buffer.getvalue()

    if output:
        with open(output, "w") as f:
            f.write(content)
        console.print(f"[green]✓ Exported {len(records)} records to {output}[/green]")
    else:
        click.echo(content)


def _print_record(record: AuditRecord):
    console.print(Panel(
        f"[bold]Sequence:[/bold] {record.sequence}\n"
        f"[bold]Action:[/bold] {record.action_type}\n"
        f"[bold]Resource:[/bold] {record.resource_type}/{record.resource_id}\n"
        f"[bold]Actor:[/bold] {record.actor_id or '-'}\n"
        f"[bold]Timestamp:[/bold] {record.timestamp.isoformat()}\n"
        f"[bold]Previous:[/bold] {record.previous_digest}\n"
        f"[bold]Digest:[/bold] {record.digest}\n\n"
        f"[bold]Payload:[/bold]\n"
        f"{json.dumps(record.payload, indent=2, sort_keys=True)}",
        title=f"Audit Record: {record.id}",
        border_style="cyan"
    ))


if __name__ == "__main__":
    cli()
