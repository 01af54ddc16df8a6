from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from streamagg.queries.abstract import OutputMode, QueryDefinition
from streamagg.queries.manager import QueryManager

if TYPE_CHECKING:
    from streamagg.infrastructure.checkpoint import Checkpoint


def _format_value(value: Any) -> str:
    if value is None:
        return "N/A"
    if isinstance(value, Decimal):
        return f"{value:,.2f}"
    if isinstance(value, int) and not isinstance(value, bool):
        return f"{value:,}"
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def render_query_table(
    query_id: str,
    rows: Sequence[Dict[str, Any]],
    output_mode: OutputMode,
    batch_id: int,
    max_rows: int = 50,
) -> Table:
    """
    Build a rich table for one query's output in one batch.

    Numeric columns are right-aligned. Long tables are truncated to ``max_rows``
    with the omitted count shown in the caption.
    """
    title = f"{query_id} [dim](batch {batch_id}, {output_mode.value})[/dim]"
    caption = f"{len(rows):,} row(s)"
    if len(rows) > max_rows:
        caption = f"showing {max_rows:,} of {len(rows):,} rows"

    table = Table(title=title, box=box.ROUNDED, caption=caption)
    if not rows:
        table.add_column("(no rows)", style="dim")
        return table

    columns: List[str] = list(rows[0].keys())
    for name in columns:
        sample = rows[0].get(name)
        numeric = isinstance(sample, (int, Decimal, float)) and not isinstance(sample, bool)
        table.add_column(
            name,
            justify="right" if numeric else "left",
            style="bold green" if numeric else "cyan",
            no_wrap=not numeric,
        )
    for row in rows[:max_rows]:
        table.add_row(*(_format_value(row.get(name)) for name in columns))
    return table


def render_catalog(definitions: Sequence[QueryDefinition]) -> Table:
    table = Table(title="Registered Queries", box=box.ROUNDED)
    table.add_column("Query", style="cyan", no_wrap=True)
    table.add_column("Mode", style="magenta")
    table.add_column("Filter", style="yellow")
    table.add_column("Group By", style="blue")
    table.add_column("Aggregates", style="green")
    table.add_column("Ordering", style="red")
    for d in definitions:
        table.add_row(
            d.query_id,
            d.output_mode.value,
            str(d.filter) if d.filter else "-",
            ", ".join(d.group_by) if d.group_by else ("(global)" if d.is_stateful else "-"),
            ", ".join(
                f"{a.name}={a.function.value}({a.field or '*'})" for a in d.aggregates
            )
            or "-",
            ", ".join(f"{r.field} {'desc' if r.descending else 'asc'}" for r in d.ordering) or "-",
        )
    return table


def print_status(
    checkpoint: Optional[Checkpoint],
    queries: QueryManager,
    console: Optional[Console] = None,
) -> None:
    """
    Render the restored checkpoint: ledger summary plus every complete-mode table.
    """
    console = console or Console()

    if checkpoint is None:
        console.print("[yellow]No checkpoint found; the engine has not committed anything yet.[/yellow]")
        return

    created = checkpoint.created_at.isoformat() if checkpoint.created_at else "unknown"
    summary = Table(title="Checkpoint", box=box.ROUNDED, show_header=False)
    summary.add_column("Key", style="cyan")
    summary.add_column("Value", justify="right", style="magenta")
    summary.add_row("Generation", str(checkpoint.generation))
    summary.add_row("Last committed batch", str(checkpoint.batch_id))
    summary.add_row("Created", created)
    summary.add_row("Committed files", f"{len(checkpoint.ledger.committed):,}")
    summary.add_row("Quarantined files", f"{len(checkpoint.ledger.quarantined):,}")
    summary.add_row("Files with read failures", f"{len(checkpoint.ledger.read_failures):,}")
    console.print(summary)

    if checkpoint.ledger.quarantined:
        quarantine = Table(title="Quarantined", box=box.ROUNDED)
        quarantine.add_column("Path", style="red")
        for path in sorted(checkpoint.ledger.quarantined):
            quarantine.add_row(path)
        console.print(quarantine)

    for query_id in queries.stateful_ids:
        partition = checkpoint.states.get(query_id, {})
        rows = queries.executor(query_id).render(partition)
        console.print(render_query_table(query_id, rows, OutputMode.COMPLETE, checkpoint.batch_id))


__all__ = ["print_status", "render_catalog", "render_query_table"]
