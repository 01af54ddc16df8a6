from __future__ import annotations

import json
import signal
import sys
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console

from streamagg.config import Settings, get_settings
from streamagg.domain.schema import SchemaRegistry
from streamagg.errors import CheckpointCorruptError, CheckpointWriteError
from streamagg.infrastructure.checkpoint import CheckpointManager
from streamagg.queries.manager import QueryManager
from streamagg.reporter import print_status, render_catalog
from streamagg.scheduler import build_scheduler
from streamagg.utils.logging import configure_logging

app = typer.Typer(help="Incremental file-driven streaming aggregation engine.")


def _effective_settings(
    variant: Optional[str] = None,
    watch_dir: Optional[Path] = None,
    checkpoint_dir: Optional[Path] = None,
    sink: Optional[str] = None,
) -> Settings:
    settings = get_settings()
    overrides = {
        "schema_variant": variant,
        "watch_dir": watch_dir,
        "checkpoint_dir": checkpoint_dir,
        "sink": sink,
    }
    updates = {key: value for key, value in overrides.items() if value is not None}
    if not updates:
        return settings
    # Re-validate so CLI overrides get the same checks as environment values.
    return Settings.model_validate({**settings.model_dump(), **updates})


@app.command()
def info() -> None:
    """
    Show effective configuration values.
    """
    settings = get_settings()
    typer.echo(
        f"variant={settings.schema_variant.value} watch={settings.watch_dir} "
        f"pattern={settings.file_pattern} poll={settings.poll_interval_seconds}s "
        f"read_timeout={settings.file_read_timeout_seconds}s retries={settings.max_file_retries} | "
        f"checkpoint={settings.checkpoint_dir} (retain={settings.checkpoint_retain}) | "
        f"sink={settings.sink} workers={settings.query_workers}"
    )


@app.command()
def queries(
    variant: Optional[str] = typer.Option(None, "--variant", "-v", help="Schema variant (v1 or v2)."),
) -> None:
    """
    List the query catalog for a schema variant.
    """
    settings = _effective_settings(variant=variant)
    manager = QueryManager.for_variant(SchemaRegistry(settings.schema_variant))
    Console().print(render_catalog(manager.definitions))


@app.command()
def run(
    variant: Optional[str] = typer.Option(None, "--variant", "-v", help="Schema variant (v1 or v2)."),
    watch_dir: Optional[Path] = typer.Option(None, "--watch-dir", "-w", help="Directory to watch."),
    checkpoint_dir: Optional[Path] = typer.Option(None, "--checkpoint-dir", "-c", help="Checkpoint location."),
    sink: Optional[str] = typer.Option(None, "--sink", "-s", help="Output sink: console, json or memory."),
    once: bool = typer.Option(False, "--once", help="Process what is available now, then exit."),
    max_ticks: Optional[int] = typer.Option(None, "--max-ticks", help="Stop after this many ticks."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit structured JSON logs."),
) -> None:
    """
    Run the engine until interrupted (or until idle with --once).
    """
    settings = _effective_settings(variant, watch_dir, checkpoint_dir, sink)
    configure_logging(level=settings.log_level, json_logs=json_logs or settings.json_logs)

    typer.echo(
        f"Watching {settings.watch_dir} (variant={settings.schema_variant.value}, "
        f"checkpoint={settings.checkpoint_dir}, sink={settings.sink})."
    )
    with build_scheduler(settings) as scheduler:

        def _graceful(signum, frame) -> None:
            del frame
            typer.echo(f"Signal {signum} received; finishing current tick.", err=True)
            scheduler.request_stop()

        previous = {sig: signal.signal(sig, _graceful) for sig in (signal.SIGTERM, signal.SIGINT)}
        try:
            stats = scheduler.run(max_ticks=max_ticks, until_idle=once)
        except CheckpointCorruptError as exc:
            typer.echo(f"Refusing to start: {exc}", err=True)
            raise typer.Exit(code=2) from exc
        except CheckpointWriteError as exc:
            typer.echo(f"Stopping: checkpoint durability lost: {exc}", err=True)
            raise typer.Exit(code=3) from exc
        finally:
            for sig, handler in previous.items():
                signal.signal(sig, handler)

    typer.echo(json.dumps(stats.as_dict(), indent=2))


@app.command()
def status(
    variant: Optional[str] = typer.Option(None, "--variant", "-v", help="Schema variant (v1 or v2)."),
    checkpoint_dir: Optional[Path] = typer.Option(None, "--checkpoint-dir", "-c", help="Checkpoint location."),
) -> None:
    """
    Show the last committed checkpoint: ledger summary and aggregate tables.
    """
    settings = _effective_settings(variant=variant, checkpoint_dir=checkpoint_dir)
    manager = QueryManager.for_variant(SchemaRegistry(settings.schema_variant))
    try:
        checkpoint = CheckpointManager(settings.checkpoint_dir, manager).restore()
    except CheckpointCorruptError as exc:
        typer.echo(f"Checkpoint is corrupt: {exc}", err=True)
        raise typer.Exit(code=2) from exc
    print_status(checkpoint, manager)


def main() -> None:
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)


if __name__ == "__main__":
    main()
