"""
Synthetic order file generator for the streaming aggregation engine.

Implements deterministic pseudo-random order generation for either schema
variant and drops the files into the watched directory. Each file is written
under a temporary name and renamed into place, so the source monitor never
picks up a half-written file.
"""

from __future__ import annotations

import csv
import os
import random
import sys
import time
from datetime import date, timedelta
from decimal import Decimal
from pathlib import Path
from typing import List

import typer

from streamagg.domain.schema import SchemaVariant

app = typer.Typer(help="Generate synthetic order CSV files into a watched directory.")

CLIENTS = [(101, "Acme Corp"), (102, "Globex"), (103, "Initech"), (104, "Umbrella"), (105, "Stark Ind")]
PRODUCTS = {
    "Laptop": ("electronics", Decimal("899.00")),
    "Monitor": ("electronics", Decimal("189.50")),
    "Desk": ("furniture", Decimal("240.00")),
    "Chair": ("furniture", Decimal("120.00")),
    "Notebook": ("stationery", Decimal("3.25")),
    "Pen": ("stationery", Decimal("1.10")),
}
STATUSES = ["pending", "shipped", "delivered", "cancelled"]
REGIONS = ["north", "south", "east", "west"]


def _order_row(variant: SchemaVariant, rng: random.Random, order_id: int, start: date) -> List[str]:
    client_id, client_name = rng.choice(CLIENTS)
    product = rng.choice(sorted(PRODUCTS))
    category, price = PRODUCTS[product]
    quantity = rng.randint(1, 5)
    total = price * quantity
    order_date = (start + timedelta(days=rng.randint(0, 29))).isoformat()
    if variant is SchemaVariant.V1:
        return [
            str(order_id),
            str(client_id),
            client_name,
            product,
            str(quantity),
            f"{price:.2f}",
            order_date,
            rng.choice(STATUSES),
            f"{total:.2f}",
        ]
    return [
        str(order_id),
        client_name,
        product,
        category,
        str(quantity),
        f"{price:.2f}",
        order_date,
        rng.choice(REGIONS),
        f"{total:.2f}",
    ]


def _corrupt(row: List[str], rng: random.Random) -> List[str]:
    """Make a row fail validation: bad total or a missing column."""
    if rng.random() < 0.5:
        return row[:-1] + ["not-a-number"]
    return row[:-1]


def _write_orders_csv(
    target: Path,
    variant: SchemaVariant,
    rows: int,
    first_order_id: int,
    rng: random.Random,
    bad_rows: int = 0,
) -> None:
    start = date(2024, 1, 1)
    staged = target.with_name(f".{target.name}.tmp")
    bad_positions = set(rng.sample(range(rows), min(bad_rows, rows))) if bad_rows else set()
    with staged.open("w", newline="", encoding="utf-8") as f:
        writer = csv.writer(f)
        writer.writerow(variant.field_names)
        for i in range(rows):
            row = _order_row(variant, rng, first_order_id + i, start)
            writer.writerow(_corrupt(row, rng) if i in bad_positions else row)
    os.replace(staged, target)


def _generate_files(
    output_dir: Path,
    variant: SchemaVariant,
    files: int,
    rows: int,
    seed: int,
    bad_rows: int = 0,
    prefix: str = "orders",
) -> List[Path]:
    rng = random.Random(seed)
    output_dir.mkdir(parents=True, exist_ok=True)
    written: List[Path] = []
    for index in range(files):
        target = output_dir / f"{prefix}-{seed:04d}-{index:05d}.csv"
        _write_orders_csv(target, variant, rows, first_order_id=index * rows + 1, rng=rng, bad_rows=bad_rows)
        written.append(target)
    return written


@app.command()
def main(
    output: Path = typer.Option(
        Path("data/incoming"),
        "--output",
        "-o",
        help="Directory the engine watches.",
    ),
    variant: str = typer.Option(
        "v1",
        "--variant",
        "-v",
        help="Schema variant to generate (v1 or v2).",
    ),
    files: int = typer.Option(
        3,
        "--files",
        "-f",
        help="Number of files to write.",
    ),
    rows: int = typer.Option(
        100,
        "--rows",
        "-r",
        help="Orders per file.",
    ),
    seed: int = typer.Option(
        42,
        "--seed",
        help="Deterministic RNG seed.",
    ),
    bad_rows: int = typer.Option(
        0,
        "--bad-rows",
        help="Malformed rows to inject per file.",
    ),
    interval: float = typer.Option(
        0.0,
        "--interval",
        help="Seconds to wait between files (simulates a live feed).",
    ),
) -> None:
    """
    Write synthetic order files for the engine to pick up.
    """
    schema_variant = SchemaVariant.parse(variant)
    start = time.perf_counter()
    typer.echo(f"Generating {files} file(s) x {rows:,} rows -> {output} (variant={schema_variant.value}, seed={seed})")
    if interval <= 0:
        written = _generate_files(output, schema_variant, files, rows, seed, bad_rows)
    else:
        written = []
        for index in range(files):
            written.extend(
                _generate_files(output, schema_variant, 1, rows, seed + index, bad_rows)
            )
            time.sleep(interval)
    duration = time.perf_counter() - start
    typer.echo(f"Wrote {len(written)} file(s) in {duration:.2f}s.")


if __name__ == "__main__":
    try:
        app()
    except KeyboardInterrupt:
        typer.echo("Cancelled by user.", err=True)
        sys.exit(130)
