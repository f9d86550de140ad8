"""Scan orchestration - fetches records and feeds them through the engine."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from .constants import BATCH_SIZE
from .display import console, create_progress
from .engine import PhishGuardEngine
from .gmail_client import fetch_records, list_message_ids
from .models import ProcessedRecord, Record, ScanSummary


@dataclass
class ScanReport:
    """Everything produced by one pass over a batch of records."""

    processed: list[ProcessedRecord] = field(default_factory=list)
    summary: ScanSummary | None = None


def load_records(path: str | Path) -> list[Record]:
    """Read records from a JSON file holding a list of objects (or ``{"records": [...]}``)."""
    with open(path) as f:
        data = json.load(f)
    if isinstance(data, dict):
        data = data.get("records", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of records")
    return [Record.from_dict(item) for item in data if isinstance(item, dict)]


def fetch_inbox_records(
    service,
    query: str | None = None,
    max_results: int | None = None,
) -> list[Record]:
    """List inbox messages and fetch their metadata as records."""
    console.print("[bold]Step 1/2:[/bold] Listing message IDs...")
    with create_progress("Listing messages") as progress:
        task = progress.add_task("listing", total=None)
        ids = list_message_ids(service, query=query, max_results=max_results)
        progress.update(task, completed=len(ids), total=len(ids))

    console.print(f"  Found [bold]{len(ids)}[/bold] messages")
    if not ids:
        return []

    console.print("[bold]Step 2/2:[/bold] Fetching message metadata...")
    with create_progress("Fetching metadata") as progress:
        total_batches = (len(ids) + BATCH_SIZE - 1) // BATCH_SIZE
        task = progress.add_task("fetching", total=total_batches)

        def on_batch(batch_num: int, total: int) -> None:
            progress.update(task, completed=batch_num)

        records = fetch_records(service, ids, callback=on_batch)

    console.print(f"  Fetched metadata for [bold]{len(records)}[/bold] messages")
    return records


async def scan_records(
    engine: PhishGuardEngine,
    records: list[Record],
    callback: Callable[[int, int], None] | None = None,
) -> ScanReport:
    """Process every record, then finalize the scan."""
    report = ScanReport()
    total = len(records)

    for idx, record in enumerate(records, start=1):
        report.processed.append(await engine.process_record(record))
        if callback:
            callback(idx, total)

    # Input is exhausted; no need to wait for the idle heuristic.
    report.summary = await engine.finish_scan()
    return report
