"""Rich-based display functions for Gmail Phish Guard."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from .constants import PREVIEW_LENGTH
from .models import AnalysisResult, ProcessedRecord, ScanSummary, StatsSnapshot
from .scorer import classify_result

console = Console()

_CLASS_COLORS = {
    "suspicious": "red",
    "borderline": "yellow",
    "allowlisted": "cyan",
    "clean": "green",
}


def configure_logging(verbosity: int = 0) -> None:
    """Send log records through Rich on the shared console."""
    level = logging.WARNING
    if verbosity == 1:
        level = logging.INFO
    elif verbosity >= 2:
        level = logging.DEBUG
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def _preview(text: str | None) -> str:
    text = (text or "").strip()
    if len(text) > PREVIEW_LENGTH:
        text = text[: PREVIEW_LENGTH - 1] + "…"
    return escape(text)


def display_results(processed: list[ProcessedRecord], min_score: int = 0) -> None:
    """Display processed records, most suspicious first."""
    rows = [p for p in processed if p.result.score >= min_score]
    rows.sort(key=lambda p: -p.result.score)

    table = Table(title="Scan Results")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Sender")
    table.add_column("Subject")
    table.add_column("Score", justify="right")
    table.add_column("Verdict")
    table.add_column("Indicators")

    for idx, item in enumerate(rows, start=1):
        classification = classify_result(item.result)
        color = _CLASS_COLORS[classification]
        sender = item.record.sender_email or ""
        if item.record.sender_name:
            sender = f"{item.record.sender_name} <{sender}>"
        table.add_row(
            str(idx),
            _preview(sender),
            _preview(item.record.subject),
            f"[{color}]{item.result.score}[/{color}]",
            f"[{color}]{classification}[/{color}]",
            ", ".join(i.kind.value for i in item.result.indicators),
        )

    console.print(table)


def display_analysis(result: AnalysisResult) -> None:
    """Display the indicators of a single analysis."""
    classification = classify_result(result)
    color = _CLASS_COLORS[classification]

    lines = [
        f"[bold]Score:[/bold] [{color}]{result.score}[/{color}]",
        f"[bold]Verdict:[/bold] [{color}]{classification}[/{color}]",
    ]
    if result.indicators:
        lines.append("")
        lines.append("[bold]Indicators:[/bold]")
        for indicator in result.indicators:
            lines.append(f"  - (+{indicator.weight}) {indicator.description}: {escape(indicator.detail)}")

    console.print(Panel("\n".join(lines), title="Analysis"))


def display_summary(summary: ScanSummary) -> None:
    if summary.threats_found == 0:
        verdict = "[green]No threats detected - all emails appear safe[/green]"
    else:
        verdict = f"[red]{summary.threats_found} potential threats detected[/red]"

    console.print(
        Panel(
            f"Emails scanned: {summary.records_scanned}  |  "
            f"Threats: {summary.threats_found}  |  "
            f"Total threats ever: {summary.total_threats_ever}  |  "
            f"Duration: {summary.duration:.2f}s\n{verdict}",
            title="Scan Report",
        )
    )


def display_stats(snapshot: StatsSnapshot) -> None:
    table = Table(title="Statistics")
    table.add_column("Counter")
    table.add_column("Value", justify="right")
    table.add_row("Scanned this session", str(snapshot.session.scanned))
    table.add_row("Threats this session", str(snapshot.session.threats))
    table.add_row("Total scanned ever", str(snapshot.persistent.total_scanned_ever))
    table.add_row("Total threats ever", str(snapshot.persistent.total_threats_ever))
    table.add_row("Allow-listed senders", str(snapshot.persistent.allowlisted))
    console.print(table)


def display_allowlist(emails: list[str], status: dict) -> None:
    table = Table(title=f"Allow-list ({status['count']}/{status['max']})")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Email")
    for idx, email in enumerate(emails, start=1):
        table.add_row(str(idx), escape(email))
    console.print(table)


def create_progress(description: str) -> Progress:
    """Create a configured Rich Progress bar."""
    return Progress(
        SpinnerColumn(),
        TextColumn(f"[bold blue]{description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    )
