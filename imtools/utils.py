"""
Utility functions for imtools.

Includes:
- Console output helpers
- Plan and report rendering
- JSON save helper
"""

import json
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.tree import Tree

# Global console instance
console = Console()

MAX_LISTED = 10


def print_header(title: str, subtitle: str = ""):
    """Print a styled header."""
    console.print(Panel(f"[bold blue]{title}[/bold blue]\n[italic]{subtitle}[/italic]", expand=False))


def print_error(msg: str):
    console.print(f"[bold red]ERROR:[/bold red] {msg}")


def print_warning(msg: str):
    console.print(f"[bold yellow]WARNING:[/bold yellow] {msg}")


def print_success(msg: str):
    console.print(f"[bold green]SUCCESS:[/bold green] {msg}")


def _short(path: Path, root: Path) -> str:
    try:
        return Path(path).relative_to(root).as_posix() or "."
    except ValueError:
        return str(path)


def print_plan_table(plan):
    """Print a summary table of the plan and a sample of its moves."""
    root = Path(plan.root)

    table = Table(title="Plan Summary")
    table.add_column("Metric", style="cyan")
    table.add_column("Count", style="magenta")

    table.add_row("Moves", str(plan.planned))
    table.add_row("Folders", str(len(plan.directories)))
    table.add_row("Skipped", str(plan.skipped))

    console.print(table)

    moves = plan.moves
    if moves:
        tree = Tree("[bold green]Sample Moves[/bold green]")
        for move in moves[:MAX_LISTED]:
            tree.add(f"[yellow]{_short(move.source, root)}[/yellow] -> [blue]{_short(move.destination, root)}[/blue]")
        if len(moves) > MAX_LISTED:
            tree.add(f"[italic]... and {len(moves) - MAX_LISTED} more[/italic]")
        console.print(tree)


def print_report(report, root: Path | None = None):
    """Print the final applied/skipped/failed summary with reasons."""
    title = "DRY-RUN (simulation) Summary" if report.dry_run else "Summary"
    table = Table(title=title)
    table.add_column("Result", style="cyan")
    table.add_column("Count", style="magenta")

    label = "Would apply" if report.dry_run else "Applied"
    table.add_row(label, str(report.applied))
    table.add_row("Skipped", str(report.skipped))
    table.add_row("Failed", str(report.failed))
    console.print(table)

    def fmt(path):
        # Download skips carry URLs, not paths
        return _short(path, root) if root and isinstance(path, Path) else str(path)

    if report.skips:
        console.print("[bold yellow]Skipped:[/bold yellow]")
        for skip in report.skips[:MAX_LISTED]:
            console.print(f"  - {fmt(skip.source)}: {skip.reason}")
        if len(report.skips) > MAX_LISTED:
            console.print(f"  ... and {len(report.skips) - MAX_LISTED} more")

    if report.failures:
        console.print("[bold red]Failed:[/bold red]")
        for op, reason in report.failures[:MAX_LISTED]:
            target = getattr(op, "source", None) or getattr(op, "path", None)
            console.print(f"  - {fmt(target)}: {reason}")
        if len(report.failures) > MAX_LISTED:
            console.print(f"  ... and {len(report.failures) - MAX_LISTED} more")

    if report.cancelled:
        print_warning("Run was cancelled before all operations were attempted.")
    if report.dry_run:
        print_warning("This was a DRY-RUN. No files were actually changed.")


def save_json(data: Any, path: Path) -> None:
    """Write a report (or any JSON-able value) to `path`, creating parent folders."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'w', encoding='utf-8') as f:
        json.dump(data, f, indent=2, ensure_ascii=False)
    print(f"[INFO] Saved: {path}")
