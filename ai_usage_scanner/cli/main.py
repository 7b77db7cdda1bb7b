"""
CLI interface for AI Usage Scanner.

Provides command-line access to scanning and offset store maintenance.
"""

import json
import logging
import sys
from collections import defaultdict
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

import typer
import yaml
from rich.console import Console
from rich.table import Table

from ai_usage_scanner.config.loader import load_scanner_config
from ai_usage_scanner.config.pricing_loader import fetch_litellm_pricing
from ai_usage_scanner.core.scanner import ScanReport
from ai_usage_scanner.sdk.usage import get_scanner
from ai_usage_scanner.storage.models import Tool, UsageEntry

app = typer.Typer()
console = Console()

EXIT_CODE_OK = 0
EXIT_CODE_FAIL = 1

_state = {"config": None}


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to a YAML scanner configuration file"
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Show debug logging"
    ),
):
    """AI Usage Scanner CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    _state["config"] = config
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Scanner - Use --help to see available commands")


def _scanner():
    """Scanner for the configured state; config errors exit with EXIT_CODE_FAIL."""
    try:
        config = load_scanner_config(_state["config"]) if _state["config"] else None
        return get_scanner(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def scan(
    full: bool = typer.Option(
        False,
        "--full",
        "-f",
        help="Ignore stored cursors and re-read every log file"
    ),
    tool: Optional[Tool] = typer.Option(
        None,
        "--tool",
        "-t",
        case_sensitive=False,
        help="Read only this tool's logs, without touching stored cursors"
    ),
    as_json: bool = typer.Option(
        False,
        "--json",
        help="Print entries as JSON instead of a summary table"
    ),
    fetch_pricing: bool = typer.Option(
        False,
        "--fetch-pricing",
        help="Refresh model prices from the LiteLLM price sheet before scanning"
    ),
):
    """
    Scan local agent logs and report token usage and cost.

    Without --full only data appended since the previous scan is read,
    but the report always covers every entry seen so far.
    """
    scanner = _scanner()

    if fetch_pricing:
        fetched = fetch_litellm_pricing()
        if fetched is not None and scanner.pricing is not None:
            scanner.reload_pricing(scanner.pricing.merged_with(fetched))
        elif fetched is not None:
            scanner.reload_pricing(fetched)
        else:
            console.print("[yellow]Could not fetch LiteLLM prices, using configured pricing[/]")

    report = scanner.scan_tool(tool) if tool is not None else scanner.scan(full=full)

    if as_json:
        typer.echo(json.dumps([entry.to_dict() for entry in report.entries], indent=2))
    else:
        _display_scan_report(report)
    sys.exit(EXIT_CODE_OK)


@app.command()
def status():
    """Show what the offset store is tracking."""
    scanner = _scanner()
    cursors = scanner.store.list_cursors()
    console.print(f"Offset store: {scanner.store.db_path}")
    if scanner.store.in_memory:
        console.print("[yellow]Offset store file is unusable; cursors are kept in memory only[/]")
    console.print(f"Tracked files: {len(cursors)}")
    console.print(f"Stored events: {scanner.store.event_count()}")


@app.command()
def reset():
    """Delete all cursors so the next scan starts from scratch."""
    scanner = _scanner()
    scanner.store.clear()
    console.print("[green]✓[/] Offset store cleared")


def _format_currency(amount: Decimal) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${amount:,.4f}"


def _format_tokens(count: int) -> str:
    return f"{count:,}"


def _summarize(entries: List[UsageEntry]) -> Dict[Tuple[str, str], Dict[str, object]]:
    totals: Dict[Tuple[str, str], Dict[str, object]] = defaultdict(lambda: {
        "entries": 0,
        "input": 0,
        "output": 0,
        "cache_read": 0,
        "cache_write": 0,
        "total": 0,
        "cost": Decimal(0),
        "priced": True,
    })
    for entry in entries:
        row = totals[(entry.tool.value, entry.model)]
        row["entries"] += 1
        row["input"] += entry.input_tokens
        row["output"] += entry.output_tokens
        row["cache_read"] += entry.cache_read_tokens
        row["cache_write"] += entry.cache_write_tokens
        row["total"] += entry.total_tokens
        row["cost"] += entry.cost
        row["priced"] = row["priced"] and entry.priced
    return totals


def _display_scan_report(report: ScanReport):
    """Display scan results as a per-tool, per-model table."""
    console.print("\n[bold]AI Usage Scan Result[/bold]")
    console.print("-" * 40)

    if not report.entries:
        console.print("\n[dim]No usage data found in local agent logs.[/]")
    else:
        table = Table()
        table.add_column("Tool")
        table.add_column("Model")
        table.add_column("Entries", justify="right")
        table.add_column("Input", justify="right")
        table.add_column("Output", justify="right")
        table.add_column("Cache read", justify="right")
        table.add_column("Cache write", justify="right")
        table.add_column("Total", justify="right")
        table.add_column("Cost", justify="right")

        total_cost = Decimal(0)
        for (tool, model), row in sorted(_summarize(report.entries).items()):
            total_cost += row["cost"]
            cost = _format_currency(row["cost"]) if row["priced"] else "[yellow]unpriced[/]"
            table.add_row(
                tool,
                model,
                str(row["entries"]),
                _format_tokens(row["input"]),
                _format_tokens(row["output"]),
                _format_tokens(row["cache_read"]),
                _format_tokens(row["cache_write"]),
                _format_tokens(row["total"]),
                cost,
            )
        console.print(table)
        console.print(f"Total cost: {_format_currency(total_cost)}")

    console.print(f"Files read: {report.files_scanned}, unchanged: {report.files_skipped}")
    if report.malformed_records:
        console.print(f"[dim]Skipped {report.malformed_records} malformed record(s)[/]")
    for error in report.errors:
        console.print(f"[yellow]Warning:[/] {error.path}: {error.message}")


if __name__ == "__main__":
    app()
