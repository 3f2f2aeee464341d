"""
Rich display components for status and formatting
"""

from typing import Any, Dict, List, Optional

from rich.panel import Panel
from rich.table import Table

from .formatters import format_duration_ms, format_progress, format_status, format_timestamp


def create_thread_table(rows: List[Dict[str, Any]], title: str = "Analysis Threads") -> Table:
    """
    Create a Rich table of AnalysisThread rows
    """
    table = Table(title=title, show_header=True, header_style="bold blue")
    table.add_column("Thread", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Progress", style="green")
    table.add_column("Processed", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Last start", style="yellow")
    table.add_column("Run time", justify="right")

    for row in rows:
        statistics = row.get("statistics") or {}
        table.add_row(
            row.get("threadType", "?"),
            format_status(row.get("status")),
            format_progress(row.get("progress")),
            str(statistics.get("itemsProcessed", 0)),
            str(statistics.get("itemsFailed", 0)),
            format_timestamp(row.get("lastStartTime")),
            format_duration_ms(row.get("totalRunTime")),
        )

    return table


def create_refresh_panel(row: Optional[Dict[str, Any]]) -> Panel:
    """
    Create a panel for the latest RefreshProgress row
    """
    if not row:
        return Panel("[dim]No refresh jobs recorded[/dim]", title="Refresh", border_style="white")

    failed = row.get("failedTitles") or []
    lines = [
        f"Type: {row.get('type')} ({row.get('triggeredBy')})",
        f"Status: {row.get('status')}",
        f"Titles: {row.get('processedTitles', 0)}/{row.get('totalTitles', 0)}",
        f"Started: {format_timestamp(row.get('startedAt'))}",
    ]
    if row.get("completedAt"):
        lines.append(f"Completed: {format_timestamp(row.get('completedAt'))}")
    current = row.get("currentTitle")
    if current:
        lines.append(f"Current title: {current.get('number')} {current.get('name', '')}")
    if failed:
        numbers = sorted({f.get("number") for f in failed})
        lines.append(f"[red]Failed titles: {', '.join(str(n) for n in numbers)}[/red]")
    if row.get("lastError"):
        lines.append(f"[red]Last error: {row['lastError']}[/red]")

    color = "red" if row.get("status") == "failed" else "cyan"
    return Panel("\n".join(lines), title="Refresh", border_style=color, padding=(0, 1))


def create_rebuild_panel(row: Optional[Dict[str, Any]]) -> Panel:
    """
    Create a panel for the latest IndexRebuildProgress row
    """
    if not row:
        return Panel("[dim]No index rebuilds recorded[/dim]", title="Search index")

    lines = [
        f"Status: {row.get('status')}",
        f"Documents: {row.get('indexedDocuments', 0)} indexed, "
        f"{row.get('failedDocuments', 0)} failed of {row.get('totalDocuments', 0)}",
        f"Started: {format_timestamp(row.get('startTime'))}",
    ]
    if row.get("endTime"):
        lines.append(f"Finished: {format_timestamp(row.get('endTime'))}")
    if row.get("error"):
        lines.append(f"[red]Error: {row['error']}[/red]")

    color = "red" if row.get("status") == "failed" else "cyan"
    return Panel("\n".join(lines), title="Search index", border_style=color, padding=(0, 1))


def create_error_display(error: Exception, context: Optional[str] = None) -> Panel:
    """
    Create formatted error display with suggestions
    """
    error_lines = []

    if context:
        error_lines.append(f"Context: {context}")
        error_lines.append("")

    error_lines.append(f"Error: {str(error)}")
    error_lines.append("")

    message = str(error).lower()
    if "mongo" in message or "documentstore" in type(error).__name__.lower():
        suggestions = [
            "Check that MongoDB is running and MONGO_URI is correct",
            "Run with --verbose for connection details",
        ]
    elif "elasticsearch" in message or "search" in type(error).__name__.lower():
        suggestions = [
            "Check that Elasticsearch is reachable at ELASTICSEARCH_HOST",
            "Rebuild the index: ecfr-analyzer index rebuild",
        ]
    elif "grok_api_key" in message:
        suggestions = ["Set GROK_API_KEY to enable section analysis"]
    else:
        suggestions = [
            "Run with --verbose for detailed error information",
            "Check system status: ecfr-analyzer status",
        ]

    error_lines.append("Suggestions:")
    for suggestion in suggestions:
        error_lines.append(f"  • {suggestion}")

    return Panel("\n".join(error_lines), title="Error", border_style="red")
