"""Output formatting for CLI."""

from typing import Any
import json

from rich.console import Console
from rich.table import Table
from rich import box

from .models import ResultPage, WorkspaceTab


console = Console()
error_console = Console(stderr=True)

STATUS_STYLES = {
    "SUCCEEDED": "green",
    "FAILED": "red",
    "RUNNING": "cyan",
    "QUEUED": "yellow",
    "CANCELED": "magenta",
}


def print_json(data: Any) -> None:
    """Print data as formatted JSON."""
    print(json.dumps(data, indent=2, default=str))


def print_table(
    data: list[dict[str, Any]],
    columns: list[str] | None = None,
    title: str | None = None,
) -> None:
    """Print a list of dicts as a formatted table."""
    if not data:
        console.print("[dim]No data[/dim]")
        return

    # Determine columns from data if not specified
    if columns is None:
        columns = list(data[0].keys())

    table = Table(title=title, box=box.ROUNDED)

    for col in columns:
        table.add_column(col, style="cyan" if col in ("ID", "Title") else None)

    for row in data:
        values = []
        for col in columns:
            value = row.get(col, "")
            if value is None:
                value = ""
            elif isinstance(value, bool):
                value = "Yes" if value else "No"
            elif isinstance(value, (list, dict)):
                value = json.dumps(value)
            else:
                value = str(value)
            values.append(value)
        table.add_row(*values)

    console.print(table)


def print_dict(
    data: dict[str, Any],
    title: str | None = None,
) -> None:
    """Print a single dict as a key-value table."""
    table = Table(title=title, box=box.ROUNDED, show_header=False)
    table.add_column("Key", style="cyan")
    table.add_column("Value")

    for key, value in data.items():
        if value is None:
            value_str = ""
        elif isinstance(value, bool):
            value_str = "Yes" if value else "No"
        elif isinstance(value, (list, dict)):
            value_str = json.dumps(value)
        else:
            value_str = str(value)
        table.add_row(key, value_str)

    console.print(table)


def format_status(status: str) -> str:
    """Status with a rich color markup."""
    if not status:
        return "-"
    style = STATUS_STYLES.get(status.upper())
    return f"[{style}]{status}[/{style}]" if style else status


def print_result_page(page: ResultPage, title: str | None = None) -> None:
    """Print one page of query results. Nulls show as dim NULL."""
    if not page.columns:
        console.print("[dim]No columns returned[/dim]")
        return

    table = Table(title=title, box=box.ROUNDED)
    for column in page.columns:
        table.add_column(column.name)

    for row in page.rows:
        table.add_row(*["[dim]NULL[/dim]" if cell is None else cell for cell in row])

    console.print(table)


def tab_to_dict(tab: WorkspaceTab) -> dict[str, Any]:
    """JSON-friendly view of a tab and its execution state."""
    record = tab.execution
    data: dict[str, Any] = {
        "id": tab.id,
        "title": tab.title,
        "datasourceId": tab.datasource_id,
        "schema": tab.schema,
        "queryText": tab.query_text,
        "executionId": record.execution_id,
        "status": record.status,
        "phase": record.phase.value,
        "statusMessage": record.status_message,
        "errorMessage": record.error_message,
        "queryHash": record.query_hash,
        "rowCount": record.row_count,
        "rowLimitReached": record.row_limit_reached,
    }
    if tab.page is not None:
        data["columns"] = [
            {"name": column.name, "jdbcType": column.jdbc_type} for column in tab.page.columns
        ]
        data["rows"] = [list(row) for row in tab.page.rows]
        data["nextPageToken"] = tab.page.next_page_token
    return data


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]{message}[/green]")


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]Error: {message}[/red]")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]Warning: {message}[/yellow]")


def print_info(message: str) -> None:
    """Print an info message."""
    console.print(f"[dim]{message}[/dim]")
