"""Query execution commands: run, status, cancel, results, export and history."""

from pathlib import Path
from typing import Optional
import asyncio
import sys

import typer

from ..client import APIError, get_client
from ..config import get_config
from ..models import ExecutionStatus, ResultColumn, ResultPage, RunKind
from ..output import (
    console,
    format_status,
    print_dict,
    print_error,
    print_info,
    print_json,
    print_result_page,
    print_success,
    print_table,
    print_warning,
    tab_to_dict,
)
from ..pager import page_to_csv
from ..session import WorkbenchSession
from ..store import JsonFileTabStore
from ..tabs import TabRegistry
from ..main import state
from .tabs import fetch_permitted_datasources, resolve_tab_id


def _client_or_exit():
    try:
        return get_client(verbose=state.verbose)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)


def _execute(coro):
    """Run a command coroutine, turning API and input errors into exit code 1."""
    try:
        return asyncio.run(coro)
    except APIError as e:
        print_error(e.message)
        raise typer.Exit(1)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)


def run_query(
    tab: Optional[str] = typer.Option(
        None, "--tab", "-t", help="Tab position, ID or ID prefix (default: active tab)"
    ),
    sql: Optional[str] = typer.Option(None, "--sql", "-s", help="Replace the tab's query text first"),
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", exists=True, dir_okay=False, help="Read query text from file"
    ),
    kind: RunKind = typer.Option(RunKind.ALL, "--kind", "-k", help="Which SQL to run"),
    selection: Optional[str] = typer.Option(
        None, "--selection", help="Selected SQL text (with --kind selection)"
    ),
    cursor: int = typer.Option(0, "--cursor", "-c", help="Cursor offset (with --kind statement)"),
    timeout: float = typer.Option(60.0, "--timeout", help="Seconds to wait for a terminal status"),
    push: bool = typer.Option(True, "--push/--no-push", help="Use the status event stream"),
) -> None:
    """Run SQL from a tab and print the first page of results.

    Examples:
        querytabs run --sql "SELECT 1;"
        querytabs run --tab 2 --kind statement --cursor 40
        querytabs run --kind explain
    """
    client = _client_or_exit()
    query_text = file.read_text(encoding="utf-8") if file else sql

    async def run() -> int:
        async with client:
            permitted = await fetch_permitted_datasources(client)
            store = JsonFileTabStore(get_config().state_file)
            async with WorkbenchSession(client, store, permitted, enable_push=push) as session:
                tab_id = resolve_tab_id(session.registry, tab)
                if query_text is not None:
                    session.registry.set_query_text(tab_id, query_text)

                started = await session.run_tab(tab_id, kind, selection, cursor)
                current = session.registry.get_tab(tab_id)
                if not started:
                    message = current.execution.error_message or "A query is already running for this tab."
                    print_error(message)
                    return 1

                if not state.json_output:
                    print_info(current.execution.status_message)

                try:
                    current = await session.wait_for_completion(tab_id, timeout)
                except asyncio.TimeoutError:
                    current = session.registry.get_tab(tab_id)
                    print_warning(
                        f"Execution {current.execution.execution_id} is still "
                        f"{current.execution.status or 'pending'} after {timeout:g}s. "
                        f"Check it with: querytabs status {current.execution.execution_id}"
                    )
                    return 0

        return _report(current)

    exit_code = _execute(run())
    if exit_code:
        raise typer.Exit(exit_code)


def _report(tab) -> int:
    record = tab.execution
    if state.json_output:
        print_json(tab_to_dict(tab))
        return 0 if record.status == ExecutionStatus.SUCCEEDED else 1

    if record.status != ExecutionStatus.SUCCEEDED:
        print_error(record.error_message or record.status_message or f"Execution {record.status}")
        return 1

    if tab.page is not None:
        print_result_page(tab.page, title=f"Execution {record.execution_id}")
    if record.error_message:
        print_warning(record.error_message)
    if record.status_message:
        console.print(record.status_message)
    if record.row_limit_reached:
        print_warning("Row limit reached; results are truncated.")
    if tab.page is not None and tab.page.has_next:
        print_info(
            f"More rows: querytabs results {record.execution_id} "
            f"--page-token {tab.page.next_page_token}"
        )
    return 0


def query_status(
    execution_id: str = typer.Argument(..., help="Execution ID"),
) -> None:
    """Show the server-side status of an execution."""
    client = _client_or_exit()

    async def run() -> None:
        async with client:
            status = await client.get_status(execution_id)
        if state.json_output:
            print_json(status.model_dump(by_alias=True))
            return
        print_dict(
            {
                "Execution": status.execution_id or execution_id,
                "Datasource": status.datasource_id,
                "Status": status.status,
                "Message": status.message,
                "Error": status.error_summary,
                "Rows": status.row_count,
                "Columns": status.column_count,
                "Row limit reached": status.row_limit_reached,
                "Submitted": status.submitted_at,
                "Completed": status.completed_at,
            },
            title=f"Execution: {execution_id}",
        )

    _execute(run())


def cancel_query(
    execution_id: str = typer.Argument(..., help="Execution ID"),
) -> None:
    """Request cancellation of a running execution."""
    client = _client_or_exit()

    async def run() -> None:
        async with client:
            status = await client.cancel_query(execution_id)
        if state.json_output:
            print_json(status.model_dump(by_alias=True))
        else:
            print_success(f"Cancel requested for {execution_id}: {status.status}")

    _execute(run())


def query_results(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    page_token: str = typer.Option("", "--page-token", "-p", help="Page token (default: first page)"),
    as_csv: bool = typer.Option(False, "--csv", help="Print the page as CSV"),
) -> None:
    """Show one page of results of a succeeded execution."""
    client = _client_or_exit()

    async def run() -> None:
        async with client:
            result = await client.get_results(execution_id, page_token)

        if state.json_output:
            print_json(result.model_dump(by_alias=True))
            return

        page = ResultPage(
            columns=tuple(ResultColumn(c.name, c.jdbc_type) for c in result.columns),
            rows=tuple(tuple(row) for row in result.rows),
            next_page_token=result.next_page_token or "",
            current_page_token=page_token,
            row_limit_reached=result.row_limit_reached,
        )
        if as_csv:
            sys.stdout.write(page_to_csv(page))
            return

        print_result_page(page, title=f"Execution {execution_id}")
        if page.has_next:
            print_info(f"Next page: --page-token {page.next_page_token}")

    _execute(run())


def export_results(
    execution_id: str = typer.Argument(..., help="Execution ID"),
    output: Path = typer.Argument(..., help="Output file or directory"),
    no_headers: bool = typer.Option(False, "--no-headers", help="Omit the header row"),
) -> None:
    """Download the full CSV export of an execution."""
    client = _client_or_exit()

    async def run() -> None:
        async with client:
            path = await client.download_export(
                execution_id, output, include_headers=not no_headers, show_progress=True
            )
        if state.json_output:
            print_json({"success": True, "executionId": execution_id, "path": str(path)})
        else:
            print_success(f"Exported to {path}")

    _execute(run())


def query_history(
    limit: int = typer.Option(20, "--limit", "-l", help="Maximum number of entries"),
    status: Optional[ExecutionStatus] = typer.Option(None, "--status", help="Filter by status"),
    datasource: Optional[str] = typer.Option(None, "--datasource", "-d", help="Filter by datasource"),
    open_id: Optional[str] = typer.Option(
        None, "--open", metavar="EXECUTION_ID", help="Open the entry's SQL in a new tab"
    ),
) -> None:
    """List recent executions, or open one in a new tab."""
    client = _client_or_exit()

    async def run() -> None:
        async with client:
            entries = await client.list_history(
                limit, status.value if status else None, datasource
            )
            permitted = await fetch_permitted_datasources(client) if open_id else []

        if open_id:
            entry = next((e for e in entries if e.execution_id.startswith(open_id)), None)
            if entry is None:
                raise ValueError(f"History entry not found: {open_id}")
            if entry.query_text is None or entry.query_text_redacted:
                raise ValueError("Query text is not available for this history entry.")
            registry = TabRegistry(JsonFileTabStore(get_config().state_file), permitted)
            tab_id = registry.open_from_history(entry.query_text, entry.datasource_id)
            print_success(f"Opened in tab '{registry.get_tab(tab_id).title}' ({tab_id})")
            return

        if state.json_output:
            print_json([entry.model_dump(by_alias=True) for entry in entries])
            return

        rows = [
            {
                "ID": entry.execution_id,
                "Status": format_status(entry.status),
                "Datasource": entry.datasource_id,
                "Rows": entry.row_count,
                "Submitted": entry.submitted_at,
                "Duration (ms)": entry.duration_ms,
            }
            for entry in entries
        ]
        print_table(rows, title="Query history")

    _execute(run())


def register(app: typer.Typer) -> None:
    """Attach the query commands to the top-level app."""
    app.command("run")(run_query)
    app.command("status")(query_status)
    app.command("cancel")(cancel_query)
    app.command("results")(query_results)
    app.command("export")(export_results)
    app.command("history")(query_history)
