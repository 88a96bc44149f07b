"""Workspace tab commands."""

from pathlib import Path
from typing import Optional
import asyncio

import typer

from ..client import APIError, QueryClient, get_client
from ..config import get_config
from ..output import (
    print_dict,
    print_error,
    print_json,
    print_success,
    print_table,
    tab_to_dict,
)
from ..store import JsonFileTabStore
from ..tabs import TabRegistry
from ..main import state

app = typer.Typer(help="Manage workspace tabs")


async def fetch_permitted_datasources(client: QueryClient) -> list[str]:
    """Ids of the datasources the current session may query."""
    return [datasource.id for datasource in await client.list_datasources()]


def resolve_tab_id(registry: TabRegistry, ref: str | None) -> str:
    """Resolve a tab reference: empty for the active tab, a 1-based position, an id or id prefix."""
    if not ref:
        return registry.active_tab_id

    tabs = registry.tabs
    if ref.isdigit() and 1 <= int(ref) <= len(tabs):
        return tabs[int(ref) - 1].id

    matches = [tab.id for tab in tabs if tab.id == ref or tab.id.startswith(ref)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ValueError(f"Tab not found: {ref}")
    raise ValueError(f"Tab reference is ambiguous: {ref}")


def _run(action) -> None:
    """Load the registry, apply ``action`` and report errors the CLI way."""
    try:
        client = get_client(verbose=state.verbose)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1)

    async def runner():
        async with client:
            permitted = await fetch_permitted_datasources(client)
        registry = TabRegistry(JsonFileTabStore(get_config().state_file), permitted)
        return action(registry)

    try:
        asyncio.run(runner())
    except (APIError, ValueError) as e:
        print_error(e.message if isinstance(e, APIError) else str(e))
        raise typer.Exit(1)


def _tab_rows(registry: TabRegistry) -> list[dict]:
    rows = []
    for position, tab in enumerate(registry.tabs, start=1):
        rows.append({
            "#": position,
            "ID": tab.id[:8],
            "Title": tab.title,
            "Datasource": tab.datasource_id,
            "Active": tab.id == registry.active_tab_id,
        })
    return rows


@app.command("list")
def list_tabs() -> None:
    """List workspace tabs in order."""

    def action(registry: TabRegistry) -> None:
        if state.json_output:
            print_json({
                "activeTabId": registry.active_tab_id,
                "tabs": [tab.to_persistent() for tab in registry.tabs],
            })
        else:
            print_table(_tab_rows(registry), title="Tabs")

    _run(action)


@app.command("new")
def new_tab(
    title: Optional[str] = typer.Option(None, "--title", "-t", help="Tab title"),
    datasource: Optional[str] = typer.Option(
        None, "--datasource", "-d", help="Datasource ID (defaults to the first permitted one)"
    ),
    sql: Optional[str] = typer.Option(None, "--sql", "-s", help="Initial query text"),
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", exists=True, dir_okay=False, help="Read initial query text from file"
    ),
) -> None:
    """Open a new tab and make it active."""
    query_text = file.read_text(encoding="utf-8") if file else sql

    def action(registry: TabRegistry) -> None:
        if datasource and not registry.is_permitted(datasource):
            raise ValueError(f"Datasource is not permitted: {datasource}")
        kwargs = {"datasource_id": datasource, "title": title}
        if query_text is not None:
            kwargs["query_text"] = query_text
        tab = registry.get_tab(registry.create_tab(**kwargs))

        if state.json_output:
            print_json(tab.to_persistent())
        else:
            print_success(f"Tab '{tab.title}' created: {tab.id}")

    _run(action)


@app.command("rename")
def rename_tab(
    tab: str = typer.Argument(..., help="Tab position, ID or ID prefix"),
    title: str = typer.Argument(..., help="New title"),
) -> None:
    """Rename a tab. Blank titles are ignored."""

    def action(registry: TabRegistry) -> None:
        tab_id = resolve_tab_id(registry, tab)
        if not title.strip():
            raise ValueError("Title must not be empty")
        registry.rename_tab(tab_id, title)
        print_success(f"Tab renamed to '{registry.get_tab(tab_id).title}'")

    _run(action)


@app.command("close")
def close_tab(
    tab: str = typer.Argument(..., help="Tab position, ID or ID prefix"),
) -> None:
    """Close a tab. Closing the last tab opens a fresh one."""

    def action(registry: TabRegistry) -> None:
        tab_id = resolve_tab_id(registry, tab)
        title = registry.get_tab(tab_id).title
        registry.close_tab(tab_id)
        print_success(f"Tab '{title}' closed")

    _run(action)


@app.command("select")
def select_tab(
    tab: str = typer.Argument(..., help="Tab position, ID or ID prefix"),
) -> None:
    """Make a tab the active one."""

    def action(registry: TabRegistry) -> None:
        tab_id = resolve_tab_id(registry, tab)
        registry.set_active_tab(tab_id)
        print_success(f"Active tab: {registry.get_tab(tab_id).title}")

    _run(action)


@app.command("show")
def show_tab(
    tab: Optional[str] = typer.Argument(None, help="Tab position, ID or ID prefix (default: active)"),
) -> None:
    """Show a tab's datasource and query text."""

    def action(registry: TabRegistry) -> None:
        current = registry.get_tab(resolve_tab_id(registry, tab))
        if state.json_output:
            print_json(tab_to_dict(current))
            return
        print_dict(
            {
                "ID": current.id,
                "Title": current.title,
                "Datasource": current.datasource_id,
                "Schema": current.schema,
                "Active": current.id == registry.active_tab_id,
            },
            title=f"Tab: {current.title}",
        )
        print(current.query_text)

    _run(action)


@app.command("set-query")
def set_query(
    tab: str = typer.Argument(..., help="Tab position, ID or ID prefix"),
    sql: Optional[str] = typer.Option(None, "--sql", "-s", help="Query text"),
    file: Optional[Path] = typer.Option(
        None, "--file", "-f", exists=True, dir_okay=False, help="Read query text from file"
    ),
) -> None:
    """Replace a tab's query text."""
    if sql is None and file is None:
        print_error("Provide --sql or --file")
        raise typer.Exit(1)
    query_text = file.read_text(encoding="utf-8") if file else sql

    def action(registry: TabRegistry) -> None:
        tab_id = resolve_tab_id(registry, tab)
        registry.set_query_text(tab_id, query_text)
        print_success(f"Query text of '{registry.get_tab(tab_id).title}' updated")

    _run(action)


@app.command("set-datasource")
def set_datasource(
    tab: str = typer.Argument(..., help="Tab position, ID or ID prefix"),
    datasource: str = typer.Argument(..., help="Datasource ID"),
) -> None:
    """Point a tab at another permitted datasource."""

    def action(registry: TabRegistry) -> None:
        tab_id = resolve_tab_id(registry, tab)
        if not registry.set_datasource(tab_id, datasource):
            raise ValueError(registry.get_tab(tab_id).execution.error_message)
        print_success(registry.get_tab(tab_id).execution.status_message)

    _run(action)
