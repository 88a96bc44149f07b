"""Cursor-token result paging for a tab's current execution."""

from dataclasses import replace
from pathlib import Path
from typing import Sequence

import structlog

from .client import APIError, PAGE_SIZE, QueryClient
from .models import (
    ExecutionStatus,
    FIRST_PAGE_TOKEN,
    ResultColumn,
    ResultPage,
    WorkspaceTab,
)
from .tabs import TabRegistry


logger = structlog.get_logger()


def format_csv_cell(value: str | None) -> str:
    """Format one cell the way the server export does.

    Null renders as empty. A cell containing a comma, quote, CR or LF is
    wrapped in quotes with internal quotes doubled.
    """
    if value is None:
        return ""
    if any(ch in value for ch in (",", '"', "\n", "\r")):
        return '"' + value.replace('"', '""') + '"'
    return value


def format_csv_row(values: Sequence[str | None]) -> str:
    return ",".join(format_csv_cell(value) for value in values) + "\n"


def page_to_csv(page: ResultPage, include_headers: bool = True) -> str:
    """Render the displayed page as CSV text."""
    lines = []
    if include_headers:
        lines.append(format_csv_row([column.name for column in page.columns]))
    lines.extend(format_csv_row(row) for row in page.rows)
    return "".join(lines)


class ResultPager:
    """Serves one page at a time for a tab's current SUCCEEDED execution.

    Going back re-fetches from the server with the popped token; nothing but
    the current page is kept client-side.
    """

    def __init__(self, client: QueryClient, registry: TabRegistry, page_size: int = PAGE_SIZE):
        self.client = client
        self.registry = registry
        self.page_size = page_size
        # Outstanding fetch count per tab
        self._fetching: dict[str, int] = {}

    def is_fetching(self, tab_id: str) -> bool:
        return self._fetching.get(tab_id, 0) > 0

    def has_next(self, tab_id: str) -> bool:
        tab = self.registry.get_tab(tab_id)
        return bool(tab and tab.page and tab.page.has_next)

    def has_previous(self, tab_id: str) -> bool:
        tab = self.registry.get_tab(tab_id)
        return bool(tab and tab.page and tab.page.has_previous)

    async def fetch_page(
        self,
        tab_id: str,
        execution_id: str,
        page_token: str = FIRST_PAGE_TOKEN,
        back_stack: Sequence[str] | None = None,
    ) -> bool:
        """Fetch a page and store it on the tab if the execution is still current.

        ``back_stack`` becomes the tab's stack of previously used tokens;
        None keeps the existing one. Returns True when the page was applied.
        """
        self._fetching[tab_id] = self._fetching.get(tab_id, 0) + 1
        try:
            payload = await self.client.get_results(execution_id, page_token, self.page_size)
        except APIError as e:
            self.registry.update_tab(
                tab_id,
                lambda tab: _with_error(tab, execution_id, e.message),
            )
            return False
        finally:
            remaining = self._fetching.pop(tab_id, 1) - 1
            if remaining > 0:
                self._fetching[tab_id] = remaining

        applied = False

        def apply(tab: WorkspaceTab) -> WorkspaceTab:
            nonlocal applied
            if tab.execution.execution_id != execution_id:
                return tab
            applied = True
            previous = tab.page.previous_page_tokens if tab.page else ()
            return replace(
                tab,
                page=ResultPage(
                    columns=tuple(
                        ResultColumn(column.name, column.jdbc_type) for column in payload.columns
                    ),
                    rows=tuple(tuple(row) for row in payload.rows),
                    next_page_token=payload.next_page_token or "",
                    current_page_token=page_token,
                    previous_page_tokens=(
                        tuple(back_stack) if back_stack is not None else previous
                    ),
                    row_limit_reached=payload.row_limit_reached,
                ),
                execution=replace(
                    tab.execution,
                    row_limit_reached=payload.row_limit_reached,
                    error_message="",
                ),
            )

        self.registry.update_tab(tab_id, apply)
        if not applied:
            logger.debug("stale_page_discarded", tab_id=tab_id, execution_id=execution_id)
        return applied

    async def next_page(self, tab_id: str) -> bool:
        tab = self.registry.get_tab(tab_id)
        if (
            tab is None
            or tab.page is None
            or not tab.execution.execution_id
            or not tab.page.has_next
            or self.is_fetching(tab_id)
        ):
            return False

        history = [*tab.page.previous_page_tokens, tab.page.current_page_token]
        return await self.fetch_page(
            tab_id, tab.execution.execution_id, tab.page.next_page_token, history
        )

    async def previous_page(self, tab_id: str) -> bool:
        tab = self.registry.get_tab(tab_id)
        if (
            tab is None
            or tab.page is None
            or not tab.execution.execution_id
            or not tab.page.has_previous
            or self.is_fetching(tab_id)
        ):
            return False

        history = list(tab.page.previous_page_tokens)
        token = history.pop() if history else FIRST_PAGE_TOKEN
        return await self.fetch_page(tab_id, tab.execution.execution_id, token, history)

    async def export_csv(
        self, tab_id: str, destination: Path, include_headers: bool = True
    ) -> Path | None:
        """Download the full CSV export of the tab's current execution."""
        tab = self.registry.get_tab(tab_id)
        if tab is None or tab.execution.status != ExecutionStatus.SUCCEEDED:
            return None

        execution_id = tab.execution.execution_id
        try:
            return await self.client.download_export(execution_id, destination, include_headers)
        except APIError as e:
            self.registry.update_tab(tab_id, lambda t: _with_error(t, execution_id, e.message))
            return None


def _with_error(tab: WorkspaceTab, execution_id: str, message: str) -> WorkspaceTab:
    if tab.execution.execution_id != execution_id:
        return tab
    return replace(tab, execution=replace(tab.execution, error_message=message))
