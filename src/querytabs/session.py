"""Workbench session: wires tabs, execution, paging and status sync together."""

from typing import Iterable
import asyncio

import structlog

from .client import QueryClient
from .execution import ExecutionController
from .models import ExecutionPhase, ExecutionStatus, RunKind, WorkspaceTab
from .pager import ResultPager
from .statements import resolve_run_sql
from .store import TabStore
from .sync import POLL_INTERVAL_SECONDS, POLL_MAX_ATTEMPTS, StatusSynchronizer
from .tabs import TabRegistry


logger = structlog.get_logger()


def is_settled(tab: WorkspaceTab) -> bool:
    """True once a run needs nothing more from the server.

    That is a failed submission, or a terminal status whose first result page
    (for SUCCEEDED) has arrived or failed to load.
    """
    record = tab.execution
    if record.phase == ExecutionPhase.IDLE:
        return bool(record.error_message)
    if not record.is_terminal:
        return False
    if record.status == ExecutionStatus.SUCCEEDED:
        return tab.page is not None or bool(record.error_message)
    return True


class WorkbenchSession:
    """One user session: a tab registry plus the machinery that runs queries.

    Use as an async context manager. Entering opens the shared push
    subscription (unless ``enable_push`` is False); leaving stops all polling
    and closes the subscription.
    """

    def __init__(
        self,
        client: QueryClient,
        store: TabStore,
        permitted_datasource_ids: Iterable[str] = (),
        *,
        enable_push: bool = True,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = POLL_MAX_ATTEMPTS,
    ):
        self.client = client
        self.enable_push = enable_push
        self.registry = TabRegistry(store, permitted_datasource_ids)
        self.pager = ResultPager(client, self.registry)
        self.controller = ExecutionController(client, self.registry, self.pager)
        self.synchronizer = StatusSynchronizer(
            client,
            self.controller,
            poll_interval=poll_interval,
            max_poll_attempts=max_poll_attempts,
        )
        self.controller.tracker = self.synchronizer

    async def __aenter__(self) -> "WorkbenchSession":
        if self.enable_push:
            self.synchronizer.start_push()
        return self

    async def __aexit__(self, *args) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.synchronizer.aclose()
        await self.controller.aclose()
        logger.debug("session_closed")

    async def run_tab(
        self,
        tab_id: str,
        kind: RunKind = RunKind.ALL,
        selection: str | None = None,
        cursor: int | None = None,
    ) -> bool:
        """Run the tab's query text, choosing the SQL according to ``kind``."""
        tab = self.registry.get_tab(tab_id)
        if tab is None:
            return False
        sql = resolve_run_sql(tab.query_text, kind, selection, cursor)
        return await self.controller.run(tab_id, sql, kind)

    async def wait_for_completion(
        self, tab_id: str, timeout: float | None = None
    ) -> WorkspaceTab | None:
        """Wait until the tab's run is settled (see :func:`is_settled`).

        Raises TimeoutError when ``timeout`` elapses first. Returns None if the
        tab was closed.
        """
        settled = asyncio.Event()

        def check(tab: WorkspaceTab) -> None:
            if tab.id == tab_id and is_settled(tab):
                settled.set()

        remove = self.registry.add_listener(check)
        try:
            current = self.registry.get_tab(tab_id)
            if current is None:
                return None
            check(current)
            await asyncio.wait_for(settled.wait(), timeout)
        finally:
            remove()
        return self.registry.get_tab(tab_id)
