"""Hybrid status channel: one shared push subscription plus per-tab polling.

Both producers feed :meth:`ExecutionController.reconcile`, so either one can
be switched off without changing the final state, only how fast it is reached.
"""

import asyncio

import structlog

from .client import APIError, QueryClient
from .execution import ExecutionController, ReconcileOutcome, StatusUpdate
from .models import QueryStatusEvent, is_terminal_status


logger = structlog.get_logger()

POLL_INTERVAL_SECONDS = 0.5
POLL_MAX_ATTEMPTS = 120
PUSH_RETRY_DELAY_SECONDS = 3.0


class StatusSynchronizer:
    """Keeps tracked executions current from push events and a polling fallback.

    Poll tasks are owned per tab: ``start_tracking`` cancels any existing task
    for the tab before starting a new one, so a tab never has two pollers.
    Poll failures count against the attempt budget. When the budget runs out
    polling stops quietly and the tab keeps its last known status.
    """

    def __init__(
        self,
        client: QueryClient,
        controller: ExecutionController,
        *,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = POLL_MAX_ATTEMPTS,
        push_retry_delay: float = PUSH_RETRY_DELAY_SECONDS,
    ):
        self.client = client
        self.controller = controller
        self.registry = controller.registry
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.push_retry_delay = push_retry_delay
        self._pollers: dict[str, asyncio.Task] = {}
        self._background: set[asyncio.Task] = set()
        self._push_task: asyncio.Task | None = None
        self._closed = False

    # Pull source

    def is_polling(self, tab_id: str) -> bool:
        task = self._pollers.get(tab_id)
        return task is not None and not task.done()

    @property
    def active_pollers(self) -> dict[str, asyncio.Task]:
        return {tab_id: task for tab_id, task in self._pollers.items() if not task.done()}

    def start_tracking(self, tab_id: str, execution_id: str) -> None:
        """Start polling ``execution_id`` for a tab, replacing any existing poller."""
        if self._closed:
            return
        self.stop_tracking(tab_id)
        task = asyncio.get_running_loop().create_task(self._poll(tab_id, execution_id))
        self._pollers[tab_id] = task
        logger.debug("polling_started", tab_id=tab_id, execution_id=execution_id)

    def stop_tracking(self, tab_id: str) -> None:
        task = self._pollers.pop(tab_id, None)
        if task is None or task.done():
            return
        if task is not asyncio.current_task():
            task.cancel()
        logger.debug("polling_stopped", tab_id=tab_id)

    async def _poll(self, tab_id: str, execution_id: str) -> None:
        attempts = 0
        try:
            while True:
                if self.controller.current_execution_id(tab_id) != execution_id:
                    return

                try:
                    status = await self.controller.refresh_status(
                        tab_id, execution_id, load_first_page=True
                    )
                    if is_terminal_status(status.status):
                        return
                except APIError as e:
                    logger.debug(
                        "poll_tick_failed",
                        tab_id=tab_id,
                        execution_id=execution_id,
                        error=e.message,
                    )

                attempts += 1
                if attempts >= self.max_poll_attempts:
                    logger.info(
                        "poll_budget_exhausted",
                        tab_id=tab_id,
                        execution_id=execution_id,
                        attempts=attempts,
                    )
                    return

                await asyncio.sleep(self.poll_interval)
        finally:
            if self._pollers.get(tab_id) is asyncio.current_task():
                del self._pollers[tab_id]

    # Push source

    def start_push(self) -> None:
        """Open the shared status subscription. Only one per session."""
        if self._push_task is not None or self._closed:
            return
        self._push_task = asyncio.get_running_loop().create_task(self._consume_events())

    @property
    def push_active(self) -> bool:
        return self._push_task is not None and not self._push_task.done()

    async def _consume_events(self) -> None:
        while True:
            try:
                async for event in self.client.stream_status_events():
                    try:
                        self.handle_event(event)
                    except Exception:
                        logger.exception(
                            "push_event_failed", execution_id=event.execution_id
                        )
                logger.info("push_stream_ended")
            except APIError as e:
                logger.warning("push_stream_disconnected", error=e.message)
            await asyncio.sleep(self.push_retry_delay)

    def handle_event(self, event: QueryStatusEvent) -> ReconcileOutcome:
        """Route a push event to the tab that owns its execution id."""
        tab = self.registry.find_tab_by_execution_id(event.execution_id)
        if tab is None:
            return ReconcileOutcome.DISCARDED

        outcome = self.controller.reconcile(tab.id, StatusUpdate.from_event(event))
        if outcome is ReconcileOutcome.BECAME_TERMINAL:
            self._spawn(self._refresh_after_push(tab.id, event.execution_id))
        return outcome

    async def _refresh_after_push(self, tab_id: str, execution_id: str) -> None:
        # Push events carry no row/column metadata; fetch the full status once.
        try:
            await self.controller.refresh_status(tab_id, execution_id, load_first_page=True)
        except APIError as e:
            logger.debug("push_refresh_failed", tab_id=tab_id, error=e.message)

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Teardown

    async def aclose(self) -> None:
        """Stop every poller, pending refresh and the push subscription."""
        self._closed = True
        tasks = list(self._pollers.values()) + list(self._background)
        self._pollers.clear()
        if self._push_task is not None:
            tasks.append(self._push_task)
            self._push_task = None

        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
