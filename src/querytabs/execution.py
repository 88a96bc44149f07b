"""Per-tab execution state machine: submit, track, cancel, reconcile."""

from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Protocol
import asyncio

import structlog

from .client import APIError, QueryClient
from .models import (
    ExecutionPhase,
    ExecutionRecord,
    ExecutionStatus,
    QueryExecutionStatus,
    QueryStatusEvent,
    RunKind,
    WorkspaceTab,
    is_terminal_status,
)
from .pager import ResultPager
from .tabs import TabRegistry


logger = structlog.get_logger()

HistoryListener = Callable[[str, str], None]

RUNNING_MESSAGES = {
    RunKind.SELECTION: "Running selected SQL...",
    RunKind.STATEMENT: "Running statement at cursor...",
    RunKind.ALL: "Running full tab SQL...",
    RunKind.EXPLAIN: "Running EXPLAIN...",
}


class Tracker(Protocol):
    """Keeps a tracked execution's status current (see StatusSynchronizer)."""

    def start_tracking(self, tab_id: str, execution_id: str) -> None: ...

    def stop_tracking(self, tab_id: str) -> None: ...


class ReconcileOutcome(str, Enum):
    DISCARDED = "discarded"
    APPLIED = "applied"
    BECAME_TERMINAL = "became_terminal"


@dataclass(frozen=True)
class StatusUpdate:
    """A status observation from either the push stream or a status fetch."""

    execution_id: str
    status: str
    message: str = ""
    error_summary: str | None = None
    query_hash: str | None = None
    row_count: int | None = None
    column_count: int | None = None
    row_limit_reached: bool | None = None
    occurred_at: str = ""

    @classmethod
    def from_status(cls, payload: QueryExecutionStatus, execution_id: str) -> "StatusUpdate":
        return cls(
            execution_id=payload.execution_id or execution_id,
            status=payload.status,
            message=payload.message,
            error_summary=payload.error_summary,
            query_hash=payload.query_hash,
            row_count=payload.row_count,
            column_count=payload.column_count,
            row_limit_reached=payload.row_limit_reached,
        )

    @classmethod
    def from_event(cls, event: QueryStatusEvent) -> "StatusUpdate":
        return cls(
            execution_id=event.execution_id,
            status=event.status,
            message=event.message,
            occurred_at=event.occurred_at,
        )

    @property
    def is_authoritative(self) -> bool:
        return not self.occurred_at


def _phase_for(status: str) -> ExecutionPhase:
    if is_terminal_status(status):
        return ExecutionPhase(status)
    return ExecutionPhase.TRACKING


def _pick(value, fallback):
    return fallback if value is None else value


def explain_sql(sql: str) -> str:
    if sql.lstrip().upper().startswith("EXPLAIN"):
        return sql
    return f"EXPLAIN {sql}"


class ExecutionController:
    """Drives each tab through IDLE -> SUBMITTING -> TRACKING -> terminal.

    At most one execution per tab is active; a second run is rejected, not
    queued. All status observations go through :meth:`reconcile`.
    """

    def __init__(
        self,
        client: QueryClient,
        registry: TabRegistry,
        pager: ResultPager,
        tracker: Tracker | None = None,
    ):
        self.client = client
        self.registry = registry
        self.pager = pager
        self.tracker = tracker
        self._history_listeners: list[HistoryListener] = []
        self._background: set[asyncio.Task] = set()
        registry.add_close_listener(self._on_tab_closed)

    def add_history_listener(self, listener: HistoryListener) -> None:
        """Call ``listener(tab_id, execution_id)`` when an execution finishes."""
        self._history_listeners.append(listener)

    def current_execution_id(self, tab_id: str) -> str | None:
        tab = self.registry.get_tab(tab_id)
        return tab.execution.execution_id if tab else None

    def _set_messages(self, tab_id: str, error: str = "", status: str | None = "") -> None:
        def mutate(tab: WorkspaceTab) -> WorkspaceTab:
            execution = replace(tab.execution, error_message=error)
            if status is not None:
                execution = replace(execution, status_message=status)
            return replace(tab, execution=execution)

        self.registry.update_tab(tab_id, mutate)

    def _stop_tracking(self, tab_id: str) -> None:
        if self.tracker is not None:
            self.tracker.stop_tracking(tab_id)

    # Run

    async def run(self, tab_id: str, sql_text: str, run_kind: RunKind = RunKind.ALL) -> bool:
        """Submit ``sql_text`` on a tab. Returns False when rejected or failed."""
        tab = self.registry.get_tab(tab_id)
        if tab is None:
            return False

        if tab.execution.phase.is_active:
            logger.info("run_rejected_active_execution", tab_id=tab_id)
            return False

        datasource_id = tab.datasource_id.strip()
        if not datasource_id:
            self._set_messages(tab_id, "Select a datasource before running a query.")
            return False

        if not self.registry.is_permitted(datasource_id):
            self._set_messages(
                tab_id,
                "Selected datasource is no longer permitted for your account. "
                "Choose another datasource.",
            )
            return False

        normalized_sql = sql_text.strip()
        if not normalized_sql:
            self._set_messages(
                tab_id,
                "Select SQL text first, or use Run All."
                if run_kind == RunKind.SELECTION
                else "Query text is empty.",
            )
            return False

        if run_kind == RunKind.EXPLAIN:
            normalized_sql = explain_sql(normalized_sql)

        self._stop_tracking(tab_id)
        self.registry.update_tab(
            tab_id,
            lambda t: replace(
                t,
                page=None,
                execution=ExecutionRecord(
                    phase=ExecutionPhase.SUBMITTING,
                    run_kind=run_kind,
                    status_message=RUNNING_MESSAGES[run_kind],
                ),
            ),
        )

        try:
            submission = await self.client.submit_query(datasource_id, normalized_sql)
        except APIError as e:
            logger.info("run_submit_failed", tab_id=tab_id, status_code=e.status_code)
            self.registry.update_tab(
                tab_id,
                lambda t: replace(
                    t,
                    execution=replace(
                        t.execution,
                        phase=ExecutionPhase.IDLE,
                        error_message=e.message,
                        status_message="",
                    ),
                ),
            )
            return False

        execution_id = submission.execution_id
        updated = self.registry.update_tab(
            tab_id,
            lambda t: replace(
                t,
                execution=replace(
                    t.execution,
                    execution_id=execution_id,
                    status=submission.status,
                    phase=ExecutionPhase.TRACKING,
                    query_hash=submission.query_hash,
                    status_message=(
                        f"Execution {execution_id} queued on "
                        f"{submission.datasource_id or datasource_id}."
                    ),
                    error_message="",
                ),
            ),
        )
        if updated is None:
            # Tab closed while the submission was in flight.
            self._cancel_in_background(execution_id)
            return False

        logger.info("execution_submitted", tab_id=tab_id, execution_id=execution_id)
        if self.tracker is not None:
            self.tracker.start_tracking(tab_id, execution_id)
        return True

    # Cancel

    async def cancel(self, tab_id: str, triggered_by_shortcut: bool = False) -> bool:
        """Ask the server to cancel the tab's current execution."""
        tab = self.registry.get_tab(tab_id)
        if tab is None:
            return False

        execution_id = tab.execution.execution_id
        if not execution_id or tab.execution.is_terminal:
            self._set_messages(
                tab_id,
                status="No query is running for this tab." if triggered_by_shortcut else None,
            )
            return False

        try:
            await self.client.cancel_query(execution_id)
        except APIError as e:
            self._set_messages(tab_id, e.message, status=None)
            return False
        finally:
            if self.current_execution_id(tab_id) == execution_id:
                self._stop_tracking(tab_id)

        try:
            await self.refresh_status(tab_id, execution_id, load_first_page=False)
        except APIError as e:
            self._set_messages(tab_id, e.message, status=None)
        return True

    # Status

    async def refresh_status(
        self, tab_id: str, execution_id: str, load_first_page: bool
    ) -> QueryExecutionStatus:
        """Fetch authoritative status for an execution and reconcile it.

        Raises APIError when the status request fails.
        """
        payload = await self.client.get_status(execution_id)
        outcome = self.reconcile(tab_id, StatusUpdate.from_status(payload, execution_id))

        if (
            load_first_page
            and outcome is not ReconcileOutcome.DISCARDED
            and payload.status == ExecutionStatus.SUCCEEDED
        ):
            await self.pager.fetch_page(tab_id, execution_id, back_stack=())
        return payload

    def reconcile(self, tab_id: str, update: StatusUpdate) -> ReconcileOutcome:
        """Apply a status update if it belongs to the tab's current execution.

        Updates for another execution id are discarded, as are non-terminal
        updates once the execution is terminal and push events older than the
        freshest one already applied.
        """
        outcome = ReconcileOutcome.DISCARDED

        def apply(tab: WorkspaceTab) -> WorkspaceTab:
            nonlocal outcome
            record = tab.execution
            if record.execution_id != update.execution_id:
                return tab
            if record.is_terminal and not is_terminal_status(update.status):
                return tab
            if (
                update.occurred_at
                and record.last_event_at
                and update.occurred_at < record.last_event_at
            ):
                return tab

            terminal = is_terminal_status(update.status)
            if update.status == ExecutionStatus.FAILED:
                if update.is_authoritative:
                    error = update.error_summary or update.message
                else:
                    error = record.error_message or update.message
            elif update.is_authoritative:
                error = ""
            else:
                error = record.error_message

            outcome = (
                ReconcileOutcome.BECAME_TERMINAL
                if terminal and not record.is_terminal
                else ReconcileOutcome.APPLIED
            )
            return replace(
                tab,
                execution=replace(
                    record,
                    status=update.status,
                    phase=_phase_for(update.status),
                    status_message=update.message,
                    error_message=error,
                    query_hash=_pick(update.query_hash, record.query_hash),
                    row_count=_pick(update.row_count, record.row_count),
                    column_count=_pick(update.column_count, record.column_count),
                    row_limit_reached=_pick(update.row_limit_reached, record.row_limit_reached),
                    last_event_at=max(update.occurred_at, record.last_event_at),
                ),
            )

        self.registry.update_tab(tab_id, apply)

        if outcome is ReconcileOutcome.DISCARDED:
            logger.debug(
                "stale_update_discarded",
                tab_id=tab_id,
                execution_id=update.execution_id,
                status=update.status,
            )
            return outcome

        if is_terminal_status(update.status):
            self._stop_tracking(tab_id)
        if outcome is ReconcileOutcome.BECAME_TERMINAL:
            logger.info(
                "execution_finished",
                tab_id=tab_id,
                execution_id=update.execution_id,
                status=update.status,
            )
            for listener in list(self._history_listeners):
                listener(tab_id, update.execution_id)
        return outcome

    # Tab close

    def _on_tab_closed(self, tab: WorkspaceTab) -> None:
        self._stop_tracking(tab.id)
        record = tab.execution
        if record.execution_id and not record.is_terminal:
            self._cancel_in_background(record.execution_id)

    def _cancel_in_background(self, execution_id: str) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._cancel_quietly(execution_id))
        except RuntimeError:
            logger.warning("cancel_not_sent_no_event_loop", execution_id=execution_id)
            return
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _cancel_quietly(self, execution_id: str) -> None:
        try:
            await self.client.cancel_query(execution_id)
        except APIError as e:
            logger.info("orphan_cancel_failed", execution_id=execution_id, error=e.message)

    async def aclose(self) -> None:
        """Wait for outstanding fire-and-forget cancellations."""
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
