"""Wire models for the query service API and immutable workspace tab state."""

from dataclasses import dataclass, field
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


FIRST_PAGE_TOKEN = ""
DEFAULT_QUERY_TEXT = "SELECT 1;"


class ExecutionStatus(str, Enum):
    """Server-side lifecycle status of an execution."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.SUCCEEDED.value, ExecutionStatus.FAILED.value, ExecutionStatus.CANCELED.value}
)


def is_terminal_status(status: str) -> bool:
    """Return True for SUCCEEDED, FAILED and CANCELED."""
    return status in TERMINAL_STATUSES


class ExecutionPhase(str, Enum):
    """Client-side state of a tab's execution."""

    IDLE = "IDLE"
    SUBMITTING = "SUBMITTING"
    TRACKING = "TRACKING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"

    @property
    def is_active(self) -> bool:
        return self in (ExecutionPhase.SUBMITTING, ExecutionPhase.TRACKING)


class RunKind(str, Enum):
    """How the SQL for a run was chosen."""

    SELECTION = "selection"
    STATEMENT = "statement"
    ALL = "all"
    EXPLAIN = "explain"


# ============================================
# Wire models
# ============================================


class WireModel(BaseModel):
    """Base for payloads exchanged with the query service (camelCase on the wire)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuerySubmission(WireModel):
    """Response to POST /queries."""

    execution_id: str
    datasource_id: str = ""
    status: str = ExecutionStatus.QUEUED.value
    message: str = ""
    query_hash: str = ""


class QueryExecutionStatus(WireModel):
    """Authoritative execution status (GET /queries/{id} and cancel responses)."""

    execution_id: str = ""
    datasource_id: str = ""
    status: str
    message: str = ""
    query_hash: str = ""
    error_summary: str | None = None
    row_count: int = 0
    column_count: int = 0
    row_limit_reached: bool = False
    submitted_at: str | None = None
    started_at: str | None = None
    completed_at: str | None = None


class QueryResultColumn(WireModel):
    """Column descriptor of a result page."""

    name: str
    jdbc_type: str = ""


class QueryResultsPage(WireModel):
    """One page of results (GET /queries/{id}/results)."""

    execution_id: str = ""
    status: str = ""
    columns: list[QueryResultColumn] = Field(default_factory=list)
    rows: list[list[str | None]] = Field(default_factory=list)
    page_size: int = 0
    next_page_token: str | None = None
    row_limit_reached: bool = False


class QueryStatusEvent(WireModel):
    """Payload of a `query-status` server-sent event."""

    event_id: str = ""
    execution_id: str
    datasource_id: str = ""
    status: str
    message: str = ""
    occurred_at: str = ""


class CsrfToken(WireModel):
    """CSRF token issued by the authentication collaborator."""

    token: str
    header_name: str = "X-CSRF-TOKEN"


class CatalogDatasource(WireModel):
    """Datasource visible to the current user."""

    id: str
    name: str = ""
    engine: str = ""
    credential_profiles: list[str] = Field(default_factory=list)


class QueryHistoryEntry(WireModel):
    """Entry of the user's query history."""

    execution_id: str
    actor: str = ""
    datasource_id: str = ""
    status: str = ""
    message: str = ""
    query_hash: str = ""
    query_text: str | None = None
    query_text_redacted: bool = False
    error_summary: str | None = None
    row_count: int = 0
    submitted_at: str = ""
    duration_ms: int | None = None


# ============================================
# Workspace tab state
# ============================================


@dataclass(frozen=True)
class ExecutionRecord:
    """At most one in-flight or last-completed execution of a tab."""

    execution_id: str = ""
    status: str = ""
    phase: ExecutionPhase = ExecutionPhase.IDLE
    status_message: str = ""
    error_message: str = ""
    query_hash: str = ""
    row_limit_reached: bool = False
    row_count: int = 0
    column_count: int = 0
    run_kind: RunKind = RunKind.ALL
    last_event_at: str = ""

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self.status)


@dataclass(frozen=True)
class ResultColumn:
    name: str
    jdbc_type: str = ""


@dataclass(frozen=True)
class ResultPage:
    """The currently displayed page of a SUCCEEDED execution."""

    columns: tuple[ResultColumn, ...] = ()
    rows: tuple[tuple[str | None, ...], ...] = ()
    next_page_token: str = ""
    current_page_token: str = FIRST_PAGE_TOKEN
    previous_page_tokens: tuple[str, ...] = ()
    row_limit_reached: bool = False

    @property
    def has_next(self) -> bool:
        return bool(self.next_page_token)

    @property
    def has_previous(self) -> bool:
        return bool(self.previous_page_tokens)


@dataclass(frozen=True)
class WorkspaceTab:
    """Independent query-editing and execution context."""

    id: str
    title: str
    datasource_id: str = ""
    schema: str = ""
    query_text: str = DEFAULT_QUERY_TEXT
    execution: ExecutionRecord = field(default_factory=ExecutionRecord)
    page: ResultPage | None = None

    def to_persistent(self) -> dict[str, str]:
        """Project the fields that survive a reload."""
        return {
            "id": self.id,
            "title": self.title,
            "datasourceId": self.datasource_id,
            "schema": self.schema,
            "queryText": self.query_text,
        }
