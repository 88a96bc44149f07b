"""Shared fixtures for querytabs tests.

- every test gets an isolated config file and no QUERYTABS_* variables
- ``api`` mocks the query service at http://test-api with a CSRF route
- ``registry`` / ``controller`` / ``session`` build the runtime pieces on a
  memory store with datasources ds-1 and ds-2 permitted
"""

from dataclasses import replace
from pathlib import Path
from typing import AsyncGenerator, Generator

import pytest
import pytest_asyncio
import respx
import structlog
from httpx import Response

from querytabs.client import QueryClient
from querytabs.config import CLIConfig
from querytabs.execution import ExecutionController
from querytabs.models import ExecutionPhase, ExecutionRecord
from querytabs.pager import ResultPager
from querytabs.session import WorkbenchSession
from querytabs.store import MemoryTabStore
from querytabs.tabs import TabRegistry


BASE_URL = "http://test-api"
PERMITTED = ["ds-1", "ds-2"]


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the config file at a temp dir and clear environment overrides."""
    config_dir = tmp_path / ".querytabs"
    monkeypatch.setattr("querytabs.config.CONFIG_DIR", config_dir)
    monkeypatch.setattr("querytabs.config.CONFIG_FILE", config_dir / "config.yaml")
    for name in ("QUERYTABS_URL", "QUERYTABS_SESSION_TOKEN", "QUERYTABS_STATE_FILE"):
        monkeypatch.delenv(name, raising=False)
    return config_dir


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None, None, None]:
    """CLI runs bind structlog to the runner's stderr; restore defaults afterwards."""
    yield
    structlog.reset_defaults()


@pytest.fixture
def mock_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Configure the CLI through environment variables. Returns the state file."""
    state_file = tmp_path / "tabs.json"
    monkeypatch.setenv("QUERYTABS_URL", BASE_URL)
    monkeypatch.setenv("QUERYTABS_SESSION_TOKEN", "test-token")
    monkeypatch.setenv("QUERYTABS_STATE_FILE", str(state_file))
    return state_file


def mock_csrf(router: respx.MockRouter) -> respx.Route:
    return router.get("/auth/csrf", name="csrf").mock(
        return_value=Response(200, json={"token": "csrf-1", "headerName": "X-CSRF-TOKEN"})
    )


@pytest.fixture
def api() -> Generator[respx.MockRouter, None, None]:
    """Mocked query service with a CSRF endpoint."""
    with respx.mock(base_url=BASE_URL, assert_all_called=False) as router:
        mock_csrf(router)
        yield router


@pytest.fixture
def client() -> QueryClient:
    """Query client for the mocked service. The HTTP client is created on first use."""
    return QueryClient(CLIConfig(url=BASE_URL, session_token="test-token"))


@pytest.fixture
def store() -> MemoryTabStore:
    return MemoryTabStore()


@pytest.fixture
def registry(store: MemoryTabStore) -> TabRegistry:
    return TabRegistry(store, PERMITTED)


class FakeTracker:
    """Records tracking calls instead of polling."""

    def __init__(self):
        self.started: list[tuple[str, str]] = []
        self.stopped: list[str] = []

    def start_tracking(self, tab_id: str, execution_id: str) -> None:
        self.started.append((tab_id, execution_id))

    def stop_tracking(self, tab_id: str) -> None:
        self.stopped.append(tab_id)


@pytest.fixture
def tracker() -> FakeTracker:
    return FakeTracker()


@pytest.fixture
def pager(client: QueryClient, registry: TabRegistry) -> ResultPager:
    return ResultPager(client, registry)


@pytest.fixture
def controller(
    client: QueryClient, registry: TabRegistry, pager: ResultPager, tracker: FakeTracker
) -> ExecutionController:
    return ExecutionController(client, registry, pager, tracker)


@pytest_asyncio.fixture
async def session(
    client: QueryClient, store: MemoryTabStore
) -> AsyncGenerator[WorkbenchSession, None]:
    """Session with polling every tick and no push stream."""
    workbench = WorkbenchSession(client, store, PERMITTED, enable_push=False, poll_interval=0)
    async with workbench:
        yield workbench


def track(
    registry: TabRegistry,
    tab_id: str,
    execution_id: str = "E1",
    status: str = "RUNNING",
    phase: ExecutionPhase = ExecutionPhase.TRACKING,
) -> None:
    """Put a tab into the state of tracking ``execution_id``."""
    registry.update_tab(
        tab_id,
        lambda tab: replace(
            tab,
            execution=ExecutionRecord(execution_id=execution_id, status=status, phase=phase),
        ),
    )


def status_payload(execution_id: str = "E1", status: str = "RUNNING", **extra) -> dict:
    payload = {
        "executionId": execution_id,
        "datasourceId": "ds-1",
        "status": status,
        "message": f"Query {status.lower()}",
        "queryHash": "hash-1",
        "rowCount": 0,
        "columnCount": 0,
        "rowLimitReached": False,
    }
    payload.update(extra)
    return payload


def results_payload(rows=(("1",),), columns=("one",), next_page_token=None) -> dict:
    return {
        "executionId": "E1",
        "status": "SUCCEEDED",
        "columns": [{"name": name, "jdbcType": "INTEGER"} for name in columns],
        "rows": [list(row) for row in rows],
        "pageSize": 100,
        "nextPageToken": next_page_token,
        "rowLimitReached": False,
    }
