"""Async HTTP client for the query service API."""

from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar
from pathlib import Path
import json
import re

import httpx
import structlog
from pydantic import BaseModel, ValidationError
from rich.progress import Progress, SpinnerColumn, TextColumn, BarColumn, DownloadColumn

from .config import CLIConfig, get_config
from .events import aiter_sse
from .models import (
    CatalogDatasource,
    CsrfToken,
    QueryExecutionStatus,
    QueryHistoryEntry,
    QueryResultsPage,
    QueryStatusEvent,
    QuerySubmission,
)


logger = structlog.get_logger()

STATUS_EVENT_NAME = "query-status"
PAGE_SIZE = 100

CsrfProvider = Callable[[], Awaitable[CsrfToken]]
ModelT = TypeVar("ModelT", bound=BaseModel)


class APIError(Exception):
    """API error with status code and a human-readable message.

    Transport failures (connection refused, timeouts) use status code 0.
    """

    def __init__(self, status_code: int, message: str, details: dict | None = None):
        self.status_code = status_code
        self.message = message
        self.details = details or {}
        super().__init__(f"[{status_code}] {message}")


def friendly_error_message(status_code: int, payload: Any) -> str:
    """Turn an error response into the message shown on a tab."""
    if isinstance(payload, dict):
        for key in ("error", "message", "detail"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value

    if status_code == 401:
        return "Authentication is required. Please sign in again."
    if status_code == 403:
        return "You do not have permission for this action."
    return "Request failed. Please try again."


def filename_from_disposition(header: str | None, default: str) -> str:
    """Extract the filename from a Content-Disposition header."""
    if header:
        match = re.search(r'filename="?([^";]+)"?', header)
        if match:
            return Path(match.group(1)).name
    return default


class QueryClient:
    """Async HTTP client for the query service API.

    Non-GET requests carry a CSRF header obtained from ``csrf_provider``
    (by default ``GET /auth/csrf``) right before the request is sent.
    """

    def __init__(
        self,
        config: CLIConfig | None = None,
        verbose: bool = False,
        csrf_provider: CsrfProvider | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.config = config or get_config()
        self.verbose = verbose
        self.csrf_provider = csrf_provider or self.fetch_csrf_token
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.config.url,
                headers={
                    "Authorization": f"Bearer {self.config.session_token}",
                    "Accept": "application/json",
                },
                timeout=60.0,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "QueryClient":
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    def _handle_response(self, response: httpx.Response) -> Any:
        """Handle API response, raising error if not successful."""
        if self.verbose:
            logger.debug(
                "api_response",
                method=response.request.method,
                path=response.request.url.path,
                status_code=response.status_code,
            )

        if response.status_code >= 400:
            try:
                error_data = response.json()
            except ValueError:
                error_data = None
            details = error_data.get("details", {}) if isinstance(error_data, dict) else {}
            raise APIError(
                response.status_code,
                friendly_error_message(response.status_code, error_data),
                details,
            )

        if response.status_code == 204:
            return {}

        try:
            return response.json()
        except ValueError:
            return {}

    async def _request(
        self,
        method: str,
        path: str,
        params: dict | None = None,
        json_data: dict | None = None,
    ) -> Any:
        headers = {}
        if method != "GET":
            csrf = await self.csrf_provider()
            headers[csrf.header_name] = csrf.token

        try:
            response = await self.client.request(
                method, path, params=params, json=json_data, headers=headers
            )
        except httpx.HTTPError as e:
            raise APIError(0, f"Unable to reach the query service: {e}") from e
        return self._handle_response(response)

    async def get(self, path: str, params: dict | None = None) -> Any:
        """Make GET request."""
        return await self._request("GET", path, params=params)

    async def post(self, path: str, json_data: dict | None = None) -> Any:
        """Make POST request with a CSRF header."""
        return await self._request("POST", path, json_data=json_data)

    async def fetch_csrf_token(self) -> CsrfToken:
        """Default CSRF provider: ask the authentication service for a token."""
        try:
            response = await self.client.get("/auth/csrf")
        except httpx.HTTPError as e:
            raise APIError(0, f"Unable to reach the query service: {e}") from e
        if response.status_code >= 400:
            raise APIError(
                response.status_code, "Unable to acquire a CSRF token for this request."
            )
        try:
            data = response.json()
        except ValueError:
            data = None
        return self._parse(CsrfToken, data)

    @staticmethod
    def _parse(model: type[ModelT], data: Any) -> ModelT:
        """Validate a response body, raising APIError when it does not match."""
        try:
            return model.model_validate(data)
        except ValidationError as e:
            logger.debug("response_malformed", model=model.__name__, errors=e.error_count())
            raise APIError(200, "Unexpected response from the query service.") from e

    def _parse_list(self, model: type[ModelT], data: Any) -> list[ModelT]:
        if data in (None, {}):
            return []
        if not isinstance(data, list):
            raise APIError(200, "Unexpected response from the query service.")
        return [self._parse(model, item) for item in data]

    # Query operations

    async def submit_query(self, datasource_id: str, sql: str) -> QuerySubmission:
        data = await self.post("/queries", {"datasourceId": datasource_id, "sql": sql})
        return self._parse(QuerySubmission, data)

    async def get_status(self, execution_id: str) -> QueryExecutionStatus:
        data = await self.get(f"/queries/{execution_id}")
        return self._parse(QueryExecutionStatus, data)

    async def cancel_query(self, execution_id: str) -> QueryExecutionStatus:
        data = await self.post(f"/queries/{execution_id}/cancel")
        return self._parse(QueryExecutionStatus, data)

    async def get_results(
        self, execution_id: str, page_token: str = "", page_size: int = PAGE_SIZE
    ) -> QueryResultsPage:
        params: dict[str, Any] = {"pageSize": page_size}
        if page_token:
            params["pageToken"] = page_token
        data = await self.get(f"/queries/{execution_id}/results", params=params)
        return self._parse(QueryResultsPage, data)

    async def list_datasources(self) -> list[CatalogDatasource]:
        data = await self.get("/datasources")
        return self._parse_list(CatalogDatasource, data)

    async def list_history(
        self,
        limit: int = 100,
        status: str | None = None,
        datasource_id: str | None = None,
    ) -> list[QueryHistoryEntry]:
        params: dict[str, Any] = {"limit": limit}
        if status:
            params["status"] = status
        if datasource_id:
            params["datasourceId"] = datasource_id
        data = await self.get("/queries/history", params=params)
        return self._parse_list(QueryHistoryEntry, data)

    async def stream_status_events(self) -> AsyncIterator[QueryStatusEvent]:
        """Yield status events from the shared push stream until it closes.

        Events other than ``query-status`` and payloads that do not parse are
        skipped.
        """
        try:
            async with self.client.stream(
                "GET",
                "/queries/events",
                headers={"Accept": "text/event-stream"},
                timeout=httpx.Timeout(60.0, read=None),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    self._handle_response(response)

                async for sse in aiter_sse(response.aiter_lines()):
                    if sse.event != STATUS_EVENT_NAME or not sse.data:
                        continue
                    try:
                        yield QueryStatusEvent.model_validate_json(sse.data)
                    except ValidationError:
                        logger.debug("status_event_malformed", data=sse.data[:200])
        except httpx.HTTPError as e:
            raise APIError(0, f"Status stream failed: {e}") from e

    async def download_export(
        self,
        execution_id: str,
        destination: Path,
        include_headers: bool = True,
        show_progress: bool = False,
    ) -> Path:
        """Download the CSV export of an execution.

        When ``destination`` is a directory the server-provided filename is
        used. Returns the written path.
        """
        path = f"/queries/{execution_id}/export.csv"
        params = {"headers": "true" if include_headers else "false"}

        try:
            async with self.client.stream("GET", path, params=params) as response:
                if response.status_code >= 400:
                    error_body = await response.aread()
                    try:
                        error_data = json.loads(error_body.decode())
                    except ValueError:
                        error_data = None
                    raise APIError(
                        response.status_code,
                        friendly_error_message(response.status_code, error_data),
                    )

                output_path = Path(destination)
                if output_path.is_dir():
                    output_path = output_path / filename_from_disposition(
                        response.headers.get("content-disposition"),
                        f"query-{execution_id}.csv",
                    )

                total = int(response.headers.get("content-length", 0))

                if show_progress and total > 1024 * 1024:  # Show progress for files > 1MB
                    with Progress(
                        SpinnerColumn(),
                        TextColumn("[progress.description]{task.description}"),
                        BarColumn(),
                        DownloadColumn(),
                    ) as progress:
                        task = progress.add_task(f"Downloading to {output_path.name}", total=total)

                        with open(output_path, "wb") as f:
                            async for chunk in response.aiter_bytes(chunk_size=8192):
                                f.write(chunk)
                                progress.update(task, advance=len(chunk))
                else:
                    with open(output_path, "wb") as f:
                        async for chunk in response.aiter_bytes(chunk_size=8192):
                            f.write(chunk)
        except httpx.HTTPError as e:
            raise APIError(0, f"Unable to reach the query service: {e}") from e

        return output_path


def get_client(verbose: bool = False) -> QueryClient:
    """Get a configured API client."""
    config = get_config()
    errors = config.validate()
    if errors:
        raise ValueError("\n".join(errors))
    return QueryClient(config, verbose=verbose)
