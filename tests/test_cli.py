"""Tests for tab and query commands."""

import json
from pathlib import Path

import respx
from httpx import Response
from typer.testing import CliRunner

from conftest import results_payload, status_payload
from querytabs.main import app


runner = CliRunner()

DATASOURCES = [
    {"id": "ds-1", "name": "Warehouse", "engine": "postgres"},
    {"id": "ds-2", "name": "Lake", "engine": "trino"},
]


def mock_datasources(api: respx.MockRouter) -> None:
    api.get("/datasources").mock(return_value=Response(200, json=DATASOURCES))


def read_state(state_file: Path) -> dict:
    return json.loads(state_file.read_text())


class TestNotConfigured:
    """Tests for commands without configuration."""

    def test_run_requires_configuration(self) -> None:
        result = runner.invoke(app, ["run"])
        assert result.exit_code == 1
        assert "URL not configured" in result.output


class TestTabsCommands:
    """Tests for 'tabs' commands."""

    def test_list_creates_default_tab(self, api: respx.MockRouter, mock_config: Path) -> None:
        """First use creates and persists the default tab."""
        mock_datasources(api)
        result = runner.invoke(app, ["--json", "tabs", "list"])
        assert result.exit_code == 0

        data = json.loads(result.stdout)
        assert len(data["tabs"]) == 1
        assert data["tabs"][0]["title"] == "Query 1"
        assert data["tabs"][0]["datasourceId"] == "ds-1"
        assert read_state(mock_config)["activeTabId"] == data["activeTabId"]

    def test_list_table(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        result = runner.invoke(app, ["tabs", "list"])
        assert result.exit_code == 0
        assert "Query 1" in result.stdout

    def test_new_tab(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        result = runner.invoke(
            app, ["tabs", "new", "--title", "Revenue", "--datasource", "ds-2", "--sql", "SELECT 2;"]
        )
        assert result.exit_code == 0
        assert "Tab 'Revenue' created" in result.stdout

        state = read_state(mock_config)
        assert [tab["title"] for tab in state["tabs"]] == ["Query 1", "Revenue"]
        assert state["activeTabId"] == state["tabs"][1]["id"]
        assert state["tabs"][1]["datasourceId"] == "ds-2"
        assert state["tabs"][1]["queryText"] == "SELECT 2;"

    def test_new_tab_unpermitted_datasource(
        self, api: respx.MockRouter, mock_config: Path
    ) -> None:
        mock_datasources(api)
        result = runner.invoke(app, ["tabs", "new", "--datasource", "ds-9"])
        assert result.exit_code == 1
        assert "not permitted" in result.output

    def test_rename_select_and_close(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        runner.invoke(app, ["tabs", "new", "--title", "Second"])

        result = runner.invoke(app, ["tabs", "rename", "1", "Orders"])
        assert result.exit_code == 0
        assert "Tab renamed to 'Orders'" in result.stdout

        result = runner.invoke(app, ["tabs", "select", "1"])
        assert result.exit_code == 0
        state = read_state(mock_config)
        assert state["activeTabId"] == state["tabs"][0]["id"]

        result = runner.invoke(app, ["tabs", "close", "1"])
        assert result.exit_code == 0
        state = read_state(mock_config)
        assert [tab["title"] for tab in state["tabs"]] == ["Second"]
        assert state["activeTabId"] == state["tabs"][0]["id"]

    def test_unknown_tab(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        result = runner.invoke(app, ["tabs", "select", "zzz"])
        assert result.exit_code == 1
        assert "Tab not found: zzz" in result.output

    def test_set_datasource(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        result = runner.invoke(app, ["tabs", "set-datasource", "1", "ds-2"])
        assert result.exit_code == 0
        assert "Datasource context set to ds-2." in result.stdout
        assert read_state(mock_config)["tabs"][0]["datasourceId"] == "ds-2"

        result = runner.invoke(app, ["tabs", "set-datasource", "1", "ds-9"])
        assert result.exit_code == 1
        assert "not permitted" in result.output

    def test_set_query_and_show(
        self, api: respx.MockRouter, mock_config: Path, tmp_path: Path
    ) -> None:
        mock_datasources(api)
        sql_file = tmp_path / "query.sql"
        sql_file.write_text("SELECT 42;")

        result = runner.invoke(app, ["tabs", "set-query", "1", "--file", str(sql_file)])
        assert result.exit_code == 0

        result = runner.invoke(app, ["--json", "tabs", "show"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["queryText"] == "SELECT 42;"
        assert data["status"] == ""

    def test_revoked_datasource_is_remapped(
        self, api: respx.MockRouter, mock_config: Path
    ) -> None:
        mock_config.write_text(json.dumps({
            "activeTabId": "t1",
            "tabs": [{"id": "t1", "title": "Old", "datasourceId": "ds-gone", "queryText": "SELECT 1;"}],
        }))
        mock_datasources(api)

        result = runner.invoke(app, ["--json", "tabs", "list"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["tabs"][0]["datasourceId"] == "ds-1"


class TestRunCommand:
    """Tests for 'run' command."""

    @staticmethod
    def mock_execution(api: respx.MockRouter, final: dict) -> respx.Route:
        mock_datasources(api)
        submit = api.post("/queries").mock(
            return_value=Response(
                200, json={"executionId": "E1", "datasourceId": "ds-1", "status": "QUEUED"}
            )
        )
        api.get("/queries/E1").mock(return_value=Response(200, json=final))
        api.get("/queries/E1/results").mock(return_value=Response(200, json=results_payload()))
        return submit

    def test_run_select_one(self, api: respx.MockRouter, mock_config: Path) -> None:
        submit = self.mock_execution(
            api, status_payload(status="SUCCEEDED", message="Query succeeded", rowCount=1)
        )

        result = runner.invoke(app, ["run", "--no-push", "--sql", "SELECT 1;"])
        assert result.exit_code == 0
        assert "one" in result.stdout
        assert "Query succeeded" in result.stdout
        assert json.loads(submit.calls.last.request.content)["sql"] == "SELECT 1;"
        assert read_state(mock_config)["tabs"][0]["queryText"] == "SELECT 1;"

    def test_run_json(self, api: respx.MockRouter, mock_config: Path) -> None:
        self.mock_execution(api, status_payload(status="SUCCEEDED"))

        result = runner.invoke(app, ["--json", "run", "--no-push"])
        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["executionId"] == "E1"
        assert data["status"] == "SUCCEEDED"
        assert data["rows"] == [["1"]]

    def test_run_statement_at_cursor(self, api: respx.MockRouter, mock_config: Path) -> None:
        submit = self.mock_execution(api, status_payload(status="SUCCEEDED"))

        result = runner.invoke(
            app,
            ["run", "--no-push", "--sql", "SELECT 1;\nSELECT 2;", "--kind", "statement",
             "--cursor", "12"],
        )
        assert result.exit_code == 0
        assert json.loads(submit.calls.last.request.content)["sql"] == "SELECT 2"

    def test_run_failed_query(self, api: respx.MockRouter, mock_config: Path) -> None:
        self.mock_execution(
            api, status_payload(status="FAILED", errorSummary="Relation missing does not exist")
        )

        result = runner.invoke(app, ["run", "--no-push", "--sql", "SELECT * FROM missing;"])
        assert result.exit_code == 1
        assert "Relation missing does not exist" in result.output

    def test_run_rejected_submission(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        api.post("/queries").mock(return_value=Response(403))

        result = runner.invoke(app, ["run", "--no-push"])
        assert result.exit_code == 1
        assert "You do not have permission for this action." in result.output

    def test_run_blank_selection_runs_whole_tab(
        self, api: respx.MockRouter, mock_config: Path
    ) -> None:
        submit = self.mock_execution(api, status_payload(status="SUCCEEDED"))

        result = runner.invoke(
            app,
            ["run", "--no-push", "--sql", "SELECT 42;", "--kind", "selection", "--selection", " "],
        )
        assert result.exit_code == 0
        assert json.loads(submit.calls.last.request.content)["sql"] == "SELECT 42;"


class TestQueryCommands:
    """Tests for status, cancel, results, export and history."""

    def test_status_json(self, api: respx.MockRouter, mock_config: Path) -> None:
        api.get("/queries/E1").mock(return_value=Response(200, json=status_payload()))
        result = runner.invoke(app, ["--json", "status", "E1"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["status"] == "RUNNING"

    def test_status_not_found(self, api: respx.MockRouter, mock_config: Path) -> None:
        api.get("/queries/E404").mock(
            return_value=Response(404, json={"error": "Execution not found"})
        )
        result = runner.invoke(app, ["status", "E404"])
        assert result.exit_code == 1
        assert "Execution not found" in result.output

    def test_cancel(self, api: respx.MockRouter, mock_config: Path) -> None:
        route = api.post("/queries/E1/cancel").mock(
            return_value=Response(200, json=status_payload(status="CANCELED"))
        )
        result = runner.invoke(app, ["cancel", "E1"])
        assert result.exit_code == 0
        assert "Cancel requested for E1: CANCELED" in result.stdout
        assert route.calls.last.request.headers["X-CSRF-TOKEN"] == "csrf-1"

    def test_results_csv(self, api: respx.MockRouter, mock_config: Path) -> None:
        route = api.get("/queries/E1/results").mock(
            return_value=Response(
                200, json=results_payload(rows=(("a,b",), (None,)), next_page_token="t2")
            )
        )
        result = runner.invoke(app, ["results", "E1", "--page-token", "t1", "--csv"])
        assert result.exit_code == 0
        assert result.stdout == 'one\n"a,b"\n\n'
        assert route.calls.last.request.url.params["pageToken"] == "t1"

    def test_export(self, api: respx.MockRouter, mock_config: Path, tmp_path: Path) -> None:
        route = api.get("/queries/E1/export.csv").mock(
            return_value=Response(200, content=b"1\n")
        )
        output = tmp_path / "out.csv"

        result = runner.invoke(app, ["export", "E1", str(output), "--no-headers"])
        assert result.exit_code == 0
        assert output.read_bytes() == b"1\n"
        assert route.calls.last.request.url.params["headers"] == "false"

    def test_history(self, api: respx.MockRouter, mock_config: Path) -> None:
        route = api.get("/queries/history").mock(
            return_value=Response(200, json=[{
                "executionId": "E1",
                "datasourceId": "ds-1",
                "status": "SUCCEEDED",
                "rowCount": 1,
                "submittedAt": "2024-05-01T10:00:00Z",
            }])
        )
        result = runner.invoke(app, ["history", "--limit", "5", "--status", "SUCCEEDED"])
        assert result.exit_code == 0
        assert "E1" in result.stdout
        assert route.calls.last.request.url.params["status"] == "SUCCEEDED"

    def test_history_open(self, api: respx.MockRouter, mock_config: Path) -> None:
        mock_datasources(api)
        api.get("/queries/history").mock(
            return_value=Response(200, json=[
                {"executionId": "E1", "datasourceId": "ds-2", "queryText": "SELECT 7;"},
                {"executionId": "E2", "datasourceId": "ds-1", "queryTextRedacted": True},
            ])
        )

        result = runner.invoke(app, ["history", "--open", "E1"])
        assert result.exit_code == 0
        state = read_state(mock_config)
        assert state["tabs"][-1]["queryText"] == "SELECT 7;"
        assert state["tabs"][-1]["datasourceId"] == "ds-2"

        result = runner.invoke(app, ["history", "--open", "E2"])
        assert result.exit_code == 1
        assert "not available" in result.output
