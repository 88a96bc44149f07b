"""Workspace tab registry: the single owner of tab state."""

from dataclasses import replace
from typing import Any, Callable, Iterable
import uuid

import structlog

from .models import DEFAULT_QUERY_TEXT, WorkspaceTab
from .store import TabStore


logger = structlog.get_logger()

TabMutator = Callable[[WorkspaceTab], WorkspaceTab]
TabListener = Callable[[WorkspaceTab], None]

DATASOURCE_ACCESS_CHANGED = (
    "Datasource access changed. Select a permitted datasource before running."
)


def new_tab_id() -> str:
    return uuid.uuid4().hex


def build_tab(
    datasource_id: str,
    title: str,
    query_text: str = DEFAULT_QUERY_TEXT,
    schema: str = "",
) -> WorkspaceTab:
    """Build a tab with a fresh id and no execution state."""
    return WorkspaceTab(
        id=new_tab_id(),
        title=title,
        datasource_id=datasource_id,
        schema=schema,
        query_text=query_text,
    )


class TabRegistry:
    """Owns the workspace tabs and the active-tab selection.

    Other components never hold tabs by reference. They address a tab by id
    and change it through :meth:`update_tab`, which replaces the stored value
    with the result of a pure mutator. Every change to the persisted projection
    (tab set, titles, datasources, query text, active tab) is written to the
    store right after the in-memory update.
    """

    def __init__(self, store: TabStore, permitted_datasource_ids: Iterable[str] = ()):
        self.store = store
        self._permitted: list[str] = list(permitted_datasource_ids)
        self._tabs: list[WorkspaceTab] = []
        self._active_tab_id = ""
        self._listeners: list[TabListener] = []
        self._close_listeners: list[TabListener] = []
        self._hydrate()

    # Initialization

    def _hydrate(self) -> None:
        stored = self.store.load()
        fallback = self.fallback_datasource_id
        tabs: list[WorkspaceTab] = []

        for raw in (stored or {}).get("tabs", []):
            tab = self._parse_persisted_tab(raw, fallback)
            if tab is not None:
                tabs.append(tab)

        if not tabs:
            tabs = [build_tab(fallback, "Query 1", "SELECT * FROM system.healthcheck;")]

        active_candidate = (stored or {}).get("activeTabId", "")
        if not any(tab.id == active_candidate for tab in tabs):
            active_candidate = tabs[0].id

        self._tabs = tabs
        self._active_tab_id = active_candidate
        self._persist()
        logger.debug("tabs_hydrated", tab_count=len(tabs), restored=stored is not None)

    def _parse_persisted_tab(self, raw: Any, fallback: str) -> WorkspaceTab | None:
        if not isinstance(raw, dict):
            return None
        tab_id = raw.get("id")
        title = raw.get("title")
        if not isinstance(tab_id, str) or not tab_id or not isinstance(title, str):
            return None

        datasource_id = raw.get("datasourceId")
        if datasource_id not in self._permitted:
            datasource_id = fallback

        schema = raw.get("schema")
        query_text = raw.get("queryText")
        return WorkspaceTab(
            id=tab_id,
            title=title.strip() or "Query",
            datasource_id=datasource_id,
            schema=schema if isinstance(schema, str) else "",
            query_text=query_text if isinstance(query_text, str) else DEFAULT_QUERY_TEXT,
        )

    # Queries

    @property
    def tabs(self) -> tuple[WorkspaceTab, ...]:
        return tuple(self._tabs)

    @property
    def active_tab_id(self) -> str:
        return self._active_tab_id

    @property
    def permitted_datasource_ids(self) -> tuple[str, ...]:
        return tuple(self._permitted)

    @property
    def fallback_datasource_id(self) -> str:
        return self._permitted[0] if self._permitted else ""

    def is_permitted(self, datasource_id: str) -> bool:
        return datasource_id in self._permitted

    def get_tab(self, tab_id: str) -> WorkspaceTab | None:
        for tab in self._tabs:
            if tab.id == tab_id:
                return tab
        return None

    def active_tab(self) -> WorkspaceTab | None:
        return self.get_tab(self._active_tab_id)

    def find_tab_by_execution_id(self, execution_id: str) -> WorkspaceTab | None:
        if not execution_id:
            return None
        for tab in self._tabs:
            if tab.execution.execution_id == execution_id:
                return tab
        return None

    # Listeners

    def add_listener(self, listener: TabListener) -> Callable[[], None]:
        """Call ``listener`` with the new value after every tab update."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def add_close_listener(self, listener: TabListener) -> None:
        """Call ``listener`` with the closing tab before it is removed."""
        self._close_listeners.append(listener)

    def _notify(self, tab: WorkspaceTab) -> None:
        for listener in list(self._listeners):
            listener(tab)

    # Mutations

    def create_tab(
        self,
        datasource_id: str | None = None,
        title: str | None = None,
        query_text: str = DEFAULT_QUERY_TEXT,
        schema: str = "",
    ) -> str:
        """Append a new tab and make it active."""
        tab = build_tab(
            self.fallback_datasource_id if datasource_id is None else datasource_id,
            title or f"Query {len(self._tabs) + 1}",
            query_text,
            schema,
        )
        self._tabs.append(tab)
        self._active_tab_id = tab.id
        self._persist()
        self._notify(tab)
        return tab.id

    def open_from_history(
        self, query_text: str, datasource_id: str, title: str | None = None
    ) -> str:
        """Open history or snippet SQL in a new tab."""
        if not self.is_permitted(datasource_id):
            datasource_id = self.fallback_datasource_id
        return self.create_tab(datasource_id, title, query_text)

    def duplicate_tab(self, tab_id: str) -> str | None:
        source = self.get_tab(tab_id)
        if source is None:
            return None
        return self.create_tab(
            source.datasource_id, f"{source.title} (copy)", source.query_text, source.schema
        )

    def close_tab(self, tab_id: str) -> None:
        """Close a tab, keeping the tab set non-empty."""
        closing = self.get_tab(tab_id)
        if closing is None:
            return

        for listener in list(self._close_listeners):
            listener(closing)

        if len(self._tabs) <= 1:
            replacement = build_tab(self.fallback_datasource_id, "Query 1")
            self._tabs = [replacement]
            self._active_tab_id = replacement.id
            self._persist()
            self._notify(replacement)
            return

        close_index = next(i for i, tab in enumerate(self._tabs) if tab.id == tab_id)
        self._tabs = [tab for tab in self._tabs if tab.id != tab_id]
        if self._active_tab_id == tab_id:
            self._active_tab_id = self._tabs[max(0, close_index - 1)].id
        self._persist()

    def rename_tab(self, tab_id: str, title: str) -> None:
        trimmed = title.strip()
        if not trimmed:
            return
        self.update_tab(tab_id, lambda tab: replace(tab, title=trimmed))

    def set_active_tab(self, tab_id: str) -> bool:
        if self.get_tab(tab_id) is None:
            return False
        if self._active_tab_id != tab_id:
            self._active_tab_id = tab_id
            self._persist()
        return True

    def set_query_text(self, tab_id: str, query_text: str) -> None:
        self.update_tab(tab_id, lambda tab: replace(tab, query_text=query_text))

    def set_datasource(self, tab_id: str, datasource_id: str) -> bool:
        """Point a tab at another permitted datasource."""
        if not self.is_permitted(datasource_id):
            self.update_tab(
                tab_id,
                lambda tab: replace(
                    tab,
                    execution=replace(
                        tab.execution,
                        error_message=(
                            "Selected datasource is not permitted for this account. "
                            "Choose a valid datasource."
                        ),
                        status_message="",
                    ),
                ),
            )
            return False

        self.update_tab(
            tab_id,
            lambda tab: replace(
                tab,
                datasource_id=datasource_id,
                execution=replace(
                    tab.execution,
                    status_message=f"Datasource context set to {datasource_id}.",
                    error_message="",
                ),
            ),
        )
        return True

    def set_permitted_datasources(self, datasource_ids: Iterable[str]) -> None:
        """Replace the permitted set and remap tabs that lost access."""
        self._permitted = list(datasource_ids)
        fallback = self.fallback_datasource_id

        def remap(tab: WorkspaceTab) -> WorkspaceTab:
            return replace(
                tab,
                datasource_id=fallback,
                execution=replace(
                    tab.execution, error_message=DATASOURCE_ACCESS_CHANGED, status_message=""
                ),
            )

        for tab in self.tabs:
            if tab.datasource_id and not self.is_permitted(tab.datasource_id):
                self.update_tab(tab.id, remap)

    def update_tab(self, tab_id: str, mutator: TabMutator) -> WorkspaceTab | None:
        """Apply ``mutator`` to exactly one tab. No-op if the tab is gone."""
        for index, tab in enumerate(self._tabs):
            if tab.id != tab_id:
                continue
            updated = mutator(tab)
            if updated is tab:
                return tab
            self._tabs[index] = updated
            if updated.to_persistent() != tab.to_persistent():
                self._persist()
            self._notify(updated)
            return updated
        return None

    # Persistence

    def snapshot(self) -> dict[str, Any]:
        return {
            "activeTabId": self._active_tab_id,
            "tabs": [tab.to_persistent() for tab in self._tabs],
        }

    def _persist(self) -> None:
        self.store.save(self.snapshot())
