"""Persistence of the workspace tab set across restarts."""

from pathlib import Path
from typing import Any, Protocol
import json

import structlog


logger = structlog.get_logger()


class TabStore(Protocol):
    """Single-slot storage for the persisted workspace record.

    The record has the shape ``{"activeTabId": str, "tabs": [{id, title,
    datasourceId, schema, queryText}]}``. ``load`` returns None when nothing
    usable is stored.
    """

    def load(self) -> dict[str, Any] | None: ...

    def save(self, state: dict[str, Any]) -> None: ...


def _check_shape(data: Any) -> dict[str, Any] | None:
    if not isinstance(data, dict) or not isinstance(data.get("tabs"), list):
        return None
    return data


class JsonFileTabStore:
    """Store the workspace record as a JSON file. Last writer wins."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            logger.debug("tab_state_unreadable", path=str(self.path), error=str(e))
            return None
        return _check_shape(data)

    def save(self, state: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)


class MemoryTabStore:
    """In-process store, used by embedders without a filesystem and by tests."""

    def __init__(self, state: Any = None):
        self.state = state
        self.saves = 0

    def load(self) -> dict[str, Any] | None:
        return _check_shape(self.state)

    def save(self, state: dict[str, Any]) -> None:
        self.state = json.loads(json.dumps(state))
        self.saves += 1
