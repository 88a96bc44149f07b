"""Server-sent event parsing for the query status stream."""

from dataclasses import dataclass
from typing import AsyncIterator


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str = ""
    retry: int | None = None


async def aiter_sse(lines: AsyncIterator[str]) -> AsyncIterator[ServerSentEvent]:
    """Group ``text/event-stream`` lines into events.

    Follows the EventSource dispatch rules: fields accumulate until a blank
    line, multiple ``data`` lines are joined with newlines, comment lines
    (starting with ``:``) are ignored and an event without data is dropped.
    """
    event_type = ""
    data_lines: list[str] = []
    last_id = ""
    retry: int | None = None

    async for line in lines:
        line = line.rstrip("\r\n")

        if not line:
            if data_lines:
                yield ServerSentEvent(
                    event=event_type or "message",
                    data="\n".join(data_lines),
                    id=last_id,
                    retry=retry,
                )
            event_type = ""
            data_lines = []
            retry = None
            continue

        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]

        if name == "event":
            event_type = value
        elif name == "data":
            data_lines.append(value)
        elif name == "id":
            last_id = value
        elif name == "retry" and value.isdigit():
            retry = int(value)
