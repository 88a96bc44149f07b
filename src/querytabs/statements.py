"""Choosing which SQL a run submits: selection, statement at cursor, or all."""

from dataclasses import dataclass

from .models import RunKind


@dataclass(frozen=True)
class SqlStatement:
    sql: str
    start: int
    end: int


def _trimmed_segment(sql: str, start: int, end: int) -> SqlStatement | None:
    raw = sql[start:end]
    if not raw.strip():
        return None
    trimmed_start = start + (len(raw) - len(raw.lstrip()))
    trimmed_end = end - (len(raw) - len(raw.rstrip()))
    return SqlStatement(sql[trimmed_start:trimmed_end], trimmed_start, trimmed_end)


def split_sql_statements(sql: str) -> list[SqlStatement]:
    """Split on ``;`` outside quotes, ``--`` line comments and ``/* */`` blocks.

    Doubled quotes inside a quoted literal are escapes, not terminators.
    """
    statements: list[SqlStatement] = []
    segment_start = 0
    quote: str | None = None
    in_line_comment = False
    in_block_comment = False

    index = 0
    length = len(sql)
    while index < length:
        current = sql[index]
        following = sql[index + 1] if index + 1 < length else ""

        if in_line_comment:
            if current == "\n":
                in_line_comment = False
            index += 1
            continue

        if in_block_comment:
            if current == "*" and following == "/":
                in_block_comment = False
                index += 2
            else:
                index += 1
            continue

        if quote is not None:
            if current == quote and following == quote:
                index += 2
                continue
            if current == quote:
                quote = None
            index += 1
            continue

        if current == "-" and following == "-":
            in_line_comment = True
            index += 2
            continue
        if current == "/" and following == "*":
            in_block_comment = True
            index += 2
            continue
        if current in ("'", '"'):
            quote = current
        elif current == ";":
            segment = _trimmed_segment(sql, segment_start, index)
            if segment:
                statements.append(segment)
            segment_start = index + 1
        index += 1

    trailing = _trimmed_segment(sql, segment_start, length)
    if trailing:
        statements.append(trailing)
    return statements


def statement_at_cursor(sql: str, cursor: int) -> SqlStatement | None:
    """Statement containing ``cursor``, else the next one after it, else the last."""
    statements = split_sql_statements(sql)
    if not statements:
        return None

    offset = max(0, min(cursor, len(sql)))
    for statement in statements:
        if statement.start <= offset <= statement.end:
            return statement
    for statement in statements:
        if statement.start > offset:
            return statement
    return statements[-1]


def resolve_run_sql(
    query_text: str,
    kind: RunKind,
    selection: str | None = None,
    cursor: int | None = None,
) -> str:
    """Pick the SQL a run of ``kind`` submits from the tab's query text."""
    if kind == RunKind.SELECTION:
        # A blank selection runs the whole tab.
        return selection if selection and selection.strip() else query_text
    if kind == RunKind.STATEMENT:
        statement = statement_at_cursor(query_text, cursor or 0)
        return statement.sql if statement else ""
    return query_text
