"""Cursor pagination over descending, append-only log streams.

The pager asks its fetch function for one row more than the page size; the
presence of that extra row is the "has more" signal, so no separate count or
existence query is needed.  Cursors are the id of the last row already
returned, which keeps pages stable while new rows are appended at the head.

Visibility filtering is the fetch function's business, not the pager's.
"""

from __future__ import annotations

from operator import attrgetter
from typing import Any, Callable, Optional, Sequence, TypeVar

T = TypeVar("T")

DEFAULT_PAGE_SIZE = 20
MAX_PAGE_SIZE = 100

#: ``fetch(cursor, take)`` returns up to *take* rows that come after the
#: row identified by *cursor* (or from the newest row when it is ``None``).
FetchRows = Callable[[Optional[str], int], Sequence[T]]


def paginate(
    fetch: FetchRows,
    limit: int = DEFAULT_PAGE_SIZE,
    cursor: Optional[str] = None,
    key: Callable[[Any], str] = attrgetter("id"),
) -> dict[str, Any]:
    """Return one page of rows and the cursor for the next page.

    Args:
        fetch: Row source honouring the :data:`FetchRows` contract.
        limit: Page size, between 1 and :data:`MAX_PAGE_SIZE`.
        cursor: Id of the last row of the previous page, or ``None`` for the
            first page.
        key: Extracts a row's id.

    Returns:
        ``{"items": [...]}`` plus ``"next_cursor"`` only when more rows
        exist beyond this page.

    Raises:
        ValueError: If *limit* is out of range.
    """
    if not 1 <= limit <= MAX_PAGE_SIZE:
        raise ValueError(f"limit must be between 1 and {MAX_PAGE_SIZE}, got {limit}")

    items = list(fetch(cursor, limit + 1))
    page: dict[str, Any] = {"items": items[:limit]}
    if len(items) > limit:
        page["next_cursor"] = key(items[limit - 1])
    return page


def rows_after_cursor(
    rows: Sequence[T],
    cursor: Optional[str],
    take: int,
    key: Callable[[Any], str] = attrgetter("id"),
) -> list[T]:
    """In-memory :data:`FetchRows` over *rows* already sorted newest first.

    The cursor row itself is skipped.  An unknown cursor yields no rows.
    """
    if cursor is None:
        return list(rows[:take])
    for index, row in enumerate(rows):
        if key(row) == cursor:
            return list(rows[index + 1:index + 1 + take])
    return []
