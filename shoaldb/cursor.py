"""Cursors for crawling a table's stored rows."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping


@dataclass
class TableCursor:
    """A position in a table's key-ordered row data."""

    next: int
    data: Mapping[int, bytes]


def table_cursor(data: Mapping[int, bytes]) -> TableCursor | None:
    """Start a cursor at the smallest key, or return None if there is no data."""
    if not data:
        return None
    return TableCursor(next=min(data), data=data)