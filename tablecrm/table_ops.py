"""Read-only table operations: scope, filter, sort and aggregate.

All functions take rows and return new lists; the input table is never
modified. Cell values are compared on their string form except for the
numeric operators, which fail closed on anything that does not parse.
"""
from __future__ import annotations

import math
import re
from typing import Iterable, List, Optional, Sequence

from tablecrm.models import (
    AggregateParams,
    Filter,
    Row,
    Scope,
    Selection,
    SortState,
    Table,
    cell_text,
    is_blank,
)

_NUM_CLEAN_RE = re.compile(r"[,\s¥$€£円%]")


def resolve_scope(scope: Optional[Scope], selection: Optional[Selection]) -> Scope:
    """`selected` only holds when rows are actually selected; otherwise it is `all`."""
    if scope == "selected" and selection is not None and selection.selected_row_ids:
        return "selected"
    return "all"


def scoped_rows(table: Table, scope: Optional[Scope], selection: Optional[Selection]) -> List[Row]:
    if resolve_scope(scope, selection) == "selected":
        ids = selection.selected_row_ids  # type: ignore[union-attr]
        return [r for r in table.rows if r.get("id") in ids]
    return list(table.rows)


def to_number(value) -> Optional[float]:
    """Parse a cell as a number, tolerating thousands separators and currency marks."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return None if math.isnan(float(value)) else float(value)
    s = _NUM_CLEAN_RE.sub("", str(value))
    if not s:
        return None
    try:
        n = float(s)
    except ValueError:
        return None
    if math.isnan(n) or math.isinf(n):
        return None
    return n


def matches_filter(row: Row, flt: Filter) -> bool:
    text = cell_text(row, flt.column_id)
    op = flt.operator
    if op == "contains":
        return flt.value in text
    if op == "equals":
        return text == flt.value
    left = to_number(row.get(flt.column_id))
    right = to_number(flt.value)
    if left is None or right is None:
        return False
    if op == "greater":
        return left > right
    if op == "less":
        return left < right
    return False


def apply_filter(rows: Iterable[Row], flt: Filter) -> List[Row]:
    return [r for r in rows if matches_filter(r, flt)]


def apply_filters(rows: Iterable[Row], filters: Sequence[Filter]) -> List[Row]:
    out = list(rows)
    for f in filters:
        out = apply_filter(out, f)
    return out


def _sort_key(value):
    n = to_number(value)
    if n is not None:
        return (0, n, "")
    return (1, 0.0, str(value).lower())


def sort_rows(rows: Iterable[Row], sort: SortState) -> List[Row]:
    """Stable sort; blank cells go last in both directions."""
    rows = list(rows)
    filled = [r for r in rows if not is_blank(r.get(sort.column_id))]
    blank = [r for r in rows if is_blank(r.get(sort.column_id))]
    filled = sorted(
        filled,
        key=lambda r: _sort_key(r.get(sort.column_id)),
        reverse=(sort.direction == "desc"),
    )
    # sorted(reverse=True) keeps equal keys in original order
    return filled + blank


def apply_sorts(rows: Iterable[Row], sorts: Sequence[SortState]) -> List[Row]:
    """Multi-key sort; the first entry is the primary key."""
    out = list(rows)
    for s in reversed(list(sorts)):
        out = sort_rows(out, s)
    return out


def aggregate(rows: Iterable[Row], params: AggregateParams) -> Optional[float]:
    """max/min/mean over the numeric cells of one column; None when nothing is numeric."""
    values = [n for n in (to_number(r.get(params.column_id)) for r in rows) if n is not None]
    if not values:
        return None
    if params.operation == "max":
        return max(values)
    if params.operation == "min":
        return min(values)
    return sum(values) / len(values)
