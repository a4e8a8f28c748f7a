"""Record store interface and the in-process implementation.

Tables are keyed by id; rows by a globally unique id. Every read returns a
fresh Table value, so callers can hold snapshots without seeing later writes.
``create_row`` and ``create_table`` are not idempotent: a blind retry makes a
second record.
"""
from __future__ import annotations

import threading
import uuid
from typing import Dict, Iterable, List, Optional, Protocol, Sequence

from tablecrm.models import ColumnDefinition, Row, Table


class RecordStore(Protocol):
    def get_table(self, table_id: str) -> Optional[Table]: ...

    def list_rows(self, table_id: str) -> List[Row]: ...

    def create_row(self, table_id: str, data: Dict) -> Row: ...

    def update_row(self, row_id: str, data: Dict) -> Optional[Row]: ...

    def delete_rows(self, row_ids: Iterable[str]) -> int: ...

    def create_table(
        self, org_id: str, name: str, description: str, columns: Sequence[ColumnDefinition]
    ) -> Table: ...

    def delete_table(self, table_id: str) -> bool: ...


def new_id() -> str:
    return uuid.uuid4().hex


class InMemoryRecordStore:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tables: Dict[str, Table] = {}
        # table id -> row id -> row, insertion ordered
        self._rows: Dict[str, Dict[str, Row]] = {}
        self._row_table: Dict[str, str] = {}

    def put_table(self, table: Table) -> Table:
        """Insert or replace a whole table, rows included."""
        with self._lock:
            self._drop_rows(table.id)
            self._tables[table.id] = table.with_rows([])
            self._rows[table.id] = {}
            for r in table.rows:
                rid = str(r.get("id") or new_id())
                self._rows[table.id][rid] = {**r, "id": rid}
                self._row_table[rid] = table.id
        return self.get_table(table.id)  # type: ignore[return-value]

    def _drop_rows(self, table_id: str) -> None:
        for rid in self._rows.pop(table_id, {}):
            self._row_table.pop(rid, None)

    def get_table(self, table_id: str) -> Optional[Table]:
        with self._lock:
            meta = self._tables.get(table_id)
            if meta is None:
                return None
            return meta.with_rows([dict(r) for r in self._rows[table_id].values()])

    def list_rows(self, table_id: str) -> List[Row]:
        with self._lock:
            return [dict(r) for r in self._rows.get(table_id, {}).values()]

    def create_row(self, table_id: str, data: Dict) -> Row:
        with self._lock:
            if table_id not in self._tables:
                raise KeyError(table_id)
            rid = str(data.get("id") or new_id())
            row = {**data, "id": rid}
            self._rows[table_id][rid] = row
            self._row_table[rid] = table_id
            return dict(row)

    def update_row(self, row_id: str, data: Dict) -> Optional[Row]:
        with self._lock:
            table_id = self._row_table.get(row_id)
            if table_id is None:
                return None
            row = {**self._rows[table_id][row_id], **{k: v for k, v in data.items() if k != "id"}}
            self._rows[table_id][row_id] = row
            return dict(row)

    def delete_rows(self, row_ids: Iterable[str]) -> int:
        n = 0
        with self._lock:
            for rid in row_ids:
                table_id = self._row_table.pop(rid, None)
                if table_id is not None and self._rows[table_id].pop(rid, None) is not None:
                    n += 1
        return n

    def create_table(
        self, org_id: str, name: str, description: str, columns: Sequence[ColumnDefinition]
    ) -> Table:
        table = Table(id=new_id(), org_id=org_id, name=name, description=description, columns=list(columns))
        with self._lock:
            self._tables[table.id] = table
            self._rows[table.id] = {}
        return table

    def delete_table(self, table_id: str) -> bool:
        with self._lock:
            if self._tables.pop(table_id, None) is None:
                return False
            self._drop_rows(table_id)
            return True
