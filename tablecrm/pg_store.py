"""Postgres-backed record store.

Tables keep their column definitions as JSONB; rows are JSONB documents keyed
by a text id with an insertion sequence so list order is stable.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from psycopg2.extras import Json

from tablecrm.database import get_conn
from tablecrm.models import ColumnDefinition, Row, Table
from tablecrm.record_store import new_id

log = logging.getLogger("pg_store")

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS crm_tables (
    id TEXT PRIMARY KEY,
    org_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    columns JSONB NOT NULL DEFAULT '[]'::jsonb,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS crm_rows (
    id TEXT PRIMARY KEY,
    table_id TEXT NOT NULL REFERENCES crm_tables(id) ON DELETE CASCADE,
    seq BIGSERIAL,
    data JSONB NOT NULL DEFAULT '{}'::jsonb,
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS crm_rows_table_seq_idx ON crm_rows(table_id, seq);
"""


class PostgresRecordStore:
    def __init__(self, conn_factory: Callable = get_conn):
        self._conn = conn_factory

    def ensure_schema(self) -> None:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(SCHEMA_SQL)

    @staticmethod
    def _row(row_id: str, data: Dict[str, Any]) -> Row:
        return {**(data or {}), "id": row_id}

    def get_table(self, table_id: str) -> Optional[Table]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT id, org_id, name, description, columns FROM crm_tables WHERE id = %s",
                (table_id,),
            )
            rec = cur.fetchone()
            if rec is None:
                return None
            cur.execute(
                "SELECT id, data FROM crm_rows WHERE table_id = %s ORDER BY seq",
                (table_id,),
            )
            rows = [self._row(r[0], r[1]) for r in cur.fetchall() or []]
        return Table(
            id=rec[0],
            org_id=rec[1] or "",
            name=rec[2] or "",
            description=rec[3] or "",
            columns=[ColumnDefinition.model_validate(c) for c in (rec[4] or [])],
            rows=rows,
        )

    def list_rows(self, table_id: str) -> List[Row]:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                "SELECT id, data FROM crm_rows WHERE table_id = %s ORDER BY seq",
                (table_id,),
            )
            return [self._row(r[0], r[1]) for r in cur.fetchall() or []]

    def create_row(self, table_id: str, data: Dict) -> Row:
        rid = str(data.get("id") or new_id())
        payload = {k: v for k, v in data.items() if k != "id"}
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                "INSERT INTO crm_rows (id, table_id, data) VALUES (%s, %s, %s)",
                (rid, table_id, Json(payload)),
            )
        return self._row(rid, payload)

    def update_row(self, row_id: str, data: Dict) -> Optional[Row]:
        payload = {k: v for k, v in data.items() if k != "id"}
        with self._conn() as conn, conn.cursor() as cur:
            # JSONB merge keeps keys not named in this update
            cur.execute(
                "UPDATE crm_rows SET data = data || %s, updated_at = now() WHERE id = %s RETURNING id, data",
                (Json(payload), row_id),
            )
            rec = cur.fetchone()
        return self._row(rec[0], rec[1]) if rec else None

    def delete_rows(self, row_ids: Iterable[str]) -> int:
        ids = list(row_ids)
        if not ids:
            return 0
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM crm_rows WHERE id = ANY(%s)", (ids,))
            return cur.rowcount or 0

    def create_table(
        self, org_id: str, name: str, description: str, columns: Sequence[ColumnDefinition]
    ) -> Table:
        table = Table(id=new_id(), org_id=org_id, name=name, description=description, columns=list(columns))
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute(
                "INSERT INTO crm_tables (id, org_id, name, description, columns) VALUES (%s, %s, %s, %s, %s)",
                (
                    table.id,
                    org_id,
                    name,
                    description,
                    Json([c.model_dump(mode="json") for c in table.columns]),
                ),
            )
        log.info("created table id=%s name=%s", table.id, name)
        return table

    def delete_table(self, table_id: str) -> bool:
        with self._conn() as conn, conn.cursor() as cur:
            cur.execute("DELETE FROM crm_tables WHERE id = %s", (table_id,))
            return bool(cur.rowcount)
