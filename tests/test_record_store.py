import json

from tablecrm.models import ColumnDefinition
from tablecrm.pg_store import PostgresRecordStore
from tablecrm.record_store import InMemoryRecordStore
from tablecrm.run_log import record_run


def test_in_memory_store_round_trip():
    store = InMemoryRecordStore()
    table = store.create_table("org1", "Leads", "", [ColumnDefinition(id="company_name", name="会社名")])
    a = store.create_row(table.id, {"company_name": "Acme"})
    b = store.create_row(table.id, {"company_name": "Beta"})
    assert [r["company_name"] for r in store.list_rows(table.id)] == ["Acme", "Beta"]

    updated = store.update_row(a["id"], {"ceo": "山田", "id": "ignored"})
    assert updated == {"id": a["id"], "company_name": "Acme", "ceo": "山田"}
    assert store.update_row("missing", {"x": 1}) is None

    assert store.delete_rows([b["id"], "missing"]) == 1
    assert [r["id"] for r in store.get_table(table.id).rows] == [a["id"]]
    assert store.delete_table(table.id) is True
    assert store.get_table(table.id) is None
    assert store.update_row(a["id"], {"x": 1}) is None


def test_rows_handed_out_are_copies():
    store = InMemoryRecordStore()
    table = store.create_table("", "T", "", [])
    row = store.create_row(table.id, {"k": "v"})
    row["k"] = "changed"
    assert store.list_rows(table.id)[0]["k"] == "v"


class _Cursor:
    def __init__(self, log, results):
        self.log = log
        self.results = results
        self.rowcount = 1

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def execute(self, sql, params=None):
        self.log.append((" ".join(sql.split()), params))

    def fetchone(self):
        return self.results.pop(0) if self.results else None

    def fetchall(self):
        return self.results.pop(0) if self.results else []


class _Conn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def cursor(self):
        return self._cursor


def _pg(results):
    log = []
    cur = _Cursor(log, results)
    return PostgresRecordStore(conn_factory=lambda: _Conn(cur)), log


def test_pg_update_merges_jsonb():
    store, log = _pg([("r1", {"company_name": "Acme", "ceo": "山田"})])
    row = store.update_row("r1", {"ceo": "山田", "id": "r1"})
    assert row == {"company_name": "Acme", "ceo": "山田", "id": "r1"}
    sql, params = log[0]
    assert "data = data || %s" in sql
    assert json.loads(json.dumps(params[0].adapted)) == {"ceo": "山田"}
    assert params[1] == "r1"


def test_pg_get_table_reads_columns_and_rows_in_order():
    store, log = _pg(
        [
            ("t1", "org", "Leads", "", [{"id": "company_name", "name": "会社名"}]),
            [("r1", {"company_name": "Acme"}), ("r2", {"company_name": "Beta"})],
        ]
    )
    table = store.get_table("t1")
    assert table.columns[0].id == "company_name"
    assert [r["id"] for r in table.rows] == ["r1", "r2"]
    assert "ORDER BY seq" in log[1][0]


def test_run_log_appends_jsonl(tmp_path):
    fp = record_run("enrich", {"total": 2, "successful": 2}, base_dir=str(tmp_path))
    record_run("enrich", {"total": 1, "successful": 0}, base_dir=str(tmp_path))
    lines = fp.read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
    assert json.loads(lines[0])["kind"] == "enrich"
    assert record_run("enrich", {}) is None
