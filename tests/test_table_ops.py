from tablecrm.models import AggregateParams, Filter, Selection, SortState
from tablecrm.table_ops import (
    aggregate,
    apply_filter,
    apply_sorts,
    matches_filter,
    resolve_scope,
    scoped_rows,
    sort_rows,
    to_number,
)


def _ids(rows):
    return [r["id"] for r in rows]


def test_selected_scope_falls_back_to_all_without_selection(company_table):
    assert resolve_scope("selected", None) == "all"
    assert resolve_scope("selected", Selection.of()) == "all"
    assert len(scoped_rows(company_table, "selected", Selection.of())) == 3


def test_selected_scope_keeps_table_order(company_table):
    sel = Selection.of(["r3", "r1"])
    assert _ids(scoped_rows(company_table, "selected", sel)) == ["r1", "r3"]


def test_cell_selection_alone_does_not_narrow_scope(company_table):
    sel = Selection.of(cell_ids=["r2:industry"])
    assert _ids(scoped_rows(company_table, "selected", sel)) == ["r1", "r2", "r3"]


def test_to_number_tolerates_separators_and_currency():
    assert to_number("1,200") == 1200.0
    assert to_number("¥3,000") == 3000.0
    assert to_number("15%") == 15.0
    assert to_number(42) == 42.0
    assert to_number("約100") is None
    assert to_number("") is None
    assert to_number(True) is None


def test_contains_is_case_sensitive(company_table):
    assert len(apply_filter(company_table.rows, Filter(column_id="company_name", value="acme"))) == 0
    assert _ids(apply_filter(company_table.rows, Filter(column_id="company_name", value="Ac"))) == ["r1"]


def test_equals_and_numeric_operators(company_table):
    it = apply_filter(company_table.rows, Filter(column_id="industry", operator="equals", value="IT"))
    assert _ids(it) == ["r1", "r3"]
    big = apply_filter(company_table.rows, Filter(column_id="employees", operator="greater", value="500"))
    assert _ids(big) == ["r1"]


def test_numeric_operators_fail_closed_on_text():
    row = {"id": "x", "employees": "多数"}
    assert matches_filter(row, Filter(column_id="employees", operator="greater", value="1")) is False
    assert matches_filter(row, Filter(column_id="employees", operator="less", value="1")) is False
    ok = {"id": "y", "employees": "10"}
    assert matches_filter(ok, Filter(column_id="employees", operator="less", value="abc")) is False


def test_filter_accepts_camel_case_payload():
    flt = Filter.model_validate({"columnId": "employees", "operator": "greater", "value": 100})
    assert flt.column_id == "employees"
    assert flt.value == "100"


def test_sort_numeric_with_blanks_last_in_both_directions(company_table):
    asc = sort_rows(company_table.rows, SortState(column_id="employees", direction="asc"))
    desc = sort_rows(company_table.rows, SortState(column_id="employees", direction="desc"))
    assert _ids(asc) == ["r2", "r1", "r3"]
    assert _ids(desc) == ["r1", "r2", "r3"]


def test_sort_is_stable_for_equal_keys():
    rows = [{"id": str(i), "k": "same"} for i in range(5)]
    assert _ids(sort_rows(rows, SortState(column_id="k", direction="desc"))) == ["0", "1", "2", "3", "4"]


def test_multi_key_sort_primary_first(company_table):
    rows = apply_sorts(
        company_table.rows,
        [SortState(column_id="industry", direction="asc"), SortState(column_id="company_name", direction="desc")],
    )
    assert _ids(rows) == ["r3", "r1", "r2"]


def test_sort_does_not_touch_input(company_table):
    before = list(company_table.rows)
    sort_rows(company_table.rows, SortState(column_id="company_name", direction="desc"))
    assert company_table.rows == before


def test_aggregate_skips_non_numeric_cells(company_table):
    rows = company_table.rows
    assert aggregate(rows, AggregateParams(column_id="employees", operation="max")) == 1200.0
    assert aggregate(rows, AggregateParams(column_id="employees", operation="min")) == 300.0
    assert aggregate(rows, AggregateParams(column_id="employees", operation="mean")) == 750.0
    assert aggregate(rows, AggregateParams(column_id="industry", operation="max")) is None
