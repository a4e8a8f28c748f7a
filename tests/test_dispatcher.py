import pytest

from tablecrm.dispatcher import (
    NO_NUMERIC_DATA,
    AggregateResult,
    NoOpResult,
    TableResult,
    ViewResult,
    dispatch,
    format_number,
)
from tablecrm.enrichment import EnrichmentPipeline
from tablecrm.errors import ConfigurationError
from tablecrm.intent import CHAT_MODE_REFUSAL
from tablecrm.models import AnalyzeChatResult, EnrichCall, EnrichParams, Selection


def _enrich_call():
    return AnalyzeChatResult(
        intent="EDIT", reply="調べます", call=EnrichCall(params=EnrichParams(target_column_ids=["industry"]))
    )


def test_format_number():
    assert format_number(1200.0) == "1,200"
    assert format_number(2.5) == "2.50"


@pytest.mark.asyncio
async def test_filter_on_selected_rows(company_table):
    raw = {
        "intent": "FILTER",
        "tool": "filter",
        "reply": "",
        "filterParams": {"columnId": "industry", "operator": "equals", "value": "IT", "scope": "selected"},
    }
    res = await dispatch(raw, company_table, Selection.of(["r2", "r3"]))
    assert isinstance(res, ViewResult) and res.kind == "filter"
    assert [r["id"] for r in res.rows] == ["r3"]


@pytest.mark.asyncio
async def test_sort_returns_new_rows_and_leaves_table(company_table):
    raw = {"intent": "SORT", "tool": "sort", "sortParams": {"columnId": "company_name", "direction": "desc"}}
    res = await dispatch(raw, company_table)
    assert [r["id"] for r in res.rows] == ["r3", "r2", "r1"]
    assert [r["id"] for r in company_table.rows] == ["r1", "r2", "r3"]


@pytest.mark.asyncio
async def test_aggregate_reply(company_table):
    raw = {"intent": "CHAT", "tool": "calculate_max", "aggregateParams": {"columnId": "employees"}}
    res = await dispatch(raw, company_table, mode="chat")
    assert isinstance(res, AggregateResult)
    assert res.value == 1200.0
    assert res.reply.endswith("最大値: 1,200")


@pytest.mark.asyncio
async def test_aggregate_without_numbers(company_table):
    raw = {"intent": "CHAT", "tool": "calculate_mean", "aggregateParams": {"columnId": "industry"}}
    res = await dispatch(raw, company_table)
    assert res.value is None
    assert NO_NUMERIC_DATA in res.reply


@pytest.mark.asyncio
async def test_mutation_refused_outside_agent_mode(company_table, scripted_gateway):
    gw = scripted_gateway(lambda p, o: "[]")
    res = await dispatch(_enrich_call(), company_table, mode="chat", pipeline=EnrichmentPipeline(gw))
    assert isinstance(res, NoOpResult)
    assert CHAT_MODE_REFUSAL in res.reply
    assert gw.calls == []


@pytest.mark.asyncio
async def test_mutation_without_pipeline_is_a_configuration_error(company_table):
    with pytest.raises(ConfigurationError):
        await dispatch(_enrich_call(), company_table, mode="agent")


@pytest.mark.asyncio
async def test_enrich_in_agent_mode_runs_the_batch(company_table, scripted_gateway):
    gw = scripted_gateway(lambda p, o: "[]")
    res = await dispatch(
        _enrich_call(), company_table, Selection.of(["r1"]), mode="agent", pipeline=EnrichmentPipeline(gw)
    )
    assert isinstance(res, TableResult)
    assert res.outcome.total == 1
    assert "1/1" in res.reply
