import json

import pytest

from tablecrm.agent_session import ChatSession
from tablecrm.dispatcher import TableResult
from tablecrm.enrichment import EnrichmentPipeline
from tablecrm.intent import CHAT_MODE_REFUSAL
from tablecrm.models import Selection

REPLIES = {
    "ITの会社": {
        "intent": "FILTER",
        "tool": "filter",
        "reply": "IT企業です",
        "filterParams": {"columnId": "industry", "operator": "equals", "value": "IT"},
    },
    "製造の会社": {
        "intent": "FILTER",
        "tool": "filter",
        "reply": "",
        "filterParams": {"columnId": "industry", "operator": "equals", "value": "製造"},
    },
    "選択行のIT": {
        "intent": "FILTER",
        "tool": "filter",
        "reply": "",
        "filterParams": {"columnId": "industry", "operator": "equals", "value": "IT", "scope": "selected"},
    },
    "従業員の多い順": {
        "intent": "SORT",
        "tool": "sort",
        "reply": "",
        "sortParams": {"columnId": "employees", "direction": "desc"},
    },
    "業種を調べて": {
        "intent": "EDIT",
        "tool": "enrich",
        "reply": "業種を調べます",
        "enrichParams": {"targetColumnIds": ["industry"], "scope": "selected"},
    },
}


def _responder(prompt, opts):
    if opts.json_mode and not opts.web_search and not opts.page_fetch:
        for key, reply in REPLIES.items():
            if f'"""{key}"""' in prompt:
                return json.dumps(reply, ensure_ascii=False)
        return json.dumps({"intent": "CHAT", "tool": "none", "reply": "はい、どうぞ"})
    # enrichment discovery finds nothing
    return "[]"


@pytest.fixture
def session_factory(company_table, scripted_gateway):
    def make(mode):
        gw = scripted_gateway(_responder)
        return ChatSession(gw, company_table, pipeline=EnrichmentPipeline(gw, financial_phase=False), mode=mode)

    return make


@pytest.mark.asyncio
async def test_chat_mode_filter_is_a_listing(session_factory):
    s = session_factory("chat")
    turn = await s.send("ITの会社")
    assert "- Acme" in turn.reply and "- Gamma" in turn.reply
    assert "Beta" not in turn.reply
    assert s.filters == []
    assert len(turn.rows) == 3


@pytest.mark.asyncio
async def test_chat_mode_edit_is_refused(session_factory):
    s = session_factory("chat")
    turn = await s.send("業種を調べて")
    assert CHAT_MODE_REFUSAL in turn.reply
    assert s.pending is None


@pytest.mark.asyncio
async def test_agent_filter_replaces_same_column_and_sort_applies(session_factory):
    s = session_factory("agent")
    await s.send("ITの会社")
    turn = await s.send("製造の会社")
    assert len(s.filters) == 1
    assert [r["id"] for r in turn.rows] == ["r2"]

    await s.send("ITの会社")
    turn = await s.send("従業員の多い順")
    assert [r["id"] for r in turn.rows] == ["r1", "r3"]

    turn = await s.send("クリア")
    assert s.filters == [] and s.sorts == []
    assert len(turn.rows) == 3


@pytest.mark.asyncio
async def test_chat_mode_clear_is_refused(session_factory):
    s = session_factory("chat")
    turn = await s.send("フィルタをクリアして")
    assert CHAT_MODE_REFUSAL in turn.reply


@pytest.mark.asyncio
async def test_agent_enrich_waits_for_confirmation(session_factory):
    s = session_factory("agent")
    turn = await s.send("業種を調べて", Selection.of(["r1", "r2"]))
    assert s.pending is not None
    assert "Agentツール候補" in turn.reply
    assert "選択された 2 行" in turn.reply

    turn = await s.send("いいえ")
    assert s.pending is None

    await s.send("業種を調べて", Selection.of(["r1"]))
    turn = await s.send("はい")
    assert s.pending is None
    assert isinstance(turn.result, TableResult)
    assert turn.result.outcome.total == 1


@pytest.mark.asyncio
async def test_unrelated_message_keeps_the_pending_action(session_factory):
    s = session_factory("agent")
    await s.send("業種を調べて")
    turn = await s.send("ところで天気は?")
    assert s.pending is not None
    assert "保留中の操作" in turn.reply


@pytest.mark.asyncio
async def test_agent_filter_on_selected_scope_stays_within_the_selection(session_factory):
    s = session_factory("agent")
    turn = await s.send("選択行のIT", Selection.of(["r1", "r2"]))
    assert [r["id"] for r in turn.rows] == ["r1"]

    # the scope sticks to the view entry on later turns
    turn = await s.send("従業員の多い順")
    assert [r["id"] for r in turn.rows] == ["r1"]

    s.clear_view()
    assert len(s.visible_rows()) == 3
