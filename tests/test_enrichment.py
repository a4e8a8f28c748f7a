import json

import pytest

from tablecrm.enrichment import (
    EnrichmentPipeline,
    build_search_query,
    coerce_value,
    column_hint,
    fit_label_for,
    fit_level,
    is_excluded_source,
    is_fit_column,
    is_fit_reason_column,
    judge_extraction,
    parse_url_list,
    should_discard,
)
from tablecrm.errors import GatewayError
from tablecrm.models import ColumnDefinition, TagOption


def _col(cid, name, ctype="text", **kw):
    return ColumnDefinition(id=cid, name=name, type=ctype, **kw)


@pytest.mark.parametrize("value", ["不明", "おそらく500名", "情報なし", "N/A", "Not found"])
@pytest.mark.parametrize("confidence", ["high", "medium"])
def test_hedging_values_are_discarded_at_any_confidence(value, confidence):
    assert should_discard(confidence, value) is True
    assert judge_extraction({"value": value, "confidence": confidence}, "従業員数", "text") is None


def test_low_or_unknown_confidence_is_discarded():
    assert judge_extraction({"value": "150名", "confidence": "low"}, "従業員数", "text") is None
    assert judge_extraction({"value": "150名", "confidence": "certain"}, "従業員数", "text") is None


def test_accepted_value_carries_source():
    res = judge_extraction({"value": " 山田太郎 ", "confidence": "HIGH"}, "代表者", "text", source="https://acme.co.jp")
    assert res.value == "山田太郎"
    assert res.confidence == "high"
    assert res.source == "https://acme.co.jp"


def test_number_columns_are_coerced_or_dropped():
    assert coerce_value("約1,500名", "number") == 1500
    assert coerce_value("12.5億円", "number") == 12.5
    assert coerce_value("数百名", "number") is None
    res = judge_extraction({"value": "数百名", "confidence": "high"}, "従業員数", "number")
    assert res is None


def test_search_query_uses_field_keywords():
    assert build_search_query("Acme", "代表者名") == '"Acme" 特定商取引法'
    assert build_search_query("Acme", "売上高") == '"Acme" 決算報告'
    assert build_search_query("Acme", "ロゴ") == '"Acme" 会社概要'


def test_column_hint_prefers_description():
    assert column_hint(_col("x", "従業員数", description="正社員の人数")) == "正社員の人数"
    assert "従業員数" in column_hint(_col("x", "従業員数"))
    assert column_hint(_col("x", "好きな色")) == "好きな色"


def test_url_list_parsing_and_source_exclusion():
    assert parse_url_list('["https://acme.co.jp", "mailto:x", 3]') == ["https://acme.co.jp"]
    assert parse_url_list('{"urls": ["https://a.jp"]}') == ["https://a.jp"]
    assert parse_url_list("no idea") == []
    assert is_excluded_source("https://ja.wikipedia.org/wiki/Acme")
    assert not is_excluded_source("https://acme.co.jp/company")


def test_fit_levels_and_labels():
    assert fit_level("高") == "high"
    assert fit_level("Low fit") == "low"
    assert fit_level("???") == "medium"
    fit = _col("f", "フィットスコア", "tag", tag_options=[TagOption(id="1", label="High"), TagOption(id="2", label="Low")])
    assert fit_label_for("high", fit) == "High"
    assert fit_label_for("medium", fit) == "中"
    assert is_fit_column(fit)
    assert is_fit_reason_column(_col("r", "フィットスコア理由"))
    assert not is_fit_column(_col("r", "フィットスコア理由"))


@pytest.mark.asyncio
async def test_no_candidate_urls_means_no_extraction(scripted_gateway):
    # Discovery finds nothing; extraction never runs and the field stays empty
    gw = scripted_gateway(lambda prompt, opts: "[]")
    pipeline = EnrichmentPipeline(gw, financial_phase=False)
    phases = []
    res = await pipeline.enrich_field(
        "Acme Inc", _col("ceo", "CEO"), row_id="r1", on_progress=lambda p: phases.append(p.phase)
    )
    assert res is None
    assert len(gw.calls) == 1
    assert gw.calls[0][1].web_search is True
    assert phases == ["discovery", "complete"]


@pytest.mark.asyncio
async def test_first_accepted_url_wins(scripted_gateway):
    def responder(prompt, opts):
        if opts.web_search:
            return json.dumps(["https://wikipedia.org/acme", "https://acme.co.jp", "https://acme.co.jp/about"])
        if "https://acme.co.jp/about" in opts.fetch_urls:
            return json.dumps({"value": "200名", "confidence": "high"})
        return json.dumps({"value": "見つかりません", "confidence": "low"})

    gw = scripted_gateway(responder)
    pipeline = EnrichmentPipeline(gw, financial_phase=False)
    res = await pipeline.enrich_field("Acme", _col("emp", "従業員数"), row_id="r1")
    assert res.value == "200名"
    assert res.source == "https://acme.co.jp/about"
    fetched = [list(o.fetch_urls) for _, o in gw.calls if o.page_fetch]
    assert fetched == [["https://acme.co.jp"], ["https://acme.co.jp/about"]]


@pytest.mark.asyncio
async def test_financial_phase_runs_when_extraction_finds_nothing(scripted_gateway):
    def responder(prompt, opts):
        if opts.web_search and not opts.json_mode:
            return "[]"
        return json.dumps({"value": "10億円", "confidence": "medium", "source": "https://ir.acme.co.jp"})

    gw = scripted_gateway(responder)
    pipeline = EnrichmentPipeline(gw, financial_phase=True)
    phases = []
    res = await pipeline.enrich_field(
        "Acme", _col("rev", "売上高"), row_id="r1", on_progress=lambda p: phases.append(p.phase)
    )
    assert res.value == "10億円"
    assert res.source == "https://ir.acme.co.jp"
    assert phases == ["discovery", "financial", "complete"]


@pytest.mark.asyncio
async def test_gateway_failure_is_no_data(scripted_gateway):
    gw = scripted_gateway(lambda prompt, opts: GatewayError("timeout"))
    pipeline = EnrichmentPipeline(gw)
    assert await pipeline.enrich_field("Acme", _col("rev", "売上高"), row_id="r1") is None


@pytest.mark.asyncio
async def test_fit_columns_need_org_context(scripted_gateway):
    def responder(prompt, opts):
        if "適合" in prompt:
            return json.dumps({"fit": "低", "reason": "低"})
        return "[]"

    gw = scripted_gateway(responder)
    pipeline = EnrichmentPipeline(gw, financial_phase=False)
    cols = [_col("fit", "フィットスコア", "tag"), _col("why", "フィットスコア理由"), _col("st", "ステータス")]

    without = await pipeline.enrich_entity("Acme", cols, row_id="r1")
    assert without == {}
    assert gw.calls == []

    values = await pipeline.enrich_entity("Acme", cols, row_id="r1", org_context="中小企業向けのSaaS")
    assert values["fit"] == "低"
    # A bare score is not a reason; the canned explanation replaces it
    assert len(values["why"]) > 10
    assert "st" not in values
    assert gw.calls[0][1].web_search is False


@pytest.mark.asyncio
async def test_cancel_stops_between_fields(scripted_gateway):
    gw = scripted_gateway(lambda prompt, opts: "[]")
    pipeline = EnrichmentPipeline(gw, financial_phase=False)
    flag = {"stop": False}

    def progress(p):
        if p.phase == "complete":
            flag["stop"] = True

    cols = [_col("a", "代表者"), _col("b", "住所")]
    await pipeline.enrich_entity("Acme", cols, row_id="r1", on_progress=progress, cancelled=lambda: flag["stop"])
    assert len(gw.calls) == 1
