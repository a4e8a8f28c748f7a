"""
Per-field web research for one company.

Each (row, column) pair runs through a small LangGraph state machine:

    discovery -> extraction -> (financial) -> complete

Discovery asks the gateway, with web search on, for up to three official
first-party URLs. Extraction fetches each candidate page in turn and asks for
``{value, confidence, reasoning}``; the first result that passes the
confidence gate wins. Financial fields that found nothing get one more pass
aimed at IR / 決算 sources. "No data" is always a ``None`` result, never an
exception.

Fit-score columns are handled separately: with an organization context, one
classification call per company fills the fit label and its reason.
"""
from __future__ import annotations

import inspect
import logging
import re
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, TypedDict
from urllib.parse import urlparse

from langgraph.graph import END, StateGraph

from tablecrm.errors import ParseError
from tablecrm.gateway import GenerateOptions, GenerativeGateway
from tablecrm.json_extract import ParseFailure, expect_object, extract_json
from tablecrm.models import ColumnDefinition, EnrichmentProgress, EnrichmentResult, is_blank
from tablecrm.settings import ENABLE_FINANCIAL_PHASE, ENRICH_MAX_CANDIDATE_URLS

log = logging.getLogger("enrichment")

ProgressCallback = Callable[[EnrichmentProgress], Any]

# Field name fragment -> search keywords, first match wins
FIELD_KEYWORDS: Dict[str, List[str]] = {
    "代表者": ["特定商取引法", "会社概要", "代表取締役"],
    "CEO": ["特定商取引法", "会社概要", "代表取締役"],
    "電話": ["特定商取引法", "会社概要", "電話番号"],
    "電話番号": ["特定商取引法", "会社概要", "お問い合わせ"],
    "メール": ["特定商取引法", "会社概要", "お問い合わせ"],
    "メールアドレス": ["特定商取引法", "会社概要", "メールアドレス"],
    "住所": ["特定商取引法", "会社概要", "本社"],
    "設立": ["会社概要", "沿革", "設立年"],
    "従業員": ["会社概要", "従業員数"],
    "資本金": ["会社概要", "資本金"],
    "売上": ["決算報告", "IR情報", "業績"],
    "利益": ["決算報告", "IR情報", "業績"],
}
DEFAULT_FIELD_KEYWORDS = ["会社概要", "特定商取引法"]

FINANCIAL_FIELD_MARKERS = ("売上", "利益", "資本金", "決算", "revenue", "sales", "profit", "capital")

# Encyclopedic, news and job-board hosts; never a first-party source
EXCLUDED_SOURCE_DOMAINS = (
    "wikipedia.org",
    "wikiwand.com",
    "weblio.jp",
    "indeed.com",
    "doda.jp",
    "mynavi.jp",
    "rikunabi.com",
    "en-japan.com",
    "wantedly.com",
    "openwork.jp",
    "bizreach.jp",
    "news.yahoo.co.jp",
    "nikkei.com",
    "prtimes.jp",
)

HEDGING_PHRASES = (
    "不明",
    "情報なし",
    "わかりません",
    "見つかりません",
    "確認できません",
    "公開されていません",
    "非公開",
    "おそらく",
    "可能性",
    "と思われる",
    "かもしれません",
    "n/a",
    "not found",
    "unknown",
)

_CONFIDENCE_LEVELS = ("high", "medium", "low")

# Extraction hints for common CRM columns that carry no description
COLUMN_HINTS = (
    (("概要", "summary", "事業内容"), "会社の事業内容を1〜2文で要約したもの"),
    (("ウェブサイト", "website", "url", "ホームページ", "サイト"), "公式サイトのURL (例: https://example.co.jp)"),
    (("従業員", "employees", "社員数"), "従業員数 (例: 150名、100-300名)"),
    (("売上", "revenue", "sales"), "直近の売上高 (例: 10億円)"),
    (("sns", "linkedin", "twitter", "facebook"), "公式SNSアカウントのURL (LinkedIn、X、Facebookの順に優先)"),
    (("カテゴリー", "category", "業種", "業界", "industry"), "業種を表すタグ (例: IT・通信, 製造業)"),
)

FIT_COLUMN_MARKERS = ("フィットスコア", "fit score", "適合度", "マッチ度")
FIT_REASON_MARKERS = ("理由", "explanation", "reason")
FIT_LEVEL_LABELS = {"high": "高", "medium": "中", "low": "低"}
_FIT_SYNONYMS = {
    "high": ("high", "高"),
    "medium": ("medium", "mid", "中"),
    "low": ("low", "低"),
}
FIT_REASON_FALLBACKS = {
    "high": "業界や企業規模がユーザー企業のターゲット顧客層と一致しており、明確なニーズと導入可能性が高い。",
    "medium": "部分的に適合する要素はあるが、完全な一致ではない。潜在的なニーズは存在するものの、導入には追加の検討が必要。",
    "low": "業界や企業規模がユーザー企業のターゲット顧客層と大きく異なり、明確な適合性は見られない。",
}


def _name_has(column: ColumnDefinition, markers: Sequence[str]) -> bool:
    name = (column.name or "").lower()
    return any(m.lower() in name for m in markers)


def is_status_column(column: ColumnDefinition) -> bool:
    return column.name == "ステータス" or "status" in (column.name or "").lower()


def is_fit_reason_column(column: ColumnDefinition) -> bool:
    return _name_has(column, FIT_REASON_MARKERS) and (
        _name_has(column, FIT_COLUMN_MARKERS) or _name_has(column, ("fit", "適合", "フィット"))
    )


def is_fit_column(column: ColumnDefinition) -> bool:
    return _name_has(column, FIT_COLUMN_MARKERS) and not is_fit_reason_column(column)


def is_financial_field(field: str) -> bool:
    f = (field or "").lower()
    return any(m.lower() in f for m in FINANCIAL_FIELD_MARKERS)


def build_search_query(entity: str, field: str) -> str:
    keywords = DEFAULT_FIELD_KEYWORDS
    for key, values in FIELD_KEYWORDS.items():
        if key.lower() in (field or "").lower():
            keywords = values
            break
    return f'"{entity}" {keywords[0]}'


def column_hint(column: ColumnDefinition) -> str:
    if column.description and column.description.strip():
        return column.description.strip()
    for markers, hint in COLUMN_HINTS:
        if _name_has(column, markers):
            return hint
    return column.name


def _host_of(url: str) -> str:
    return (urlparse(url).netloc or "").lower().split(":")[0]


def is_excluded_source(url: str) -> bool:
    host = _host_of(url)
    return any(host == d or host.endswith("." + d) for d in EXCLUDED_SOURCE_DOMAINS)


def normalize_confidence(raw: Any) -> str:
    c = str(raw or "").strip().lower()
    # Unrecognized labels are treated as the weakest level
    return c if c in _CONFIDENCE_LEVELS else "low"


def should_discard(confidence: str, value: Any) -> bool:
    """Confidence gate shared by every phase."""
    if confidence == "low":
        return True
    if is_blank(value):
        return True
    text = str(value).lower()
    return any(p in text for p in HEDGING_PHRASES)


_NON_NUMERIC_RE = re.compile(r"[^0-9.\-]")


def coerce_value(value: Any, column_type: str) -> Optional[Any]:
    """Cast to the column type; None when a number column gets no parseable number."""
    if column_type != "number":
        return str(value).strip() if not isinstance(value, (int, float)) else value
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return value
    cleaned = _NON_NUMERIC_RE.sub("", str(value))
    try:
        num = float(cleaned)
    except ValueError:
        return None
    return int(num) if num.is_integer() else num


def judge_extraction(
    payload: Any,
    field: str,
    column_type: str,
    source: Optional[str] = None,
) -> Optional[EnrichmentResult]:
    """Apply the confidence gate and type coercion to one extraction reply."""
    if not isinstance(payload, dict) or "value" not in payload:
        return None
    raw_value = payload.get("value")
    confidence = normalize_confidence(payload.get("confidence"))
    if should_discard(confidence, raw_value):
        log.info("discard field=%s confidence=%s value=%r", field, confidence, raw_value)
        return None
    value = coerce_value(raw_value, column_type)
    if value is None or is_blank(value):
        log.info("discard field=%s unparseable for %s: %r", field, column_type, raw_value)
        return None
    return EnrichmentResult(field=field, value=value, confidence=confidence, source=source)


def parse_url_list(text: str) -> List[str]:
    parsed = extract_json(text)
    if isinstance(parsed, ParseFailure):
        log.info("discovery reply unreadable (%s)", parsed.reason)
        return []
    value = parsed.value
    if isinstance(value, dict):
        value = value.get("urls")
    if not isinstance(value, list):
        return []
    return [u.strip() for u in value if isinstance(u, str) and u.strip().startswith("http")]


def fit_level(raw: Any) -> str:
    """Map a model's fit label onto high/medium/low; unclear answers count as medium."""
    v = str(raw or "").strip().lower()
    for level, synonyms in _FIT_SYNONYMS.items():
        if v in synonyms:
            return level
    for level in ("high", "low", "medium"):
        if FIT_LEVEL_LABELS[level] in v or level in v:
            return level
    return "medium"


def fit_label_for(level: str, column: ColumnDefinition) -> str:
    """Pick the column's own tag label for a fit level, else the default 高/中/低."""
    for opt in column.tag_options:
        if opt.label.strip().lower() in _FIT_SYNONYMS[level]:
            return opt.label
    return FIT_LEVEL_LABELS[level]


def _is_bare_score(text: str) -> bool:
    t = text.strip().lower()
    if re.fullmatch(r"[高中低\s,、]+", t) or re.fullmatch(r"((high|medium|low)[\s,]*)+", t):
        return True
    return len(t) < 10 and bool(re.search(r"[高中低]", t))


@dataclass
class FitResult:
    level: str
    reason: str


class FieldState(TypedDict, total=False):
    row_id: str
    column_id: str
    entity: str
    field: str
    hint: str
    column_type: str
    candidate_urls: List[str]
    result: Optional[EnrichmentResult]
    on_progress: Optional[ProgressCallback]
    cancelled: Optional[Callable[[], bool]]


async def notify(callback: Optional[Callable[..., Any]], payload: Any) -> None:
    if callback is None:
        return
    try:
        out = callback(payload)
        if inspect.isawaitable(out):
            await out
    except Exception:
        log.warning("progress callback failed", exc_info=True)


class EnrichmentPipeline:
    def __init__(
        self,
        gateway: GenerativeGateway,
        *,
        max_candidate_urls: int = ENRICH_MAX_CANDIDATE_URLS,
        financial_phase: bool = ENABLE_FINANCIAL_PHASE,
    ):
        self.gateway = gateway
        self.max_candidate_urls = max(1, max_candidate_urls)
        self.financial_phase = financial_phase
        self.graph = self._build_graph()

    def ensure_ready(self) -> None:
        """Discovery needs web search; refuse the run up front when it is not configured."""
        self.gateway.require_search()

    # --- graph ---------------------------------------------------------------

    def _build_graph(self):
        g = StateGraph(FieldState)
        g.add_node("discovery", self._node_discovery)
        g.add_node("extraction", self._node_extraction)
        g.add_node("financial", self._node_financial)
        g.add_node("complete", self._node_complete)
        g.set_entry_point("discovery")
        g.add_conditional_edges(
            "discovery",
            self._after_discovery,
            {"extraction": "extraction", "financial": "financial", "complete": "complete"},
        )
        g.add_conditional_edges(
            "extraction",
            self._after_extraction,
            {"financial": "financial", "complete": "complete"},
        )
        g.add_edge("financial", "complete")
        g.add_edge("complete", END)
        return g.compile()

    @staticmethod
    def _is_cancelled(state: FieldState) -> bool:
        check = state.get("cancelled")
        return bool(check and check())

    def _wants_financial(self, state: FieldState) -> bool:
        return self.financial_phase and is_financial_field(state.get("field", ""))

    async def _emit(self, state: FieldState, phase: str, **extra) -> None:
        await notify(
            state.get("on_progress"),
            EnrichmentProgress(row_id=state["row_id"], column_id=state["column_id"], phase=phase, **extra),
        )

    async def _node_discovery(self, state: FieldState) -> FieldState:
        await self._emit(state, "discovery")
        urls = await self.discover_urls(state["entity"], state["field"])
        return {"candidate_urls": urls}

    def _after_discovery(self, state: FieldState) -> str:
        if self._is_cancelled(state):
            return "complete"
        if state.get("candidate_urls"):
            return "extraction"
        return "financial" if self._wants_financial(state) else "complete"

    async def _node_extraction(self, state: FieldState) -> FieldState:
        await self._emit(state, "extraction")
        for url in (state.get("candidate_urls") or [])[: self.max_candidate_urls]:
            if self._is_cancelled(state):
                break
            result = await self.extract_from_url(
                url, state["field"], state.get("hint") or state["field"], state.get("column_type", "text")
            )
            if result is not None:
                return {"result": result}
        return {"result": None}

    def _after_extraction(self, state: FieldState) -> str:
        if state.get("result") is not None or self._is_cancelled(state):
            return "complete"
        return "financial" if self._wants_financial(state) else "complete"

    async def _node_financial(self, state: FieldState) -> FieldState:
        await self._emit(state, "financial")
        result = await self.search_financials(
            state["entity"], state["field"], state.get("hint") or state["field"], state.get("column_type", "text")
        )
        return {"result": result}

    async def _node_complete(self, state: FieldState) -> FieldState:
        await self._emit(state, "complete", result=state.get("result"))
        return {"result": state.get("result")}

    # --- phases --------------------------------------------------------------

    async def discover_urls(self, entity: str, field: str) -> List[str]:
        """Candidate first-party URLs for one field; empty on any failure."""
        query = build_search_query(entity, field)
        prompt = (
            f"次の検索クエリで最も関連性の高いURLを最大{self.max_candidate_urls}つ見つけてください: {query}\n\n"
            "重要: 公式企業サイトのURLのみを返してください。Wikipedia、求人サイト、ニュースサイトなどは除外してください。\n"
            'URLのみをJSON配列で返してください。例: ["https://example.co.jp", "https://example.com"]'
        )
        log.info("[discovery] entity=%s field=%s query=%s", entity, field, query)
        try:
            resp = await self.gateway.generate(
                prompt,
                GenerateOptions(
                    web_search=True,
                    search_query=query,
                    exclude_domains=EXCLUDED_SOURCE_DOMAINS,
                ),
            )
        except Exception as e:
            log.info("[discovery] failed entity=%s field=%s err=%s", entity, field, e)
            return []
        urls: List[str] = []
        for u in parse_url_list(resp.text):
            if is_excluded_source(u) or u in urls:
                continue
            urls.append(u)
        return urls[: self.max_candidate_urls]

    async def extract_from_url(
        self, url: str, field: str, hint: str, column_type: str
    ) -> Optional[EnrichmentResult]:
        prompt = (
            f"このURLから「{field}」の情報を抽出してください: {url}\n\n"
            "重要な指示:\n"
            "1. 確実に見つかった情報のみを返してください\n"
            "2. 推測や憶測で情報を埋めないでください\n"
            "3. 情報が見つからない場合は「見つかりません」と返してください\n"
            f"4. {hint}に関する情報を探してください\n\n"
            "返答形式: JSON\n"
            '{"value": "抽出された値または\'見つかりません\'", "confidence": "high/medium/low", "reasoning": "判断の理由"}'
        )
        log.info("[extraction] field=%s url=%s", field, url)
        try:
            resp = await self.gateway.generate(
                prompt, GenerateOptions(page_fetch=True, json_mode=True, fetch_urls=[url])
            )
        except Exception as e:
            log.info("[extraction] failed url=%s err=%s", url, e)
            return None
        parsed = extract_json(resp.text)
        if isinstance(parsed, ParseFailure):
            log.info("[extraction] unreadable reply (%s) url=%s", parsed.reason, url)
            return None
        return judge_extraction(parsed.value, field, column_type, source=url)

    async def search_financials(
        self, entity: str, field: str, hint: str, column_type: str
    ) -> Optional[EnrichmentResult]:
        query = f'"{entity}" {field} 決算 IR'
        prompt = (
            f"「{entity}」の「{field}」を、決算報告・IR情報・有価証券報告書などの公式な財務資料から調べてください。\n"
            f"探す情報: {hint}\n"
            "確実に確認できた値のみを返し、推測はしないでください。見つからない場合は「見つかりません」と返してください。\n\n"
            "返答形式: JSON\n"
            '{"value": "値または\'見つかりません\'", "confidence": "high/medium/low", "source": "根拠となったURL", "reasoning": "判断の理由"}'
        )
        log.info("[financial] entity=%s field=%s", entity, field)
        try:
            resp = await self.gateway.generate(
                prompt,
                GenerateOptions(
                    web_search=True,
                    json_mode=True,
                    search_query=query,
                    exclude_domains=EXCLUDED_SOURCE_DOMAINS,
                ),
            )
        except Exception as e:
            log.info("[financial] failed entity=%s field=%s err=%s", entity, field, e)
            return None
        parsed = extract_json(resp.text)
        if isinstance(parsed, ParseFailure):
            return None
        payload = parsed.value
        source = None
        if isinstance(payload, dict) and isinstance(payload.get("source"), str) and payload["source"].startswith("http"):
            source = payload["source"]
        elif resp.source_urls:
            source = resp.source_urls[0]
        return judge_extraction(payload, field, column_type, source=source)

    # --- entry points ----------------------------------------------------------

    async def enrich_field(
        self,
        entity: str,
        column: ColumnDefinition,
        *,
        row_id: str,
        on_progress: Optional[ProgressCallback] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> Optional[EnrichmentResult]:
        """Run one (entity, column) pair through the graph; None means no data."""
        state: FieldState = {
            "row_id": row_id,
            "column_id": column.id,
            "entity": entity,
            "field": column.name,
            "hint": column_hint(column),
            "column_type": column.type,
            "candidate_urls": [],
            "result": None,
            "on_progress": on_progress,
            "cancelled": cancelled,
        }
        try:
            out = await self.graph.ainvoke(state)
        except Exception as e:
            log.warning("enrichment failed entity=%s field=%s: %s", entity, column.name, e, exc_info=True)
            await notify(
                on_progress,
                EnrichmentProgress(row_id=row_id, column_id=column.id, phase="error", error=str(e) or type(e).__name__),
            )
            return None
        return out.get("result")

    async def classify_fit(self, entity: str, org_context: str) -> Optional[FitResult]:
        """One high/medium/low judgment of the company against the organization context."""
        prompt = (
            f"次のユーザー企業の情報をもとに、「{entity}」がユーザー企業の顧客としてどの程度適合するかを評価してください。\n\n"
            f"ユーザー企業の情報:\n\"\"\"{org_context}\"\"\"\n\n"
            "評価基準:\n"
            "- 高: 業界・企業規模・ニーズ・顧客層がユーザー企業のターゲットと明確に一致する\n"
            "- 中: 一部は一致するが、規模や業界がやや異なる、またはニーズが明確でない\n"
            "- 低: 業界や規模が大きく異なり、明確な利用ケースが見当たらない\n"
            "既定値として「中」を選ばず、実際の事業内容を比較して判断してください。\n\n"
            "返答形式: JSON\n"
            '{"fit": "高" | "中" | "低", "reason": "その評価にした理由を日本語で1〜2文"}'
        )
        try:
            resp = await self.gateway.generate(prompt, GenerateOptions(json_mode=True))
        except Exception as e:
            log.info("[fit] failed entity=%s err=%s", entity, e)
            return None
        try:
            payload = expect_object(resp.text)
        except ParseError as e:
            log.info("[fit] entity=%s %s", entity, e)
            return None
        level = fit_level(payload.get("fit"))
        reason = str(payload.get("reason") or "").strip()
        if not reason or _is_bare_score(reason) or "n/a" in reason.lower():
            reason = FIT_REASON_FALLBACKS[level]
        return FitResult(level=level, reason=reason)

    async def enrich_entity(
        self,
        entity: str,
        columns: Sequence[ColumnDefinition],
        *,
        row_id: str,
        org_context: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancelled: Optional[Callable[[], bool]] = None,
    ) -> Dict[str, Any]:
        """Fan out over target columns; returns only the columns that got a value."""
        values: Dict[str, Any] = {}
        targets = [c for c in columns if not is_status_column(c)]
        fit_cols = [c for c in targets if is_fit_column(c)]
        reason_cols = [c for c in targets if is_fit_reason_column(c)]
        plain_cols = [c for c in targets if c not in fit_cols and c not in reason_cols]

        if (fit_cols or reason_cols) and (org_context or "").strip():
            if not (cancelled and cancelled()):
                fit = await self.classify_fit(entity, org_context.strip())
                if fit is not None:
                    for c in fit_cols:
                        values[c.id] = fit_label_for(fit.level, c)
                    for c in reason_cols:
                        values[c.id] = fit.reason
        elif fit_cols or reason_cols:
            log.info("fit columns skipped for %s: no organization context", entity)

        for col in plain_cols:
            if cancelled and cancelled():
                log.info("enrichment cancelled entity=%s before field=%s", entity, col.name)
                break
            result = await self.enrich_field(
                entity, col, row_id=row_id, on_progress=on_progress, cancelled=cancelled
            )
            if result is not None:
                values[col.id] = result.value
        return values
