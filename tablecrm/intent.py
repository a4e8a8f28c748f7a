"""
Intent classifier for the table chat.

Turns one user message plus the table schema and the current selection into
an AnalyzeChatResult: intent, a typed tool call, and a reply. The model is
asked for JSON only; anything it returns is normalized into the tool-call
union, and any failure degrades to a CHAT reply rather than an error.
"""
from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from langchain_core.prompts import PromptTemplate
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from tablecrm.gateway import GenerateOptions, GenerativeGateway
from tablecrm.json_extract import ParseFailure, extract_json
from tablecrm.models import (
    AGGREGATE_TOOLS,
    MUTATION_TOOLS,
    AnalyzeChatResult,
    ChatMode,
    NoToolCall,
    Selection,
    Table,
    ToolCall,
)
from tablecrm.settings import CLASSIFIER_PREVIEW_ROWS

log = logging.getLogger("intent")

FALLBACK_REPLY = "申し訳ありません、理解できませんでした。"
CHAT_MODE_REFUSAL = (
    "I can help explain or look up that information, "
    "but modifications can only be requested in Agent Mode."
)

_INTENTS = ("FILTER", "SORT", "EDIT", "CHAT")

# tool name -> key the model uses for its parameters
_PARAM_KEYS = {
    "filter": "filterParams",
    "sort": "sortParams",
    "enrich": "enrichParams",
    "generate_data": "generateParams",
    "calculate_max": "aggregateParams",
    "calculate_min": "aggregateParams",
    "calculate_mean": "aggregateParams",
}

_tool_call_adapter: TypeAdapter = TypeAdapter(ToolCall)

_CLASSIFIER_PROMPT = PromptTemplate.from_template(
    """あなたはAIデータベースアシスタントです。
現在のモード: {mode_label}

テーブル情報:
テーブル名: {table_name}
カラム一覧 (IDと表示名): {columns}

選択コンテキスト:
{selection}

ユーザーの発言: \"\"\"{message}\"\"\"

タスク:
- ユーザーの意図 (intent) と、必要であれば実行すべきツール (tool) とそのパラメータをJSONで返してください。
- 「選択した行」「これらの3社」などの表現は選択中の行を指していると解釈してください。

Intentの種類:
1. FILTER: データの絞り込み。「～を含む」「～以上の」など。
2. SORT: データの並び替え。「～で並べて」「～順にして」。
3. EDIT: データの追加、変更、エンリッチ、行生成など。(AGENTモードのみ可能。CHATモードでは提案のみ)
4. CHAT: 一般的な会話、質問、データの要約や説明。

利用可能なtool:
- "none": ツールを使わず説明やサマリだけ返す。
- "filter": 行を条件で絞り込む。
- "sort": 行を特定カラムで並べ替える。
- "enrich": 選択された行や全行の会社情報をWebから補完する。
- "generate_data": 新しい行 (主に企業リスト) を生成する。
- "calculate_max" / "calculate_min" / "calculate_mean": 数値カラムの最大値・最小値・平均値を計算する。

scope:
- "selected" は選択中の行のみ、"all" または未指定はテーブル全体を対象にします。

重要な制約:
- CHATモードでは "enrich" や "generate_data" のようなデータを変更するツールは選ばないでください。
  値を知りたいだけの質問には intent を "CHAT"、tool を "none" にし、reply で直接答えてください。
- AGENTモードでは明確な操作依頼に対して最も適切なツールを1つ選んでください。

レスポンスJSON形式:
{{
  "intent": "FILTER" | "SORT" | "EDIT" | "CHAT",
  "tool": "none" | "filter" | "sort" | "enrich" | "generate_data" | "calculate_max" | "calculate_min" | "calculate_mean",
  "reply": "ユーザーへの日本語での返答",
  "filterParams": {{"columnId": "...", "operator": "contains" | "equals" | "greater" | "less", "value": "...", "scope": "all" | "selected"}},
  "sortParams": {{"columnId": "...", "direction": "asc" | "desc", "scope": "all" | "selected"}},
  "enrichParams": {{"targetColumnIds": ["..."], "scope": "selected" | "all"}},
  "generateParams": {{"count": 10, "targetColumnIds": ["..."], "prompt": "...", "scope": "all"}},
  "aggregateParams": {{"columnId": "...", "operation": "max" | "min" | "mean", "scope": "all" | "selected"}},
  "suggestedAction": "CHATモードで編集要求があった場合のAgentモードへの切り替え案内 (任意)"
}}

有効なJSONだけを返してください。説明文は reply に書き、JSONの外側には何も書かないでください。"""
)


def fallback_result(reply: str = FALLBACK_REPLY) -> AnalyzeChatResult:
    return AnalyzeChatResult(intent="CHAT", reply=reply, call=NoToolCall())


def _selection_context(table: Table, selection: Optional[Selection]) -> str:
    if selection is None or not selection.selected_row_ids:
        return "現在選択されている行はありません。"
    ids = [r.get("id") for r in table.rows if r.get("id") in selection.selected_row_ids]
    preview_rows = [r for r in table.rows if r.get("id") in selection.selected_row_ids][:CLASSIFIER_PREVIEW_ROWS]
    preview = "\n".join(json.dumps(r, ensure_ascii=False, default=str) for r in preview_rows)
    return (
        f"ユーザーは現在、以下の行を選択しています (ID: {', '.join(str(i) for i in ids)}):\n"
        f"データサンプル:\n{preview}\n"
        f"... (全 {len(selection.selected_row_ids)} 行)"
    )


def build_classifier_prompt(
    message: str,
    table: Table,
    selection: Optional[Selection] = None,
    mode: ChatMode = "chat",
) -> str:
    columns = ", ".join(f"ID:{c.id} 名前:{c.name}" for c in table.ordered_columns())
    return _CLASSIFIER_PROMPT.format(
        mode_label="AGENT (編集・操作可能)" if mode == "agent" else "CHAT (閲覧・分析のみ)",
        table_name=table.name,
        columns=columns,
        selection=_selection_context(table, selection),
        message=message,
    )


def _parse_tool_call(tool: str, payload: Dict[str, Any]) -> ToolCall:
    if tool in ("", "none") or tool not in _PARAM_KEYS:
        if tool not in ("", "none"):
            log.info("unknown tool from classifier: %s", tool)
        return NoToolCall()
    params = payload.get(_PARAM_KEYS[tool])
    if not isinstance(params, dict):
        log.info("tool %s without %s; ignoring", tool, _PARAM_KEYS[tool])
        return NoToolCall()
    params = dict(params)
    if tool in AGGREGATE_TOOLS:
        params["operation"] = tool.split("_", 1)[1]
    try:
        return _tool_call_adapter.validate_python({"tool": tool, "params": params})
    except PydanticValidationError as e:
        log.info("invalid %s params: %s", tool, e.errors()[:3])
        return NoToolCall()


def _infer_tool(intent: str, payload: Dict[str, Any]) -> str:
    """Older replies carry only intent + params; recover the tool from them."""
    if intent == "FILTER" and isinstance(payload.get("filterParams"), dict):
        return "filter"
    if intent == "SORT" and isinstance(payload.get("sortParams"), dict):
        return "sort"
    return "none"


def normalize_result(payload: Any, mode: ChatMode = "chat") -> AnalyzeChatResult:
    """Coerce a loosely shaped model reply into an AnalyzeChatResult.

    Mutation tools are dropped in chat mode: the result becomes a CHAT
    advisory with a suggestion to switch to agent mode.
    """
    if not isinstance(payload, dict):
        return fallback_result()
    intent = str(payload.get("intent") or "CHAT").strip().upper()
    if intent not in _INTENTS:
        intent = "CHAT"
    reply = payload.get("reply")
    reply = reply.strip() if isinstance(reply, str) else ""
    suggested = payload.get("suggestedAction")
    suggested = suggested.strip() if isinstance(suggested, str) and suggested.strip() else None

    tool = str(payload.get("tool") or "").strip().lower() or _infer_tool(intent, payload)
    call = _parse_tool_call(tool, payload)

    if mode != "agent" and call.tool in MUTATION_TOOLS:
        log.info("mutation tool %s requested in chat mode; answering as advice", call.tool)
        return AnalyzeChatResult(
            intent="CHAT",
            reply=reply or CHAT_MODE_REFUSAL,
            call=NoToolCall(),
            suggested_action=suggested or CHAT_MODE_REFUSAL,
        )
    return AnalyzeChatResult(
        intent=intent,
        reply=reply or (FALLBACK_REPLY if call.tool == "none" else ""),
        call=call,
        suggested_action=suggested,
    )


async def analyze_chat_intent(
    gateway: GenerativeGateway,
    message: str,
    table: Table,
    selection: Optional[Selection] = None,
    mode: ChatMode = "chat",
) -> AnalyzeChatResult:
    """Classify one chat message. Never raises; failures become a CHAT fallback."""
    if not (message or "").strip():
        return fallback_result()
    prompt = build_classifier_prompt(message, table, selection, mode)
    try:
        resp = await gateway.generate(prompt, GenerateOptions(json_mode=True))
    except Exception as e:
        log.warning("intent analysis failed: %s", e)
        return fallback_result()
    parsed = extract_json(resp.text)
    if isinstance(parsed, ParseFailure):
        log.info("intent reply unreadable (%s): %s", parsed.reason, parsed.raw[:200])
        return fallback_result()
    return normalize_result(parsed.value, mode)
