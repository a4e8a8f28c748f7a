"""
Chat session over one table.

Keeps the view state (active filters and sorts) and a pending agent action.
In chat mode nothing changes: filters are answered as a listing, aggregates
as a number, and edits get a pointer to agent mode. In agent mode filter and
sort update the view, aggregates answer directly, and enrich / generate_data
wait for an explicit yes / はい before running.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Union

from tablecrm.batch import BatchProgressCallback, CancelToken
from tablecrm.company_key import find_company_key_column
from tablecrm.dispatcher import DispatchResult, TableResult, ViewResult, dispatch
from tablecrm.enrichment import EnrichmentPipeline, ProgressCallback
from tablecrm.gateway import GenerativeGateway
from tablecrm.intent import CHAT_MODE_REFUSAL, analyze_chat_intent
from tablecrm.models import (
    AnalyzeChatResult,
    ChatMode,
    EnrichCall,
    Filter,
    FilterCall,
    GenerateCall,
    Row,
    Selection,
    SortCall,
    SortState,
    Table,
)
from tablecrm.record_store import RecordStore
from tablecrm.table_ops import apply_filters, apply_sorts, resolve_scope

log = logging.getLogger("agent_session")

CONFIRM_WORDS = ("yes", "y", "はい", "ok", "実行")
CANCEL_WORDS = ("no", "n", "いいえ", "キャンセル", "cancel")
CLEAR_WORDS = ("クリア", "リセット")
CLEAR_REFUSAL = "フィルタや並び替えのクリアは操作にあたるため、Askモードからは実行しません。"
MAX_LISTED_ROWS = 5


def _scope_ids(scope, selection: Optional[Selection]) -> Optional[FrozenSet[str]]:
    """Row ids a view entry is limited to; None means every row."""
    if resolve_scope(scope, selection) == "selected":
        return frozenset(selection.selected_row_ids)  # type: ignore[union-attr]
    return None


@dataclass
class PendingAction:
    call: Union[EnrichCall, GenerateCall]
    summary: str
    selection: Optional[Selection] = None
    reply: str = ""


@dataclass
class ChatTurn:
    reply: str
    analysis: Optional[AnalyzeChatResult] = None
    result: Optional[DispatchResult] = None
    pending: Optional[PendingAction] = None
    rows: List[Row] = field(default_factory=list)


def _matches(message: str, words) -> bool:
    m = (message or "").strip().lower().rstrip("。.!！")
    return m in words


class ChatSession:
    def __init__(
        self,
        gateway: GenerativeGateway,
        table: Table,
        *,
        pipeline: Optional[EnrichmentPipeline] = None,
        mode: ChatMode = "chat",
        org_context: Optional[str] = None,
        store: Optional[RecordStore] = None,
    ):
        self.gateway = gateway
        self.table = table
        self.pipeline = pipeline
        self.mode: ChatMode = mode
        self.org_context = org_context
        self.store = store
        self.filters: List[Filter] = []
        self.sorts: List[SortState] = []
        # "filter:<column_id>" / "sort" -> rows that view entry was scoped to
        self.view_scopes: Dict[str, Optional[FrozenSet[str]]] = {}
        self.pending: Optional[PendingAction] = None

    def visible_rows(self) -> List[Row]:
        rows = self.table.rows
        for ids in self.view_scopes.values():
            if ids is not None:
                rows = [r for r in rows if r.get("id") in ids]
        return apply_sorts(apply_filters(rows, self.filters), self.sorts)

    def clear_view(self) -> None:
        self.filters = []
        self.sorts = []
        self.view_scopes = {}

    def _turn(self, reply: str, **kw) -> ChatTurn:
        return ChatTurn(reply=reply, pending=self.pending, rows=self.visible_rows(), **kw)

    def _listing(self, rows: List[Row]) -> str:
        if not rows:
            return "該当する行は見つかりませんでした。"
        key = find_company_key_column(self.table.columns)
        lines = []
        for r in rows[:MAX_LISTED_ROWS]:
            name = r.get(key.id) if key else None
            lines.append(f"- {name or '(名称未設定)'}")
        more = f"\n…ほか {len(rows) - MAX_LISTED_ROWS} 行" if len(rows) > MAX_LISTED_ROWS else ""
        return "条件に一致した行の一覧:\n" + "\n".join(lines) + more

    async def _run_pending(self, on_progress, on_field_progress, cancel) -> ChatTurn:
        action = self.pending
        self.pending = None
        result = await dispatch(
            AnalyzeChatResult(intent="EDIT", reply="", call=action.call),
            self.table,
            action.selection,
            mode="agent",
            pipeline=self.pipeline,
            org_context=self.org_context,
            store=self.store,
            on_progress=on_progress,
            on_field_progress=on_field_progress,
            cancel=cancel,
        )
        if isinstance(result, TableResult):
            self.table = result.table
        return self._turn(result.reply, result=result)

    async def send(
        self,
        message: str,
        selection: Optional[Selection] = None,
        *,
        on_progress: Optional[BatchProgressCallback] = None,
        on_field_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ChatTurn:
        if self.pending is not None:
            if _matches(message, CONFIRM_WORDS):
                return await self._run_pending(on_progress, on_field_progress, cancel)
            if _matches(message, CANCEL_WORDS):
                self.pending = None
                return self._turn("操作をキャンセルしました。")
            return self._turn(
                f"保留中の操作があります: {self.pending.summary}\n"
                "実行してよい場合は「yes / はい」、取り消す場合は「no / いいえ」と回答してください。"
            )

        lower = (message or "").lower()
        if any(w in lower for w in CLEAR_WORDS) or _matches(message, ("clear", "reset")):
            if self.mode == "agent":
                self.clear_view()
                return self._turn("フィルタとソートをクリアしました。")
            return self._turn(f"{CLEAR_REFUSAL}\n{CHAT_MODE_REFUSAL}")

        analysis = await analyze_chat_intent(self.gateway, message, self.table, selection, self.mode)
        reply = analysis.reply
        call = analysis.call

        if self.mode != "agent":
            if analysis.intent == "EDIT" or analysis.suggested_action:
                advice = analysis.suggested_action or CHAT_MODE_REFUSAL
                text = reply if advice in reply else f"{reply}\n\n{advice}".strip()
                return self._turn(text, analysis=analysis)
            result = await dispatch(analysis, self.table, selection, mode=self.mode)
            if isinstance(result, ViewResult) and result.kind == "filter":
                return self._turn(f"{reply}\n\n{self._listing(result.rows)}".strip(), analysis=analysis, result=result)
            return self._turn(result.reply, analysis=analysis, result=result)

        if isinstance(call, FilterCall):
            self.filters = [f for f in self.filters if f.column_id != call.params.column_id] + [call.params]
            self.view_scopes[f"filter:{call.params.column_id}"] = _scope_ids(call.params.scope, selection)
            p = call.params
            return self._turn(f"{reply} フィルタ適用: {p.column_id} {p.operator} {p.value}".strip(), analysis=analysis)
        if isinstance(call, SortCall):
            self.sorts = [call.params]
            self.view_scopes["sort"] = _scope_ids(call.params.scope, selection)
            p = call.params
            return self._turn(f"{reply} 並び替え: {p.column_id} ({p.direction})".strip(), analysis=analysis)
        if isinstance(call, (EnrichCall, GenerateCall)):
            self.pending = PendingAction(call=call, summary=self._summarize(call, selection), selection=selection, reply=reply)
            return self._turn(
                f"{reply}\n\nAgentツール候補: {self.pending.summary}\n"
                "実行してよい場合は「yes / はい」と回答してください。".strip(),
                analysis=analysis,
            )
        result = await dispatch(analysis, self.table, selection, mode=self.mode)
        return self._turn(result.reply, analysis=analysis, result=result)

    @staticmethod
    def _summarize(call: Union[EnrichCall, GenerateCall], selection: Optional[Selection]) -> str:
        if isinstance(call, GenerateCall):
            cols = len(call.params.target_column_ids)
            return f"{call.params.count} 件の企業データを生成し、{cols} カラムをエンリッチします"
        selected = len(selection.selected_row_ids) if selection else 0
        scope = f"選択された {selected} 行" if call.params.scope == "selected" and selected else "全行"
        return f"{scope} × {len(call.params.target_column_ids)} カラムをエンリッチします"
