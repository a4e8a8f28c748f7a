"""Tool dispatcher: runs one classified tool call against a table.

filter / sort / calculate_* return read-only results; enrich and
generate_data return a new Table through the batch runner. Mutation tools
are refused outside agent mode even if the classifier let one through.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from tablecrm.batch import (
    BatchOutcome,
    BatchProgressCallback,
    CancelToken,
    enrich_rows,
    generate_rows,
)
from tablecrm.enrichment import EnrichmentPipeline, ProgressCallback
from tablecrm.errors import ConfigurationError
from tablecrm.intent import CHAT_MODE_REFUSAL, normalize_result
from tablecrm.models import (
    AggregateCall,
    AnalyzeChatResult,
    ChatMode,
    EnrichCall,
    FilterCall,
    GenerateCall,
    Row,
    Selection,
    SortCall,
    Table,
)
from tablecrm.record_store import RecordStore
from tablecrm.table_ops import aggregate, apply_filter, scoped_rows, sort_rows

log = logging.getLogger("dispatcher")

AGGREGATE_LABELS = {"max": "最大値", "min": "最小値", "mean": "平均値"}
NO_NUMERIC_DATA = "指定されたカラムから数値を取得できませんでした。"


@dataclass
class NoOpResult:
    reply: str
    kind: str = "none"


@dataclass
class ViewResult:
    """Filtered or sorted rows; the table itself is unchanged."""

    kind: str
    rows: List[Row]
    reply: str
    params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class AggregateResult:
    operation: str
    column_id: str
    value: Optional[float]
    reply: str
    kind: str = "aggregate"


@dataclass
class TableResult:
    outcome: BatchOutcome
    reply: str
    kind: str = "table"

    @property
    def table(self) -> Table:
        return self.outcome.table


DispatchResult = Union[NoOpResult, ViewResult, AggregateResult, TableResult]


def format_number(value: float) -> str:
    if float(value).is_integer():
        return f"{int(value):,}"
    return f"{value:,.2f}"


def _join(reply: str, extra: str) -> str:
    return f"{reply}\n\n{extra}".strip() if reply else extra


def _aggregate_reply(reply: str, operation: str, value: Optional[float]) -> str:
    if value is None:
        return _join(reply, NO_NUMERIC_DATA)
    return _join(reply, f"{AGGREGATE_LABELS[operation]}: {format_number(value)}")


def _batch_reply(reply: str, outcome: BatchOutcome, verb: str) -> str:
    if outcome.refused:
        return _join(reply, f"{verb}を実行できませんでした: {outcome.refused}")
    summary = f"{verb}: {outcome.successful}/{outcome.total} 行成功"
    if outcome.failed:
        summary += f"、{outcome.failed} 行失敗"
    if outcome.skipped:
        summary += f"、{outcome.skipped} 行スキップ (キーが空)"
    if outcome.cancelled:
        summary += " (キャンセルされました)"
    return _join(reply, summary)


async def dispatch(
    result: Union[AnalyzeChatResult, Dict[str, Any]],
    table: Table,
    selection: Optional[Selection] = None,
    *,
    mode: ChatMode = "agent",
    pipeline: Optional[EnrichmentPipeline] = None,
    org_context: Optional[str] = None,
    store: Optional[RecordStore] = None,
    on_progress: Optional[BatchProgressCallback] = None,
    on_field_progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
) -> DispatchResult:
    if not isinstance(result, AnalyzeChatResult):
        result = normalize_result(result, mode)
    call = result.call
    reply = result.reply or ""

    if result.is_mutation and mode != "agent":
        log.info("refusing %s in %s mode", call.tool, mode)
        return NoOpResult(reply=_join(reply, CHAT_MODE_REFUSAL))

    if isinstance(call, FilterCall):
        rows = apply_filter(scoped_rows(table, call.params.scope, selection), call.params)
        return ViewResult("filter", rows, reply, call.params.model_dump())
    if isinstance(call, SortCall):
        rows = sort_rows(scoped_rows(table, call.params.scope, selection), call.params)
        return ViewResult("sort", rows, reply, call.params.model_dump())
    if isinstance(call, AggregateCall):
        p = call.params
        value = aggregate(scoped_rows(table, p.scope, selection), p)
        return AggregateResult(p.operation, p.column_id, value, _aggregate_reply(reply, p.operation, value))

    if isinstance(call, (EnrichCall, GenerateCall)) and pipeline is None:
        raise ConfigurationError("enrichment pipeline is not configured")
    if isinstance(call, EnrichCall):
        outcome = await enrich_rows(
            pipeline,  # type: ignore[arg-type]
            table,
            call.params.target_column_ids,
            scope=call.params.scope,
            selection=selection,
            org_context=org_context,
            store=store,
            on_progress=on_progress,
            on_field_progress=on_field_progress,
            cancel=cancel,
        )
        return TableResult(outcome, _batch_reply(reply, outcome, "エンリッチ"))
    if isinstance(call, GenerateCall):
        outcome = await generate_rows(
            pipeline,  # type: ignore[arg-type]
            table,
            call.params.count,
            prompt=call.params.prompt,
            target_column_ids=call.params.target_column_ids or None,
            org_context=org_context,
            store=store,
            on_progress=on_progress,
            on_field_progress=on_field_progress,
            cancel=cancel,
        )
        return TableResult(outcome, _batch_reply(reply, outcome, "データ生成"))

    return NoOpResult(reply=reply)
