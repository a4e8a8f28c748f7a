"""
Batch runner for enrich / generate over many rows.

Rows are processed one at a time by default; ``concurrency`` > 1 runs a small
bounded pool. Either way the ``completed`` counter only moves forward, one
row's failure never stops its siblings, and each merge yields a new Table so
every intermediate snapshot is consistent. Cancellation is cooperative and
checked between rows and between field calls; merged rows are kept.
"""
from __future__ import annotations

import asyncio
import logging
import re
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from tablecrm.company_key import find_company_key_column
from tablecrm.enrichment import EnrichmentPipeline, ProgressCallback, is_status_column, notify
from tablecrm.errors import ValidationError
from tablecrm.gateway import GenerateOptions, GenerativeGateway
from tablecrm.models import BatchProgress, ColumnDefinition, Row, Scope, Selection, Table, cell_text, is_blank
from tablecrm.record_store import RecordStore, new_id
from tablecrm.run_log import record_run
from tablecrm.settings import BATCH_CONCURRENCY, DEFAULT_GENERATE_QUERY, GENERATE_MAX_COUNT
from tablecrm.table_ops import scoped_rows

log = logging.getLogger("batch")

BatchProgressCallback = Callable[[BatchProgress], Any]

_LIST_MARKER_RE = re.compile(r"^\s*(?:[-*•・]|\d+\s*[.)、．:]|\(\d+\))\s*")


class CancelToken:
    """Cooperative cancellation flag; callable so it can be passed as a check."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def __call__(self) -> bool:
        return self._event.is_set()


@dataclass
class BatchOutcome:
    table: Table
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    cancelled: bool = False
    refused: Optional[str] = None
    created_row_ids: List[str] = field(default_factory=list)

    @property
    def completed(self) -> int:
        return self.successful + self.failed

    def summary(self) -> Dict[str, Any]:
        return {
            "table_id": self.table.id,
            "total": self.total,
            "completed": self.completed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "cancelled": self.cancelled,
            "refused": self.refused,
            "created_row_ids": list(self.created_row_ids),
        }


def resolve_target_columns(
    table: Table, column_ids: Optional[Sequence[str]], key_column: ColumnDefinition
) -> List[ColumnDefinition]:
    """Target columns in display order; the key column and status columns are never written."""
    wanted = set(column_ids) if column_ids else None
    out = []
    for col in table.ordered_columns():
        if col.id == key_column.id or is_status_column(col):
            continue
        if wanted is None or col.id in wanted:
            out.append(col)
    return out


def parse_company_names(text: str, count: int) -> List[str]:
    names: List[str] = []
    for line in (text or "").splitlines():
        name = _LIST_MARKER_RE.sub("", line).strip().strip('"').strip()
        if name and name not in names:
            names.append(name)
    return names[:count]


async def identify_companies(gateway: GenerativeGateway, query: str, count: int) -> List[str]:
    """Up to ``count`` company names for a description; placeholders if the call fails."""
    prompt = (
        f'List exactly {count} Japanese companies that match the description: "{query}".\n'
        "Return ONLY a list of company names separated by newlines. "
        "Do not add numbering or bullet points.\n"
        "Example:\nCompany A\nCompany B\nCompany C"
    )
    try:
        resp = await gateway.generate(prompt, GenerateOptions(web_search=True, search_query=query))
    except Exception as e:
        log.warning("identify companies failed, using placeholders: %s", e)
        return [f"Unidentified Company {i + 1}" for i in range(count)]
    return parse_company_names(resp.text, count)


class _Run:
    """Shared tally for one batch; all mutation happens under ``lock``."""

    def __init__(
        self,
        table: Table,
        total: int,
        on_progress: Optional[BatchProgressCallback],
        prior_errors: Sequence[str] = (),
    ):
        self.table = table
        self.total = total + len(prior_errors)
        self.completed = len(prior_errors)
        self.successful = 0
        self.failed = len(prior_errors)
        self.errors: List[str] = list(prior_errors)
        self.lock = asyncio.Lock()
        self.on_progress = on_progress

    async def report(self, current_item: Optional[str] = None) -> None:
        await notify(
            self.on_progress,
            BatchProgress(
                total=self.total,
                completed=self.completed,
                successful=self.successful,
                failed=self.failed,
                current_item=current_item,
            ),
        )


async def _enrich_batch(
    pipeline: EnrichmentPipeline,
    table: Table,
    rows: Sequence[Row],
    key_column: ColumnDefinition,
    targets: Sequence[ColumnDefinition],
    *,
    org_context: Optional[str],
    store: Optional[RecordStore],
    on_progress: Optional[BatchProgressCallback],
    on_field_progress: Optional[ProgressCallback],
    cancel: Optional[CancelToken],
    concurrency: int,
    prior_errors: Sequence[str] = (),
) -> tuple[_Run, bool]:
    run = _Run(table, len(rows), on_progress, prior_errors)
    await run.report()

    async def handle(row: Row) -> None:
        if cancel is not None and cancel.cancelled:
            return
        row_id = str(row.get("id"))
        entity = cell_text(row, key_column.id).strip()
        error: Optional[str] = None
        values: Dict[str, Any] = {}
        try:
            values = await pipeline.enrich_entity(
                entity,
                targets,
                row_id=row_id,
                org_context=org_context,
                on_progress=on_field_progress,
                cancelled=cancel,
            )
        except Exception as e:
            log.warning("row %s (%s) failed: %s", row_id, entity, e, exc_info=True)
            error = str(e) or type(e).__name__
        async with run.lock:
            if values:
                current = run.table.row(row_id) or row
                run.table = run.table.replace_row({**current, **values})
                if store is not None:
                    try:
                        await asyncio.to_thread(store.update_row, row_id, values)
                    except Exception as e:
                        log.warning("write-back failed row=%s: %s", row_id, e)
                        error = f"write-back failed: {e}"
            run.completed += 1
            if error is None:
                run.successful += 1
            else:
                run.failed += 1
                run.errors.append(f"{entity}: {error}")
            await run.report(entity)

    if concurrency <= 1:
        for row in rows:
            if cancel is not None and cancel.cancelled:
                break
            await handle(row)
    else:
        sem = asyncio.Semaphore(concurrency)

        async def bounded(row: Row) -> None:
            async with sem:
                await handle(row)

        await asyncio.gather(*(bounded(r) for r in rows))

    cancelled = bool(cancel is not None and cancel.cancelled and run.completed < run.total)
    if cancelled:
        log.info("batch cancelled after %s/%s rows", run.completed, run.total)
        await run.report()
    return run, cancelled


async def _report_empty(on_progress: Optional[BatchProgressCallback], failed: int = 0) -> None:
    """Start and end progress for a batch that has no rows to work on."""
    await notify(on_progress, BatchProgress(total=failed, completed=failed, successful=0, failed=failed))


def _finish(kind: str, outcome: BatchOutcome, started: float) -> BatchOutcome:
    data = outcome.summary()
    data["duration_s"] = round(time.perf_counter() - started, 3)
    record_run(kind, data)
    log.info(
        "%s done table=%s total=%s ok=%s failed=%s skipped=%s cancelled=%s",
        kind, outcome.table.id, outcome.total, outcome.successful, outcome.failed,
        outcome.skipped, outcome.cancelled,
    )
    return outcome


async def enrich_rows(
    pipeline: EnrichmentPipeline,
    table: Table,
    target_column_ids: Optional[Sequence[str]],
    *,
    scope: Scope = "selected",
    selection: Optional[Selection] = None,
    org_context: Optional[str] = None,
    store: Optional[RecordStore] = None,
    on_progress: Optional[BatchProgressCallback] = None,
    on_field_progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    concurrency: int = BATCH_CONCURRENCY,
) -> BatchOutcome:
    """Enrich the rows in scope; rows with a blank company key are skipped."""
    started = time.perf_counter()
    key_column = find_company_key_column(table.columns)
    if key_column is None:
        log.warning("enrich refused for table %s: no company key column", table.id)
        await _report_empty(on_progress)
        return BatchOutcome(table=table, refused="no company key column")
    targets = resolve_target_columns(table, target_column_ids, key_column)
    if not targets:
        log.warning("enrich refused for table %s: no target columns", table.id)
        await _report_empty(on_progress)
        return BatchOutcome(table=table, refused="no target columns")
    pipeline.ensure_ready()

    rows = scoped_rows(table, scope, selection)
    eligible = [r for r in rows if not is_blank(r.get(key_column.id))]
    skipped = len(rows) - len(eligible)
    if skipped:
        log.info("skipping %s rows with a blank %s", skipped, key_column.name)

    run, cancelled = await _enrich_batch(
        pipeline, table, eligible, key_column, targets,
        org_context=org_context, store=store, on_progress=on_progress,
        on_field_progress=on_field_progress, cancel=cancel,
        concurrency=max(1, min(5, concurrency)),
    )
    outcome = BatchOutcome(
        table=run.table,
        total=run.total,
        successful=run.successful,
        failed=run.failed,
        skipped=skipped,
        errors=run.errors,
        cancelled=cancelled,
    )
    return _finish("enrich", outcome, started)


async def generate_rows(
    pipeline: EnrichmentPipeline,
    table: Table,
    count: int,
    *,
    prompt: Optional[str] = None,
    target_column_ids: Optional[Sequence[str]] = None,
    org_context: Optional[str] = None,
    store: Optional[RecordStore] = None,
    on_progress: Optional[BatchProgressCallback] = None,
    on_field_progress: Optional[ProgressCallback] = None,
    cancel: Optional[CancelToken] = None,
    concurrency: int = BATCH_CONCURRENCY,
) -> BatchOutcome:
    """Append ``count`` new company rows, then enrich them like enrich_rows."""
    if count < 1:
        raise ValidationError("count must be at least 1")
    if count > GENERATE_MAX_COUNT:
        raise ValidationError(f"count must be at most {GENERATE_MAX_COUNT}")
    started = time.perf_counter()
    key_column = find_company_key_column(table.columns)
    if key_column is None:
        log.warning("generate refused for table %s: no company key column", table.id)
        await _report_empty(on_progress)
        return BatchOutcome(table=table, refused="no company key column")
    pipeline.ensure_ready()

    query = (prompt or "").strip() or DEFAULT_GENERATE_QUERY
    names = await identify_companies(pipeline.gateway, query, count)
    if not names:
        log.info("no company names returned for %r", query)
        await _report_empty(on_progress)
        return _finish("generate", BatchOutcome(table=table), started)

    new_rows: List[Row] = []
    create_errors: List[str] = []
    for name in names:
        blank = {c.id: "" for c in table.columns}
        blank[key_column.id] = name
        if store is None:
            new_rows.append({**blank, "id": new_id()})
            continue
        try:
            new_rows.append(await asyncio.to_thread(store.create_row, table.id, blank))
        except Exception as e:
            log.warning("create row failed for %s: %s", name, e, exc_info=True)
            create_errors.append(f"{name}: create failed: {e}")
    table = table.append_rows(new_rows)

    targets = resolve_target_columns(table, target_column_ids, key_column)
    created = [str(r["id"]) for r in new_rows]
    if not targets or not new_rows:
        await _report_empty(on_progress, failed=len(create_errors))
        outcome = BatchOutcome(
            table=table,
            total=len(create_errors),
            failed=len(create_errors),
            errors=create_errors,
            created_row_ids=created,
        )
        return _finish("generate", outcome, started)

    run, cancelled = await _enrich_batch(
        pipeline, table, new_rows, key_column, targets,
        org_context=org_context, store=store, on_progress=on_progress,
        on_field_progress=on_field_progress, cancel=cancel,
        concurrency=max(1, min(5, concurrency)),
        prior_errors=create_errors,
    )
    outcome = BatchOutcome(
        table=run.table,
        total=run.total,
        successful=run.successful,
        failed=run.failed,
        errors=run.errors,
        cancelled=cancelled,
        created_row_ids=created,
    )
    return _finish("generate", outcome, started)
