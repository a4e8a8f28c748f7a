"""
Background run registry for enrich / generate / bulk-send.

A run is an asyncio task plus a record the API can poll. Only one run may
hold a given table at a time; a second request for the same table is turned
away with TableBusy (409 at the HTTP layer). Progress goes to the record and,
as SSE events, to the event bus under the run id.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from app import event_bus
from tablecrm.batch import CancelToken
from tablecrm.models import BatchProgress, EnrichmentProgress
from tablecrm.settings import RUN_MAX_FINISHED, RUN_RETENTION_S

log = logging.getLogger("runs")


class TableBusy(Exception):
    def __init__(self, table_id: str):
        super().__init__(f"table {table_id} already has a run in progress")
        self.table_id = table_id


@dataclass
class RunRecord:
    id: str
    kind: str
    table_id: Optional[str]
    exclusive: bool = True
    status: str = "running"
    progress: Optional[Dict[str, Any]] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    cancel: CancelToken = field(default_factory=CancelToken)
    started_at: float = field(default_factory=time.time)
    finished_at: Optional[float] = None

    async def on_progress(self, p: BatchProgress) -> None:
        self.progress = p.model_dump()
        await event_bus.emit(self.id, "progress", self.progress)

    async def on_field_progress(self, p: EnrichmentProgress) -> None:
        await event_bus.emit(self.id, "field", p.model_dump(mode="json"))

    def snapshot(self) -> Dict[str, Any]:
        return {
            "run_id": self.id,
            "kind": self.kind,
            "table_id": self.table_id,
            "status": self.status,
            "progress": self.progress,
            "result": self.result,
            "error": self.error,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


Work = Callable[[RunRecord], Awaitable[Dict[str, Any]]]


class RunRegistry:
    def __init__(self, *, retention_s: float = RUN_RETENTION_S, max_finished: int = RUN_MAX_FINISHED) -> None:
        self.retention_s = retention_s
        self.max_finished = max(0, max_finished)
        self._runs: Dict[str, RunRecord] = {}
        self._busy: Set[str] = set()
        self._tasks: Dict[str, asyncio.Task] = {}

    def get(self, run_id: str) -> Optional[RunRecord]:
        self.prune()
        return self._runs.get(run_id)

    def prune(self, now: Optional[float] = None) -> int:
        """Forget finished runs past the retention window, then the oldest beyond the cap."""
        now = time.time() if now is None else now
        finished = sorted(
            (r for r in self._runs.values() if r.finished_at is not None), key=lambda r: r.finished_at
        )
        expired = [r for r in finished if now - r.finished_at > self.retention_s]
        kept = [r for r in finished if r not in expired]
        if len(kept) > self.max_finished:
            expired += kept[: len(kept) - self.max_finished]
        for r in expired:
            self._runs.pop(r.id, None)
            event_bus.discard(r.id)
        if expired:
            log.info("pruned %s finished runs", len(expired))
        return len(expired)

    def is_busy(self, table_id: str) -> bool:
        return table_id in self._busy

    def _claim(self, table_id: Optional[str]) -> None:
        if table_id is None:
            return
        if table_id in self._busy:
            raise TableBusy(table_id)
        self._busy.add(table_id)

    @asynccontextmanager
    async def hold(self, table_id: str):
        """Hold a table for work done inline in a request (chat confirmations)."""
        self._claim(table_id)
        try:
            yield
        finally:
            self._busy.discard(table_id)

    def start(
        self, kind: str, table_id: Optional[str], work: Work, *, exclusive: bool = True
    ) -> RunRecord:
        """Spawn ``work`` as a task. Exclusive runs hold their table until they finish."""
        if exclusive:
            self._claim(table_id)
        self.prune()
        rec = RunRecord(
            id=f"run-{uuid.uuid4().hex[:12]}", kind=kind, table_id=table_id, exclusive=exclusive
        )
        self._runs[rec.id] = rec
        self._tasks[rec.id] = asyncio.create_task(self._drive(rec, work))
        log.info("run started id=%s kind=%s table=%s", rec.id, kind, table_id)
        return rec

    async def _drive(self, rec: RunRecord, work: Work) -> None:
        try:
            rec.result = await work(rec)
            rec.status = "cancelled" if rec.cancel.cancelled else "completed"
            await event_bus.emit(rec.id, "done", {"status": rec.status, "result": rec.result})
        except Exception as e:
            log.exception("run failed id=%s kind=%s", rec.id, rec.kind)
            rec.status = "failed"
            rec.error = str(e) or type(e).__name__
            await event_bus.emit(rec.id, "error", {"error": rec.error})
        finally:
            rec.finished_at = time.time()
            if rec.exclusive and rec.table_id is not None:
                self._busy.discard(rec.table_id)
            self._tasks.pop(rec.id, None)
            await event_bus.close(rec.id)
            if not event_bus.has_subscribers(rec.id):
                event_bus.discard(rec.id)
            log.info("run finished id=%s status=%s", rec.id, rec.status)

    def cancel(self, run_id: str) -> Optional[RunRecord]:
        rec = self._runs.get(run_id)
        if rec is None:
            return None
        if rec.status == "running":
            rec.cancel.cancel()
            log.info("cancel requested id=%s", run_id)
        return rec

    async def wait(self, run_id: str) -> Optional[RunRecord]:
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return self._runs.get(run_id)
