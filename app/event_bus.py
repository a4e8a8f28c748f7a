from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncGenerator, Dict, Optional

# In-proc event bus for batch-run progress streaming (SSE).
# - One bounded asyncio.Queue per run id buffers SSE-framed strings.
# - close(run_id) pushes a terminal marker; subscribers stop after it.
# - A queue lives until its last subscriber leaves, or until the run ends when
#   nobody is listening.

log = logging.getLogger("event_bus")

_runs: Dict[str, asyncio.Queue[Optional[str]]] = {}
_subscribers: Dict[str, int] = {}
_QUEUE_SIZE = 500


def _queue_for(run_id: str) -> asyncio.Queue[Optional[str]]:
    q = _runs.get(run_id)
    if q is None:
        q = asyncio.Queue(maxsize=_QUEUE_SIZE)
        _runs[run_id] = q
    return q


def _frame(label: str, data: Any) -> str:
    try:
        payload = data if isinstance(data, str) else json.dumps(data or {}, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        payload = json.dumps({"message": str(data)})
    return f"event: {label}\ndata: {payload}\n\n"


def _put(q: asyncio.Queue[Optional[str]], item: Optional[str]) -> None:
    # Drop oldest if full so a slow client never blocks the batch
    if q.full():
        try:
            q.get_nowait()
        except asyncio.QueueEmpty:
            pass
    q.put_nowait(item)


async def emit(run_id: str, label: str, data: Any = None) -> None:
    if not run_id:
        return
    _put(_queue_for(run_id), _frame(label, data))


async def close(run_id: str) -> None:
    """Mark the end of a run's stream."""
    _put(_queue_for(run_id), None)


def discard(run_id: str) -> None:
    _runs.pop(run_id, None)


def has_subscribers(run_id: str) -> bool:
    return _subscribers.get(run_id, 0) > 0


async def subscribe(run_id: str, *, heartbeat_s: float = 15.0) -> AsyncGenerator[bytes, None]:
    """Yield SSE chunks for a run until it closes or the client disconnects."""
    q = _queue_for(run_id)
    _subscribers[run_id] = _subscribers.get(run_id, 0) + 1
    try:
        yield b":ok\n\n"
        while True:
            try:
                msg = await asyncio.wait_for(q.get(), timeout=heartbeat_s)
            except asyncio.TimeoutError:
                yield b": keepalive\n\n"
                continue
            if msg is None:
                yield b"event: end\ndata: {}\n\n"
                break
            yield msg.encode("utf-8")
    except asyncio.CancelledError:
        log.info("subscriber left run=%s", run_id)
        raise
    finally:
        left = _subscribers.get(run_id, 1) - 1
        if left > 0:
            _subscribers[run_id] = left
        else:
            _subscribers.pop(run_id, None)
