import asyncio
import json
import logging
import os
from contextlib import aclosing

from fastapi import APIRouter, Depends, HTTPException, Path, Request
from fastapi.responses import StreamingResponse

from app import event_bus
from app.deps import get_registry
from app.runs import RunRecord, RunRegistry

router = APIRouter(prefix="/runs", tags=["runs"])
log = logging.getLogger("api.runs")


def _require_run(registry: RunRegistry, run_id: str) -> RunRecord:
    rec = registry.get(run_id)
    if rec is None:
        raise HTTPException(status_code=404, detail="run not found")
    return rec


@router.get("/{run_id}")
async def get_run(run_id: str = Path(..., min_length=1), registry: RunRegistry = Depends(get_registry)):
    return _require_run(registry, run_id).snapshot()


@router.post("/{run_id}/cancel")
async def cancel_run(run_id: str = Path(..., min_length=1), registry: RunRegistry = Depends(get_registry)):
    """Request cooperative cancellation; rows already merged are kept."""
    registry.cancel(run_id)
    return _require_run(registry, run_id).snapshot()


@router.get("/{run_id}/events")
async def stream_run(
    request: Request,
    run_id: str = Path(..., min_length=1),
    registry: RunRegistry = Depends(get_registry),
):
    """SSE stream of progress / field / done events for a run.

    A run that already finished streams its final snapshot and ends.
    """
    rec = _require_run(registry, run_id)
    try:
        hb = float(os.getenv("SSE_HEARTBEAT_INTERVAL_S", "15") or 15.0)
    except ValueError:
        hb = 15.0

    def _release():
        if rec.status != "running" and not event_bus.has_subscribers(run_id):
            event_bus.discard(run_id)

    async def _final():
        _release()
        data = json.dumps(rec.snapshot(), ensure_ascii=False, default=str)
        yield f"event: snapshot\ndata: {data}\n\n".encode("utf-8")
        yield b"event: end\ndata: {}\n\n"

    async def _gen():
        # The run may have ended before the response started streaming
        if rec.status != "running":
            async for chunk in _final():
                yield chunk
            return
        try:
            async with aclosing(event_bus.subscribe(run_id, heartbeat_s=hb)) as stream:
                async for chunk in stream:
                    if await request.is_disconnected():
                        break
                    yield chunk
                    await asyncio.sleep(0)
        finally:
            _release()

    return StreamingResponse(_gen(), media_type="text/event-stream")
