import asyncio

import pytest

from app import event_bus
from app.runs import RunRegistry
from app.sessions import SessionCache


async def _quick(rec):
    return {"ok": True}


@pytest.mark.asyncio
async def test_finished_run_without_listeners_drops_its_queue():
    registry = RunRegistry()
    rec = registry.start("enrich", "t-q", _quick)
    await registry.wait(rec.id)
    assert rec.status == "completed"
    assert rec.id not in event_bus._runs
    assert registry.get(rec.id) is rec


@pytest.mark.asyncio
async def test_listener_still_gets_the_end_of_the_stream():
    registry = RunRegistry()
    gate = asyncio.Event()

    async def work(rec):
        await gate.wait()
        return {}

    rec = registry.start("enrich", "t-l", work)
    stream = event_bus.subscribe(rec.id, heartbeat_s=5)
    assert await stream.__anext__() == b":ok\n\n"
    gate.set()
    await registry.wait(rec.id)

    chunks = [chunk async for chunk in stream]
    assert chunks[-1].startswith(b"event: end")
    assert not event_bus.has_subscribers(rec.id)
    event_bus.discard(rec.id)


@pytest.mark.asyncio
async def test_prune_by_age_and_by_count():
    registry = RunRegistry(retention_s=60, max_finished=2)
    recs = []
    for i in range(3):
        rec = registry.start("bulk_send", f"t{i}", _quick, exclusive=False)
        await registry.wait(rec.id)
        recs.append(rec)
    # the cap keeps the two most recent finished runs
    assert registry.get(recs[0].id) is None
    assert registry.get(recs[2].id) is recs[2]

    assert registry.prune(now=recs[2].finished_at + 61) == 2
    assert registry.get(recs[2].id) is None


def test_session_cache_drops_idle_and_least_recent():
    cache = SessionCache(idle_ttl_s=10, max_size=2)
    a, b, c = object(), object(), object()
    cache.put(("t", "a"), a, now=0)
    cache.put(("t", "b"), b, now=1)
    assert cache.get(("t", "a"), now=2) is a
    cache.put(("t", "c"), c, now=3)
    # "b" was least recently used
    assert cache.get(("t", "b"), now=3) is None
    assert len(cache) == 2

    assert cache.get(("t", "c"), now=20) is None
    assert len(cache) == 0
