"""API routes for test status.

Endpoints:
  GET  /api/status               title, counts, collections and tests
  GET  /api/tests                every test, listing order
  GET  /api/tests/{id}           test detail + recent errors
  POST /api/tests/{id}/trigger   trigger a test immediately
  POST /api/tests/trigger        trigger every test and wait
  GET  /api/events/stream        SSE stream of lifecycle events
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import StreamingResponse

from ..health.engine import Test, error_message
from ..health.events import LifecycleEvent
from ..health.scheduler import Server
from ..health.view import StatusView

logger = logging.getLogger(__name__)

status_router = APIRouter()

EventQueues = list[asyncio.Queue[dict[str, Any]]]


# ── SSE fan-out ──────────────────────────────────────────────────────────────


def broadcast_event(
    queues: EventQueues,
    event: LifecycleEvent,
    test: Test,
    error: BaseException | None = None,
) -> None:
    """Push a lifecycle event to all SSE subscribers."""
    data = {
        "event": event.value,
        "test_id": test.id,
        "name": test.name,
        "collection": test.collection.name if test.collection else None,
        "status": test.status.shortcode,
        "error": error_message(error),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    for q in queues:
        try:
            q.put_nowait(data)
        except asyncio.QueueFull:
            pass  # slow consumer, drop


def attach_event_stream(server: Server, queues: EventQueues) -> None:
    server.on(LifecycleEvent.PASS, lambda test: broadcast_event(queues, LifecycleEvent.PASS, test))
    server.on(LifecycleEvent.RECOVER, lambda test: broadcast_event(queues, LifecycleEvent.RECOVER, test))
    server.on(LifecycleEvent.WARN, lambda err, test: broadcast_event(queues, LifecycleEvent.WARN, test, err))
    server.on(LifecycleEvent.ERROR, lambda err, test: broadcast_event(queues, LifecycleEvent.ERROR, test, err))


def _view(request: Request) -> StatusView:
    return request.app.state.view


def _get_test(view: StatusView, test_id: int) -> Test:
    test = view.find_test_by_id(test_id)
    if test is None:
        raise HTTPException(status_code=404, detail=f"Test not found: {test_id}")
    return test


# ── Status endpoints ─────────────────────────────────────────────────────────


@status_router.get("/status")
def status_summary(request: Request) -> dict[str, Any]:
    """Overall status grouped by collection."""
    return _view(request).summary()


@status_router.get("/tests")
def list_tests(request: Request) -> dict[str, Any]:
    view = _view(request)
    return {"tests": [view.describe(t) for t in view.list_all_tests()]}


@status_router.post("/tests/trigger")
async def trigger_all(request: Request) -> dict[str, Any]:
    """Trigger every test now and wait for the outcomes."""
    server: Server = request.app.state.server
    view = _view(request)
    tests = await server.run_all_now()
    return {"tests": [view.describe(t) for t in tests]}


@status_router.get("/tests/{test_id}")
def get_test(test_id: int, request: Request) -> dict[str, Any]:
    view = _view(request)
    return view.describe(_get_test(view, test_id), detail=True)


@status_router.post("/tests/{test_id}/trigger")
async def trigger_one(test_id: int, request: Request) -> dict[str, Any]:
    """Trigger a single test immediately; async probes finish in the background."""
    server: Server = request.app.state.server
    view = _view(request)
    test = _get_test(view, test_id)

    cycle = server.trigger_test(test)
    return {
        "triggered": cycle is not None,
        "settled": bool(cycle and cycle.settled),
        "test": view.describe(test, detail=True),
    }


# ── SSE stream ───────────────────────────────────────────────────────────────


@status_router.get("/events/stream")
async def event_stream(request: Request) -> StreamingResponse:
    """Server-Sent Events stream of lifecycle events."""
    queues: EventQueues = request.app.state.event_queues
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=50)
    queues.append(queue)

    async def event_generator():
        try:
            view = _view(request)
            yield f"event: init\ndata: {json.dumps(view.summary())}\n\n"

            while True:
                if await request.is_disconnected():
                    break

                try:
                    data = await asyncio.wait_for(queue.get(), timeout=30)
                    yield f"event: {data['event']}\ndata: {json.dumps(data)}\n\n"
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
        finally:
            queues.remove(queue)

    return StreamingResponse(
        event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )
