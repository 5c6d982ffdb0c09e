import asyncio
import json
import logging
from typing import Any, Dict, Set

import anyio
from fastapi import APIRouter
from sse_starlette.sse import EventSourceResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["realtime"])

MEMBER_JOINED = "MEMBER_JOINED"
ACTIVITY_LOGGED = "ACTIVITY_LOGGED"
PAYMENT_UPDATED = "PAYMENT_UPDATED"

_subscribers: Set[asyncio.Queue] = set()


async def broadcast(event_type: str, payload: Dict[str, Any]) -> None:
    dead = []
    for q in _subscribers:
        try:
            q.put_nowait({"event": event_type, "data": payload})
        except asyncio.QueueFull:
            dead.append(q)

    for q in dead:
        _subscribers.discard(q)


def publish(event_type: str, payload: Dict[str, Any]) -> None:
    """Broadcast from a sync endpoint (runs in the threadpool)."""
    try:
        anyio.from_thread.run(broadcast, event_type, payload)
    except RuntimeError:
        # fuera de un worker thread de anyio (scripts, tests de servicios)
        logger.debug("no event loop, %s not broadcast", event_type)


@router.get("/events")
async def sse_events():
    queue: asyncio.Queue = asyncio.Queue(maxsize=100)
    _subscribers.add(queue)

    async def generator():
        try:
            while True:
                msg = await queue.get()
                yield {
                    "event": msg["event"],
                    "data": json.dumps(msg["data"], ensure_ascii=False),
                }
        except asyncio.CancelledError:
            pass
        finally:
            _subscribers.discard(queue)

    return EventSourceResponse(generator())
