from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Request
from sse_starlette.sse import EventSourceResponse

from app.models import ChangeEvent
from app.routes._deps import subject_from_request
from app.session_gateway import SessionGateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["stream"])

CHANGE_EVENT_NAME = "complaint.changed"


async def gateway_event_stream(
    gateway: SessionGateway,
    *,
    keepalive_s: float = 15.0,
) -> AsyncIterator[dict[str, str]]:
    """Relay a gateway's events as SSE messages until the gateway or client goes away.

    The gateway delivers on its own thread; events hop onto the event loop
    through a bounded queue that drops its oldest entry when full.
    """
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue[ChangeEvent] = asyncio.Queue(maxsize=gateway.subscription.capacity)

    def _push(event: ChangeEvent) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(event)

    def _sink(event: ChangeEvent) -> None:
        loop.call_soon_threadsafe(_push, event)

    gateway.start(_sink)
    logger.info("stream_opened subscriber_id=%s subject_id=%s", gateway.subscriber_id, gateway.subject.id)
    try:
        while not gateway.closed:
            try:
                event = await asyncio.wait_for(queue.get(), timeout=keepalive_s)
            except asyncio.TimeoutError:
                yield {"comment": "keepalive"}
                continue
            yield {
                "event": CHANGE_EVENT_NAME,
                "id": event.event_id,
                "data": json.dumps(event.as_dict(), ensure_ascii=True),
            }
    finally:
        closing = loop.run_in_executor(None, gateway.close)
        logger.info("stream_closed subscriber_id=%s delivered=%s", gateway.subscriber_id, gateway.stats.delivered)
        await closing


@router.get("/complaints/stream")
async def stream_complaint_changes(request: Request) -> EventSourceResponse:
    """Live change feed for the caller: every complaint for reviewers, own complaints for submitters.

    No backlog is replayed; clients re-fetch ``GET /complaints`` after
    reconnecting and apply subsequent events as upserts by complaint id.
    """
    subject = subject_from_request(request)
    gateway = SessionGateway.attach(request.app.state.feed, subject)
    return EventSourceResponse(
        gateway_event_stream(gateway, keepalive_s=request.app.state.stream_keepalive_s),
        headers={
            "X-Accel-Buffering": "no",
            "Cache-Control": "no-cache",
        },
    )
