from __future__ import annotations

import asyncio

from fastapi import APIRouter, Request
from starlette.responses import StreamingResponse

from normalize.alert import utc_now_iso
from realtime.bus import Event, EventBus


router = APIRouter()

HEARTBEAT_SECONDS = 15


@router.get("/sse")
async def sse(request: Request) -> StreamingResponse:
    bus: EventBus = request.app.state.bus

    async def event_stream():
        async with bus.subscription() as queue:
            yield Event("heartbeat", {"ts": utc_now_iso()}).encode()
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=HEARTBEAT_SECONDS)
                except TimeoutError:
                    yield Event("heartbeat", {"ts": utc_now_iso()}).encode()
                    continue
                yield event.encode()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
