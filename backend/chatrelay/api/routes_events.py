"""
Events API Routes

Server-Sent Events stream of push notifications: new log entries, OAuth
progress and proxy status changes.
"""
import asyncio
import json

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from chatrelay.core.runtime import Runtime, get_runtime

router = APIRouter()

KEEPALIVE_SECONDS = 15


def format_event(message: dict) -> str:
    return f"event: {message['event']}\ndata: {json.dumps(message['data'])}\n\n"


@router.get("/")
async def stream_events(request: Request, runtime: Runtime = Depends(get_runtime)):
    queue = runtime.events.subscribe()

    async def event_stream():
        try:
            yield ": connected\n\n"
            while not await request.is_disconnected():
                try:
                    message = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                yield format_event(message)
        finally:
            runtime.events.unsubscribe(queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
