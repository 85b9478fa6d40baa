import asyncio
import json
from typing import Any, Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from perks.services.sessions import EventStream

KEEPALIVE_SECONDS = 15


def _format(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def event_response(
    events: EventStream,
    request: Request,
    initial_event: Optional[str] = None,
    initial_data: Any = None,
) -> StreamingResponse:
    """Stream a session's events as Server-Sent Events until the client leaves."""
    queue = events.register()

    async def event_stream():
        try:
            if initial_event:
                yield _format(initial_event, initial_data)
            while True:
                # Check if client disconnected
                if await request.is_disconnected():
                    break
                try:
                    item = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                if item is None:
                    yield _format("closed", {})
                    break
                yield _format(item["event"], item["data"])
        finally:
            events.unregister(queue)

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",  # Disable nginx buffering
        },
    )
