import asyncio
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from realtime.events import ConnectedEvent, format_sse
from realtime.notifier import Connection, RealtimeNotifier
from recorder.transcript import now_ms
from server.auth import current_user

logger = logging.getLogger(__name__)

POLL_SECS = 1.0


async def event_stream(notifier: RealtimeNotifier, conn: Connection,
                       request: Request | None = None):
    try:
        yield format_sse(ConnectedEvent(client_id=conn.id, timestamp=now_ms()))
        while True:
            if request is not None and await request.is_disconnected():
                break
            try:
                frame = await asyncio.wait_for(conn.queue.get(), timeout=POLL_SECS)
            except asyncio.TimeoutError:
                continue
            yield frame
    finally:
        notifier.disconnect(conn)


def create_events_router(notifier: RealtimeNotifier) -> APIRouter:
    router = APIRouter()

    @router.get("/events")
    async def events(request: Request, user_id: str = Depends(current_user)):
        conn = notifier.connect(user_id)
        return StreamingResponse(
            event_stream(notifier, conn, request),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    return router
