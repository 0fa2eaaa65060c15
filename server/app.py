import asyncio
import contextlib
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

import config
from realtime.notifier import RealtimeNotifier
from recorder.lifecycle import RecordingLifecycle
from server.events import create_events_router
from server.routes import create_router
from session.registry import SessionRegistry


def create_app(lifecycle: RecordingLifecycle, registry: SessionRegistry,
               notifier: RealtimeNotifier,
               user_header: str = config.USER_HEADER,
               keepalive_secs: float = config.SSE_KEEPALIVE_SECS) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = asyncio.create_task(notifier.run_keepalive(keepalive_secs))
        yield
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    app = FastAPI(title="Glass Recorder", version="0.1.0", lifespan=lifespan)
    app.state.user_header = user_header
    app.state.lifecycle = lifecycle
    app.state.registry = registry
    app.state.notifier = notifier

    app.include_router(create_router(lifecycle, registry, notifier), prefix="/api")
    app.include_router(create_events_router(notifier), prefix="/api")

    static_dir = config.BASE_DIR / "static"
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")

    return app
