import logging
import sys

import uvicorn

import config
from db.database import Database
from realtime.notifier import RealtimeNotifier
from recorder.lifecycle import RecordingLifecycle
from server.app import create_app
from session.binding import SessionBinding
from session.registry import SessionRegistry
from storage.factory import create_sink

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("recorder")


class Recorder:
    """Wires the components together; the device SDK adapter calls on_session/on_stop."""

    def __init__(self):
        for d in [config.DATA_DIR, config.RECORDINGS_DIR]:
            d.mkdir(parents=True, exist_ok=True)

        self.db = Database(config.DB_PATH)
        self.sink = create_sink()
        self.notifier = RealtimeNotifier()
        self.registry = SessionRegistry()
        self.lifecycle = RecordingLifecycle(self.db, self.sink, self.notifier, self.registry)
        self.app = create_app(self.lifecycle, self.registry, self.notifier)
        self._bindings: dict[str, SessionBinding] = {}

    async def on_session(self, session, session_id: str, user_id: str) -> SessionBinding:
        binding = SessionBinding(session, session_id, user_id,
                                 self.lifecycle, self.registry, self.notifier)
        await binding.attach()
        self._bindings[session_id] = binding
        return binding

    async def on_stop(self, session_id: str, reason: str = ""):
        binding = self._bindings.pop(session_id, None)
        if binding is None:
            logger.info("Stop for unknown session %s", session_id)
            return
        await binding.release(reason)


def main():
    try:
        recorder = Recorder()
    except Exception as e:
        logger.error("Could not start: %s", e)
        sys.exit(1)

    logger.info("Recorder listening on http://%s:%d (storage: %s)",
                config.HOST, config.PORT, config.STORAGE_BACKEND)
    uvicorn.run(recorder.app, host=config.HOST, port=config.PORT, log_level="warning")


if __name__ == "__main__":
    main()
