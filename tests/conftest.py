import json

import pytest

from db.database import Database
from realtime.notifier import RealtimeNotifier
from recorder.lifecycle import RecordingLifecycle
from session.registry import SessionRegistry
from storage.local import LocalDiskSink

MIB = 1024 * 1024


class CountingSink(LocalDiskSink):
    """Local sink that records how often each write path is used."""

    def __init__(self, root):
        super().__init__(root)
        self.appends = 0
        self.finalizes = 0

    async def append(self, recording_id, data):
        self.appends += 1
        await super().append(recording_id, data)

    async def finalize(self, recording_id):
        self.finalizes += 1
        return await super().finalize(recording_id)


class FakeSession:
    """Stands in for the glasses SDK session."""

    def __init__(self):
        self.audio_handler = None
        self.transcription_handler = None
        self.locale = None
        self.cards = []

    def on_audio_chunk(self, handler):
        self.audio_handler = handler

    def on_transcription_for_language(self, locale, handler):
        self.locale = locale
        self.transcription_handler = handler

    def show_reference_card(self, title, body, duration_ms=None):
        self.cards.append((title, body))


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "recorder.db")
    yield database
    database.close()


@pytest.fixture
def storage_root(tmp_path):
    return tmp_path / "recordings"


@pytest.fixture
def sink(storage_root):
    return CountingSink(storage_root)


@pytest.fixture
def notifier():
    return RealtimeNotifier()


@pytest.fixture
def registry():
    return SessionRegistry()


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def connected(registry, fake_session):
    """user-a has a device session attached."""
    registry.bind("user-a", "sess-1", fake_session)
    return fake_session


@pytest.fixture
def lifecycle(db, sink, notifier, registry):
    return RecordingLifecycle(db, sink, notifier, registry, flush_bytes=MIB, max_pending_chunks=256)


@pytest.fixture
def drain():
    """Returns a function that pops (event, payload) pairs off a connection queue."""

    def _drain(conn):
        out = []
        while not conn.queue.empty():
            frame = conn.queue.get_nowait()
            if frame.startswith(":"):
                out.append(("keepalive", None))
                continue
            head, data = frame.strip().split("\n", 1)
            out.append((head[len("event: "):], json.loads(data[len("data: "):])))
        return out

    return _drain
