import asyncio
import struct

import pytest

from db.models import RecordingStatus
from recorder.errors import (
    AlreadyActiveError,
    ForbiddenError,
    RecordingNotFoundError,
    RenameNotAllowedError,
    SessionUnavailableError,
    StorageError,
)
from recorder.lifecycle import RecordingLifecycle
from recorder.wav import HEADER_SIZE
from storage.local import LocalDiskSink

MIB = 1024 * 1024


def data_len(blob: bytes) -> int:
    return struct.unpack("<I", blob[40:44])[0]


class FailingBeginSink(LocalDiskSink):
    async def begin_upload(self, namespace, recording_id):
        raise StorageError("disk full")


class GatedSink(LocalDiskSink):
    """begin_upload waits until the test opens the gate."""

    def __init__(self, root, fail=False):
        super().__init__(root)
        self.gate = asyncio.Event()
        self.fail = fail

    async def begin_upload(self, namespace, recording_id):
        await self.gate.wait()
        if self.fail:
            raise StorageError("bucket unreachable")
        await super().begin_upload(namespace, recording_id)


def restarted(db, storage_root, notifier, registry, sink_cls=LocalDiskSink):
    """A lifecycle as a new process would build it: same database and files, no memory."""
    return RecordingLifecycle(db, sink_cls(storage_root), notifier, registry)


# =============================================================================
# start
# =============================================================================

@pytest.mark.asyncio
async def test_start_moves_to_recording_and_notifies(lifecycle, connected, notifier, drain, db):
    conn = notifier.connect("user-a")

    recording_id = await lifecycle.start("user-a")

    rec = db.get_recording(recording_id)
    assert rec["status"] == RecordingStatus.RECORDING
    assert rec["storage"]["initialized"] is True
    assert rec["storage"]["fileUrl"] is None
    assert rec["title"].startswith("Recording ")

    events = drain(conn)
    assert events[0][0] == "recording-status"
    assert events[0][1]["status"] == "recording"
    assert events[0][1]["duration"] == 0
    assert events[1][0] == "recordings-refresh"


@pytest.mark.asyncio
async def test_start_without_device_session(lifecycle, db):
    with pytest.raises(SessionUnavailableError):
        await lifecycle.start("user-a")
    assert db.list_recordings("user-a") == []


@pytest.mark.asyncio
async def test_voice_start_skips_session_check(lifecycle, db):
    recording_id = await lifecycle.start("user-a", voice_initiated=True)
    assert db.get_recording(recording_id)["status"] == RecordingStatus.RECORDING


@pytest.mark.asyncio
async def test_second_start_is_rejected(lifecycle, connected, db):
    await lifecycle.start("user-a")

    with pytest.raises(AlreadyActiveError):
        await lifecycle.start("user-a")

    assert len(db.list_recordings("user-a")) == 1


@pytest.mark.asyncio
async def test_concurrent_starts_create_one_recording(lifecycle, connected, db):
    results = await asyncio.gather(
        *(lifecycle.start("user-a") for _ in range(5)), return_exceptions=True
    )

    started = [r for r in results if isinstance(r, str)]
    rejected = [r for r in results if isinstance(r, AlreadyActiveError)]
    assert len(started) == 1
    assert len(rejected) == 4
    assert len(db.list_active_recordings("user-a")) == 1


@pytest.mark.asyncio
async def test_users_are_independent(lifecycle, registry, fake_session, db):
    registry.bind("user-a", "s1", fake_session)
    registry.bind("user-b", "s2", fake_session)

    await lifecycle.start("user-a")
    await lifecycle.start("user-b")

    assert db.get_active_recording("user-a") is not None
    assert db.get_active_recording("user-b") is not None


@pytest.mark.asyncio
async def test_failed_upload_begin_marks_error(db, storage_root, notifier, registry,
                                               connected, drain):
    lifecycle = RecordingLifecycle(db, FailingBeginSink(storage_root), notifier, registry)
    conn = notifier.connect("user-a")

    with pytest.raises(StorageError):
        await lifecycle.start("user-a")

    [rec] = db.list_recordings("user-a")
    assert rec["status"] == RecordingStatus.ERROR
    assert rec["error"] == "disk full"
    assert db.get_active_recording("user-a") is None
    assert ("recording-error", {"id": rec["id"], "error": "disk full"}) in drain(conn)


# =============================================================================
# audio
# =============================================================================

@pytest.mark.asyncio
async def test_one_and_a_half_mib_recording(lifecycle, connected, sink, db, notifier, drain):
    recording_id = await lifecycle.start("user-a")
    conn = notifier.connect("user-a")

    await lifecycle.process_audio_chunk(recording_id, b"\x00\x01" * (3 * MIB // 4))

    assert sink.appends == 1
    status_events = [p for e, p in drain(conn) if e == "recording-status"]
    assert status_events and status_events[-1]["status"] == "recording"

    rec = await lifecycle.stop(recording_id)

    assert sink.appends == 1
    assert rec["status"] == RecordingStatus.COMPLETED
    assert rec["storage"]["size"] == HEADER_SIZE + 3 * MIB // 2
    blob = await sink.read("user-a", recording_id)
    assert len(blob) == HEADER_SIZE + 3 * MIB // 2
    assert data_len(blob) == 3 * MIB // 2


@pytest.mark.asyncio
async def test_small_chunks_are_kept_until_stop(lifecycle, connected, sink):
    recording_id = await lifecycle.start("user-a")
    for _ in range(10):
        await lifecycle.process_audio_chunk(recording_id, b"\x00\x00" * 160)
    assert sink.appends == 0

    await lifecycle.stop(recording_id)

    blob = await sink.read("user-a", recording_id)
    assert data_len(blob) == 3200


@pytest.mark.asyncio
async def test_audio_for_stopping_recording_is_dropped(lifecycle, connected, sink, db):
    recording_id = await lifecycle.start("user-a")
    db.transition(recording_id, [RecordingStatus.RECORDING], RecordingStatus.STOPPING)

    await lifecycle.process_audio_chunk(recording_id, b"\x00" * (2 * MIB))

    assert sink.appends == 0
    assert await sink.size(recording_id) == 0


@pytest.mark.asyncio
async def test_audio_for_unknown_recording_is_ignored(lifecycle, sink):
    await lifecycle.process_audio_chunk("nope", b"\x00" * (2 * MIB))
    assert sink.appends == 0


@pytest.mark.asyncio
async def test_audio_recovers_from_lost_upload_state(db, storage_root, notifier, registry,
                                                     connected):
    first = RecordingLifecycle(db, LocalDiskSink(storage_root), notifier, registry,
                               flush_bytes=4)
    recording_id = await first.start("user-a")
    await first.process_audio_chunk(recording_id, b"\x01" * 8)

    second = RecordingLifecycle(db, LocalDiskSink(storage_root), notifier, registry,
                                flush_bytes=4)
    await second.process_audio_chunk(recording_id, b"\x02" * 8)

    assert db.get_recording(recording_id)["status"] == RecordingStatus.RECORDING
    rec = await second.stop(recording_id)
    assert rec["status"] == RecordingStatus.COMPLETED
    blob = await second.sink.read("user-a", recording_id)
    assert data_len(blob) == 16
    assert blob[HEADER_SIZE:] == b"\x01" * 8 + b"\x02" * 8


@pytest.mark.asyncio
async def test_failed_audio_recovery_marks_error(lifecycle, connected, db, storage_root,
                                                 notifier, registry, drain):
    recording_id = await lifecycle.start("user-a")
    broken = RecordingLifecycle(db, FailingBeginSink(storage_root), notifier, registry,
                                flush_bytes=4)
    conn = notifier.connect("user-a")

    await broken.process_audio_chunk(recording_id, b"\x00" * 8)

    rec = db.get_recording(recording_id)
    assert rec["status"] == RecordingStatus.ERROR
    assert rec["error"] == "disk full"
    assert any(e == "recording-error" for e, _ in drain(conn))


# =============================================================================
# transcript
# =============================================================================

@pytest.mark.asyncio
async def test_transcript_merge_and_stop_flush(lifecycle, connected, db, notifier, drain):
    recording_id = await lifecycle.start("user-a")
    conn = notifier.connect("user-a")

    await lifecycle.update_transcript(recording_id, "hello", True)
    await lifecycle.update_transcript(recording_id, "world", True)
    await lifecycle.update_transcript(recording_id, "wor", False)

    rec = db.get_recording(recording_id)
    assert rec["transcript"] == "hello world"
    assert rec["current_interim"] == "wor"
    transcripts = [p for e, p in drain(conn) if e == "transcript"]
    assert transcripts[-1]["text"] == "hello world wor"
    assert transcripts[-1]["isInterim"] is True
    assert "isInterim" not in transcripts[0]

    rec = await lifecycle.stop(recording_id)

    assert rec["transcript"] == "hello world wor"
    assert rec["current_interim"] is None
    assert [c["text"] for c in rec["transcript_chunks"]] == ["hello", "world", "wor"]


@pytest.mark.asyncio
async def test_final_clears_persisted_interim(lifecycle, connected, db):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.update_transcript(recording_id, "hel", False)
    await lifecycle.update_transcript(recording_id, "hello", True)

    rec = db.get_recording(recording_id)
    assert rec["current_interim"] is None
    assert rec["transcript"] == "hello"


@pytest.mark.asyncio
async def test_transcript_after_stop_is_ignored(lifecycle, connected, db):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.update_transcript(recording_id, "done", True)
    await lifecycle.stop(recording_id)

    await lifecycle.update_transcript(recording_id, "late", False)
    await lifecycle.update_transcript(recording_id, "later", True)

    rec = db.get_recording(recording_id)
    assert rec["transcript"] == "done"
    assert rec["current_interim"] is None


@pytest.mark.asyncio
async def test_transcript_survives_lost_memory(db, storage_root, notifier, registry, connected):
    first = RecordingLifecycle(db, LocalDiskSink(storage_root), notifier, registry)
    recording_id = await first.start("user-a")
    await first.update_transcript(recording_id, "before", True)

    second = restarted(db, storage_root, notifier, registry)
    await second.update_transcript(recording_id, "after", True)

    assert db.get_recording(recording_id)["transcript"] == "before after"


# =============================================================================
# stop
# =============================================================================

@pytest.mark.asyncio
async def test_stop_twice_completes_once(lifecycle, connected, sink, db):
    recording_id = await lifecycle.start("user-a")
    first = await lifecycle.stop(recording_id)
    second = await lifecycle.stop(recording_id)

    assert first["status"] == RecordingStatus.COMPLETED
    assert second["storage"]["fileUrl"] == first["storage"]["fileUrl"]
    assert sink.finalizes == 1


@pytest.mark.asyncio
async def test_interleaved_stops_finalize_once(lifecycle, connected, sink, notifier, drain):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.process_audio_chunk(recording_id, b"\x00" * 4000)
    conn = notifier.connect("user-a")

    await asyncio.gather(lifecycle.stop(recording_id), lifecycle.stop(recording_id))

    assert sink.finalizes == 1
    completed = [p for e, p in drain(conn)
                 if e == "recording-status" and p["status"] == "completed"]
    assert len(completed) == 1
    assert completed[0]["fileUrl"].endswith(f"{recording_id}.wav")


@pytest.mark.asyncio
async def test_stop_broadcasts_stopping_first(lifecycle, connected, notifier, drain):
    recording_id = await lifecycle.start("user-a")
    conn = notifier.connect("user-a")

    await lifecycle.stop(recording_id)

    statuses = [p["status"] for e, p in drain(conn) if e == "recording-status"]
    assert statuses == ["stopping", "completed"]


@pytest.mark.asyncio
async def test_stop_while_initializing_completes_after_upload_begins(
        db, storage_root, notifier, registry, connected, drain):
    sink = GatedSink(storage_root)
    lifecycle = RecordingLifecycle(db, sink, notifier, registry)
    conn = notifier.connect("user-a")

    starting = asyncio.create_task(lifecycle.start("user-a"))
    await asyncio.sleep(0)
    [rec] = db.list_recordings("user-a")
    assert rec["status"] == RecordingStatus.INITIALIZING

    stopping = asyncio.create_task(lifecycle.stop(rec["id"]))
    await asyncio.sleep(0)
    assert db.get_recording(rec["id"])["status"] == RecordingStatus.STOPPING

    sink.gate.set()
    assert await starting == rec["id"]
    stopped = await stopping

    assert stopped["status"] == RecordingStatus.COMPLETED
    assert stopped["storage"]["initialized"] is True
    assert stopped["storage"]["fileUrl"].endswith(f"{rec['id']}.wav")
    assert len(await sink.read("user-a", rec["id"])) == HEADER_SIZE
    assert db.get_active_recording("user-a") is None

    statuses = [p["status"] for e, p in drain(conn) if e == "recording-status"]
    assert statuses == ["stopping", "completed"]


@pytest.mark.asyncio
async def test_stop_while_initializing_when_upload_fails(db, storage_root, notifier,
                                                         registry, connected):
    sink = GatedSink(storage_root, fail=True)
    lifecycle = RecordingLifecycle(db, sink, notifier, registry)

    starting = asyncio.create_task(lifecycle.start("user-a"))
    await asyncio.sleep(0)
    [rec] = db.list_recordings("user-a")
    stopping = asyncio.create_task(lifecycle.stop(rec["id"]))
    await asyncio.sleep(0)

    sink.gate.set()
    with pytest.raises(StorageError):
        await starting
    stopped = await stopping

    assert stopped["status"] == RecordingStatus.ERROR
    assert stopped["error"] == "bucket unreachable"
    assert db.get_active_recording("user-a") is None


@pytest.mark.asyncio
async def test_stop_unknown_recording_is_silent(lifecycle):
    assert await lifecycle.stop("nope") is None


@pytest.mark.asyncio
async def test_stop_after_restart_produces_empty_wav(db, storage_root, notifier, registry,
                                                     connected):
    first = RecordingLifecycle(db, LocalDiskSink(storage_root), notifier, registry)
    recording_id = await first.start("user-a")

    second = restarted(db, storage_root, notifier, registry)
    rec = await second.stop(recording_id)

    assert rec["status"] == RecordingStatus.COMPLETED
    blob = await second.sink.read("user-a", recording_id)
    assert len(blob) == HEADER_SIZE
    assert data_len(blob) == 0


@pytest.mark.asyncio
async def test_stop_failure_marks_error_and_raises(lifecycle, connected, sink, db, monkeypatch):
    recording_id = await lifecycle.start("user-a")

    async def broken_finalize(rid):
        raise StorageError("bucket unavailable")

    monkeypatch.setattr(sink, "finalize", broken_finalize)

    with pytest.raises(StorageError):
        await lifecycle.stop(recording_id)

    rec = db.get_recording(recording_id)
    assert rec["status"] == RecordingStatus.ERROR
    assert rec["error"] == "bucket unavailable"
    assert rec["storage"]["fileUrl"] is None
    assert db.get_active_recording("user-a") is None


# =============================================================================
# cleanup_stale
# =============================================================================

@pytest.mark.asyncio
async def test_cleanup_stale_fails_leftover_recording(db, storage_root, notifier, registry,
                                                      connected, drain):
    first = RecordingLifecycle(db, LocalDiskSink(storage_root), notifier, registry)
    recording_id = await first.start("user-a")

    second = restarted(db, storage_root, notifier, registry)
    conn = notifier.connect("user-a")
    cleaned = await second.cleanup_stale("user-a")

    assert cleaned == [recording_id]
    rec = db.get_recording(recording_id)
    assert rec["status"] == RecordingStatus.ERROR
    assert "interrupted" in rec["error"]
    assert rec["storage"]["fileUrl"] is not None
    assert any(e == "recordings-refresh" for e, _ in drain(conn))

    # The user can record again
    assert await second.start("user-a")


@pytest.mark.asyncio
async def test_cleanup_stale_leaves_live_recording_alone(lifecycle, connected, sink, db,
                                                          notifier, drain):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.process_audio_chunk(recording_id, b"\x00\x00" * 100)
    conn = notifier.connect("user-a")

    # Same process, new device session attaching before the old one stopped
    assert await lifecycle.cleanup_stale("user-a") == []

    rec = db.get_recording(recording_id)
    assert rec["status"] == RecordingStatus.RECORDING
    assert rec["error"] is None
    assert drain(conn) == []

    stopped = await lifecycle.stop(recording_id)
    assert stopped["status"] == RecordingStatus.COMPLETED
    assert stopped["storage"]["size"] == HEADER_SIZE + 200


@pytest.mark.asyncio
async def test_cleanup_stale_with_nothing_to_do(lifecycle, notifier, drain):
    conn = notifier.connect("user-a")
    assert await lifecycle.cleanup_stale("user-a") == []
    assert drain(conn) == []


@pytest.mark.asyncio
async def test_cleanup_stale_without_storage(db, lifecycle):
    db.insert_recording("rec-x", "user-a", "stuck")

    assert await lifecycle.cleanup_stale("user-a") == ["rec-x"]
    rec = db.get_recording("rec-x")
    assert rec["status"] == RecordingStatus.ERROR
    assert rec["storage"]["fileUrl"] is None


# =============================================================================
# management
# =============================================================================

@pytest.mark.asyncio
async def test_ownership_checks(lifecycle, connected):
    recording_id = await lifecycle.start("user-a")

    with pytest.raises(ForbiddenError):
        lifecycle.get_owned("user-b", recording_id)
    with pytest.raises(RecordingNotFoundError):
        lifecycle.get_owned("user-a", "nope")


@pytest.mark.asyncio
async def test_rename_completed_recording(lifecycle, connected, notifier, drain):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.stop(recording_id)
    conn = notifier.connect("user-a")

    rec = await lifecycle.rename("user-a", recording_id, "Standup")

    assert rec["title"] == "Standup"
    assert rec["status"] == RecordingStatus.COMPLETED
    assert drain(conn)[0][1]["title"] == "Standup"


@pytest.mark.asyncio
async def test_finished_recording_renames_once(lifecycle, connected, db):
    recording_id = await lifecycle.start("user-a", title="Draft")
    await lifecycle.rename("user-a", recording_id, "Still going")
    await lifecycle.rename("user-a", recording_id, "Still going, renamed")
    await lifecycle.stop(recording_id)

    await lifecycle.rename("user-a", recording_id, "Standup")
    with pytest.raises(RenameNotAllowedError):
        await lifecycle.rename("user-a", recording_id, "Retro")

    assert db.get_recording(recording_id)["title"] == "Standup"


@pytest.mark.asyncio
async def test_delete_removes_row_and_file(lifecycle, connected, sink, db, notifier, drain):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.process_audio_chunk(recording_id, b"\x00" * 10)
    await lifecycle.stop(recording_id)
    path = sink.path_for("user-a", recording_id)
    assert path.exists()
    conn = notifier.connect("user-a")

    await lifecycle.delete("user-a", recording_id)

    assert db.get_recording(recording_id) is None
    assert not path.exists()
    assert [e for e, _ in drain(conn)] == ["recording-deleted", "recordings-refresh"]


@pytest.mark.asyncio
async def test_delete_active_recording_drops_late_chunks(lifecycle, connected, sink, db):
    recording_id = await lifecycle.start("user-a")
    await lifecycle.delete("user-a", recording_id)

    await lifecycle.process_audio_chunk(recording_id, b"\x00" * (2 * MIB))

    assert sink.appends == 0
    assert db.get_active_recording("user-a") is None
