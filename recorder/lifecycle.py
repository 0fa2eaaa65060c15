import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

import config
from db.database import Database
from db.models import ACTIVE_STATUSES, TERMINAL_STATUSES, RecordingStatus
from realtime.notifier import RealtimeNotifier
from recorder.errors import (
    ForbiddenError,
    NoActiveUploadError,
    RecorderError,
    RecordingNotFoundError,
    RenameNotAllowedError,
    SessionUnavailableError,
    StorageError,
)
from recorder.transcript import TranscriptAccumulator, now_ms
from recorder.wav import HEADER_SIZE, WavAssembler
from session.registry import SessionRegistry
from storage.base import StorageSink

logger = logging.getLogger(__name__)

STALE_MESSAGE = "Recording interrupted by session disconnect"


def elapsed_seconds(rec: dict) -> int:
    created = datetime.fromisoformat(rec["created_at"])
    return max(int(round((datetime.now(timezone.utc) - created).total_seconds())), 0)


@dataclass
class RecordingContext:
    recording_id: str
    user_id: str
    assembler: WavAssembler
    transcript: TranscriptAccumulator
    # Set once start() has finished beginning the upload, successfully or not
    begun: asyncio.Event = field(default_factory=asyncio.Event)


class RecordingLifecycle:
    """Status state machine for recordings.

    INITIALIZING -> RECORDING -> STOPPING -> COMPLETED | ERROR, with stop also
    accepted straight from INITIALIZING. The database row is the source of
    truth for status; the in-memory contexts only hold the WAV assembler and
    transcript for recordings in progress and are rebuilt from the row when
    missing.

    Each transition is a conditional update issued before the first await of
    the operation, so interleaved callers (voice command and UI both stopping,
    late audio chunks) see the new status and back off.
    """

    def __init__(self, db: Database, sink: StorageSink, notifier: RealtimeNotifier,
                 sessions: SessionRegistry,
                 sample_rate: int = config.SAMPLE_RATE,
                 flush_bytes: int = config.WAV_FLUSH_BYTES,
                 max_pending_chunks: int = config.WAV_MAX_PENDING_CHUNKS):
        self.db = db
        self.sink = sink
        self.notifier = notifier
        self.sessions = sessions
        self.sample_rate = sample_rate
        self.flush_bytes = flush_bytes
        self.max_pending_chunks = max_pending_chunks
        self._contexts: dict[str, RecordingContext] = {}

    # -- Helpers --

    def _new_assembler(self, user_id: str, recording_id: str) -> WavAssembler:
        return WavAssembler(
            self.sink,
            user_id,
            recording_id,
            sample_rate=self.sample_rate,
            flush_bytes=self.flush_bytes,
            max_pending_chunks=self.max_pending_chunks,
        )

    def _context_for(self, rec: dict) -> RecordingContext:
        ctx = self._contexts.get(rec["id"])
        if ctx is None:
            logger.info("Rebuilding in-memory state for recording %s", rec["id"])
            assembler = self._new_assembler(rec["user_id"], rec["id"])
            assembler.resume()
            ctx = RecordingContext(
                recording_id=rec["id"],
                user_id=rec["user_id"],
                assembler=assembler,
                transcript=TranscriptAccumulator.from_record(rec),
            )
            ctx.begun.set()
            self._contexts[rec["id"]] = ctx
        return ctx

    async def _notify(self, user_id: str, event: str, payload: dict):
        try:
            await self.notifier.broadcast_to_user(user_id, event, payload)
        except Exception:
            logger.exception("Failed to send %s to user %s", event, user_id)

    async def _notify_refresh(self, user_id: str):
        await self._notify(user_id, "recordings-refresh", {"timestamp": now_ms()})

    async def _notify_status(self, rec: dict, status: RecordingStatus, duration: int,
                             **extra):
        await self._notify(rec["user_id"], "recording-status", {
            "id": rec["id"], "status": status, "duration": duration, **extra,
        })

    # -- Queries --

    def get_active(self, user_id: str) -> dict | None:
        return self.db.get_active_recording(user_id)

    def list_for_user(self, user_id: str) -> list[dict]:
        return self.db.list_recordings(user_id)

    def get_owned(self, user_id: str, recording_id: str) -> dict:
        rec = self.db.get_recording(recording_id)
        if rec is None:
            raise RecordingNotFoundError(recording_id)
        if rec["user_id"] != user_id:
            raise ForbiddenError(recording_id)
        return rec

    # -- Lifecycle --

    async def start(self, user_id: str, title: str | None = None,
                    voice_initiated: bool = False) -> str:
        if not voice_initiated and not self.sessions.is_connected(user_id):
            raise SessionUnavailableError(user_id)

        recording_id = str(uuid.uuid4())
        title = title or f"Recording {datetime.now().strftime('%Y-%m-%d %H:%M')}"
        # Raises AlreadyActiveError without creating anything
        rec = self.db.insert_recording(recording_id, user_id, title)
        logger.info("Starting recording %s for user %s", recording_id, user_id)

        ctx = RecordingContext(
            recording_id=recording_id,
            user_id=user_id,
            assembler=self._new_assembler(user_id, recording_id),
            transcript=TranscriptAccumulator(),
        )
        self._contexts[recording_id] = ctx

        try:
            await ctx.assembler.begin()
        except Exception as e:
            logger.error("Could not begin upload for %s: %s", recording_id, e)
            self._contexts.pop(recording_id, None)
            # A stop may already have moved the row to STOPPING
            self.db.transition(recording_id,
                               [RecordingStatus.INITIALIZING, RecordingStatus.STOPPING],
                               RecordingStatus.ERROR, error=str(e))
            await self._notify(user_id, "recording-error", {"id": recording_id, "error": str(e)})
            await self._notify_refresh(user_id)
            if isinstance(e, RecorderError):
                raise
            raise StorageError(str(e)) from e
        finally:
            ctx.begun.set()

        if not self.db.transition(recording_id, [RecordingStatus.INITIALIZING],
                                  RecordingStatus.RECORDING, storage_initialized=True):
            # Stopped while initializing; stop() finalizes the upload begun above
            self.db.transition(recording_id, [RecordingStatus.STOPPING],
                               RecordingStatus.STOPPING, storage_initialized=True)
            logger.info("Recording %s was stopped while initializing", recording_id)
            return recording_id

        await self._notify_status(rec, RecordingStatus.RECORDING, 0, title=title)
        await self._notify_refresh(user_id)
        logger.info("Recording %s started", recording_id)
        return recording_id

    async def _add_audio(self, ctx: RecordingContext, data: bytes,
                         sample_rate: int | None) -> bool:
        try:
            return await ctx.assembler.add_chunk(data, sample_rate)
        except NoActiveUploadError:
            logger.warning("Upload state lost for %s, re-beginning", ctx.recording_id)
            await ctx.assembler.reopen()
            return await ctx.assembler.flush()

    async def process_audio_chunk(self, recording_id: str, data: bytes,
                                  sample_rate: int | None = None):
        rec = self.db.get_recording(recording_id)
        if rec is None or rec["status"] != RecordingStatus.RECORDING:
            logger.debug("Dropping audio chunk for %s (%s)", recording_id,
                         rec["status"].value if rec else "missing")
            return

        ctx = self._context_for(rec)
        try:
            flushed = await self._add_audio(ctx, data, sample_rate)
        except StorageError as e:
            logger.error("Storage failed for %s after recovery: %s", recording_id, e)
            self._contexts.pop(recording_id, None)
            if self.db.transition(recording_id, [RecordingStatus.RECORDING],
                                  RecordingStatus.ERROR, error=str(e),
                                  duration=elapsed_seconds(rec)):
                await self._notify(rec["user_id"], "recording-error",
                                   {"id": recording_id, "error": str(e)})
                await self._notify_refresh(rec["user_id"])
            return
        except Exception:
            logger.exception("Error processing audio chunk for %s", recording_id)
            return

        if flushed:
            duration = elapsed_seconds(rec)
            if self.db.transition(recording_id, [RecordingStatus.RECORDING],
                                  RecordingStatus.RECORDING, duration=duration):
                await self._notify_status(rec, RecordingStatus.RECORDING, duration)

    async def update_transcript(self, recording_id: str, text: str, is_final: bool,
                                timestamp: int | None = None):
        rec = self.db.get_recording(recording_id)
        if rec is None or rec["status"] != RecordingStatus.RECORDING:
            logger.debug("Ignoring transcript for %s", recording_id)
            return
        if not text or not text.strip():
            return

        ctx = self._context_for(rec)
        text = text.strip()
        try:
            if is_final:
                transcript = ctx.transcript.add_final(text, timestamp)
                self.db.transition(
                    recording_id, [RecordingStatus.RECORDING], RecordingStatus.RECORDING,
                    transcript=transcript,
                    transcript_chunks=ctx.transcript.chunks,
                    current_interim=None,
                )
                await self._notify(rec["user_id"], "transcript", {
                    "recordingId": recording_id, "text": transcript, "timestamp": now_ms(),
                })
            else:
                display = ctx.transcript.set_interim(text)
                self.db.transition(
                    recording_id, [RecordingStatus.RECORDING], RecordingStatus.RECORDING,
                    current_interim=text,
                )
                await self._notify(rec["user_id"], "transcript", {
                    "recordingId": recording_id, "text": display, "isInterim": True,
                    "timestamp": now_ms(),
                })
        except Exception:
            logger.exception("Error updating transcript for %s", recording_id)

    async def _finalize_storage(self, ctx: RecordingContext) -> str:
        try:
            return await ctx.assembler.finalize()
        except NoActiveUploadError:
            logger.warning("No active upload for %s at stop, re-beginning", ctx.recording_id)
            await ctx.assembler.reopen()
            return await ctx.assembler.finalize()

    async def stop(self, recording_id: str) -> dict | None:
        rec = self.db.get_recording(recording_id)
        if rec is None:
            logger.info("Stop requested for unknown recording %s", recording_id)
            return None
        status = rec["status"]
        if status in TERMINAL_STATUSES or status == RecordingStatus.STOPPING:
            logger.info("Recording %s already %s, ignoring stop", recording_id, status.value)
            return rec

        if not self.db.transition(recording_id,
                                  [RecordingStatus.INITIALIZING, RecordingStatus.RECORDING],
                                  RecordingStatus.STOPPING):
            return self.db.get_recording(recording_id)
        ctx = self._context_for(rec)
        user_id = rec["user_id"]
        logger.info("Stopping recording %s", recording_id)

        try:
            await self._notify_status(rec, RecordingStatus.STOPPING, elapsed_seconds(rec))

            if not ctx.begun.is_set():
                logger.info("Recording %s still initializing, waiting for its upload", recording_id)
                await ctx.begun.wait()
            if not ctx.assembler.is_open:
                # start() failed to begin the upload and already marked the row ERROR
                return self.db.get_recording(recording_id)

            if ctx.transcript.flush_interim_as_final():
                transcript = ctx.transcript.transcript
                self.db.transition(
                    recording_id, [RecordingStatus.STOPPING], RecordingStatus.STOPPING,
                    transcript=transcript,
                    transcript_chunks=ctx.transcript.chunks,
                    current_interim=None,
                )
                await self._notify(user_id, "transcript", {
                    "recordingId": recording_id, "text": transcript, "timestamp": now_ms(),
                })

            file_url = await self._finalize_storage(ctx)
            duration = elapsed_seconds(rec)
            completed = self.db.transition(
                recording_id, [RecordingStatus.STOPPING], RecordingStatus.COMPLETED,
                file_url=file_url,
                size=HEADER_SIZE + ctx.assembler.data_bytes,
                duration=duration,
                current_interim=None,
            )
        except Exception as e:
            logger.exception("Error stopping recording %s", recording_id)
            self.db.transition(recording_id, [RecordingStatus.STOPPING], RecordingStatus.ERROR,
                               error=str(e), duration=elapsed_seconds(rec))
            await self._notify(user_id, "recording-error", {"id": recording_id, "error": str(e)})
            await self._notify_refresh(user_id)
            if isinstance(e, RecorderError):
                raise
            raise StorageError(str(e)) from e
        finally:
            self._contexts.pop(recording_id, None)

        if not completed:
            logger.warning("Recording %s changed while stopping", recording_id)
            return self.db.get_recording(recording_id)

        await self._notify_status(rec, RecordingStatus.COMPLETED, duration, fileUrl=file_url)
        await self._notify_refresh(user_id)
        logger.info("Stopped recording %s, duration %ds", recording_id, duration)
        return self.db.get_recording(recording_id)

    async def cleanup_stale(self, user_id: str) -> list[str]:
        """Fail recordings left active by a previous process and salvage their audio.

        Rows with an in-memory context belong to this process and are still
        live (a new session can attach before the old one reports its stop),
        so they are left alone.
        """
        stale = []
        for rec in self.db.list_active_recordings(user_id):
            if rec["id"] in self._contexts:
                logger.info("Recording %s is live in this process, not stale", rec["id"])
                continue
            stale.append(rec)
        if not stale:
            return []

        cleaned = []
        for rec in stale:
            recording_id = rec["id"]
            logger.warning("Cleaning up stale recording %s (%s) for user %s",
                           recording_id, rec["status"].value, user_id)
            # Block audio and stop callbacks while the audio is salvaged
            self.db.transition(
                recording_id,
                [RecordingStatus.INITIALIZING, RecordingStatus.RECORDING],
                RecordingStatus.STOPPING,
            )
            ctx = self._contexts.pop(recording_id, None)

            fields = {"error": STALE_MESSAGE, "current_interim": None,
                      "duration": elapsed_seconds(rec)}
            if rec["storage"]["initialized"]:
                assembler = ctx.assembler if ctx else self._new_assembler(user_id, recording_id)
                try:
                    if not assembler.is_finalized:
                        await assembler.reopen()
                        fields["file_url"] = await assembler.finalize()
                        fields["size"] = HEADER_SIZE + assembler.data_bytes
                except Exception as e:
                    logger.warning("Could not finalize storage for stale %s: %s", recording_id, e)

            if self.db.transition(recording_id, ACTIVE_STATUSES, RecordingStatus.ERROR, **fields):
                cleaned.append(recording_id)

        await self._notify_refresh(user_id)
        return cleaned

    # -- Management --

    async def rename(self, user_id: str, recording_id: str, title: str) -> dict:
        rec = self.get_owned(user_id, recording_id)
        if not self.db.rename_recording(recording_id, title):
            raise RenameNotAllowedError(recording_id)
        updated = self.db.get_recording(recording_id)
        await self._notify(user_id, "recording-status", {
            "id": recording_id,
            "status": updated["status"],
            "duration": updated["duration"],
            "title": title,
        })
        logger.info("Renamed recording %s from %r to %r", recording_id, rec["title"], title)
        return updated

    async def delete(self, user_id: str, recording_id: str):
        self.get_owned(user_id, recording_id)
        self._contexts.pop(recording_id, None)
        await self.sink.delete(user_id, recording_id)
        self.db.delete_recording(recording_id)
        await self._notify(user_id, "recording-deleted", {"id": recording_id})
        await self._notify_refresh(user_id)
        logger.info("Deleted recording %s", recording_id)

    async def read_audio(self, user_id: str, recording_id: str) -> bytes:
        self.get_owned(user_id, recording_id)
        return await self.sink.read(user_id, recording_id)
