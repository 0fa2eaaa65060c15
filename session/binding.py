import inspect
import logging

import config
from db.models import RecordingStatus
from realtime.notifier import RealtimeNotifier
from recorder.errors import AlreadyActiveError
from recorder.lifecycle import RecordingLifecycle
from recorder.transcript import now_ms
from session.device import AudioChunk, DeviceSession, TranscriptionData
from session.registry import SessionRegistry
from session.voice_commands import START_RECORDING, STOP_RECORDING, VoiceCommandDetector

logger = logging.getLogger(__name__)


class SessionBinding:
    """Connects one device session for one user to the recording lifecycle."""

    def __init__(self, session: DeviceSession, session_id: str, user_id: str,
                 lifecycle: RecordingLifecycle, registry: SessionRegistry,
                 notifier: RealtimeNotifier,
                 locale: str = config.TRANSCRIPTION_LOCALE,
                 card_ms: int = config.REFERENCE_CARD_MS,
                 detector: VoiceCommandDetector | None = None):
        self.session = session
        self.session_id = session_id
        self.user_id = user_id
        self.lifecycle = lifecycle
        self.registry = registry
        self.notifier = notifier
        self.locale = locale
        self.card_ms = card_ms
        self.detector = detector or VoiceCommandDetector()

    async def attach(self):
        logger.info("Binding session %s for user %s", self.session_id, self.user_id)
        self.session.on_audio_chunk(self.handle_audio_chunk)
        self.session.on_transcription_for_language(self.locale, self.handle_transcription)
        try:
            cleaned = await self.lifecycle.cleanup_stale(self.user_id)
            if cleaned:
                logger.warning("Marked %d stale recording(s) as failed for user %s",
                               len(cleaned), self.user_id)
        except Exception:
            logger.exception("Stale recording cleanup failed for user %s", self.user_id)
        self.registry.bind(self.user_id, self.session_id, self.session)

    async def release(self, reason: str = ""):
        logger.info("Session %s for user %s stopped: %s", self.session_id, self.user_id, reason)
        try:
            active = self.lifecycle.get_active(self.user_id)
            if active is not None:
                await self.lifecycle.stop(active["id"])
        except Exception:
            logger.exception("Could not stop recording on session release for %s", self.user_id)
        finally:
            self.registry.unbind(self.user_id, self.session_id)

    def _recording_id(self) -> str | None:
        active = self.lifecycle.get_active(self.user_id)
        if active is None or active["status"] != RecordingStatus.RECORDING:
            return None
        return active["id"]

    async def handle_audio_chunk(self, chunk: AudioChunk):
        try:
            recording_id = self._recording_id()
            if recording_id is not None:
                await self.lifecycle.process_audio_chunk(recording_id, chunk.data, chunk.sample_rate)
        except Exception:
            logger.exception("Audio handler failed for user %s", self.user_id)

    async def handle_transcription(self, data: TranscriptionData):
        try:
            recording_id = self._recording_id()
            if recording_id is not None:
                await self.lifecycle.update_transcript(recording_id, data.text, data.is_final)

            command = self.detector.detect(data.text, data.is_final)
            if command == START_RECORDING:
                await self._voice_start()
            elif command == STOP_RECORDING:
                await self._voice_stop()
        except Exception:
            logger.exception("Transcription handler failed for user %s", self.user_id)

    async def _voice_start(self):
        if self.lifecycle.get_active(self.user_id) is not None:
            await self.show_card("Already Recording", "Say 'stop recording' when done")
            return
        await self._broadcast_command("start-recording")
        try:
            await self.lifecycle.start(self.user_id, voice_initiated=True)
        except AlreadyActiveError:
            await self.show_card("Already Recording", "Say 'stop recording' when done")
            return
        await self.show_card("Recording Started", "Say 'stop recording' when done")

    async def _voice_stop(self):
        recording_id = self._recording_id()
        if recording_id is None:
            logger.info("Ignoring 'stop recording', nothing is recording for %s", self.user_id)
            return
        await self._broadcast_command("stop-recording")
        await self.lifecycle.stop(recording_id)
        await self.show_card("Recording Stopped", "Processing your recording...")

    async def _broadcast_command(self, command: str):
        try:
            await self.notifier.broadcast_to_user(
                self.user_id, "voice-command", {"command": command, "timestamp": now_ms()}
            )
        except Exception:
            logger.exception("Failed to broadcast voice command %s", command)

    async def show_card(self, title: str, body: str):
        try:
            result = self.session.show_reference_card(title, body, duration_ms=self.card_ms)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.warning("Could not show reference card %r: %s", title, e)
