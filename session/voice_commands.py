import logging

import config
from recorder.transcript import now_ms

logger = logging.getLogger(__name__)

START_RECORDING = "start recording"
STOP_RECORDING = "stop recording"


class VoiceCommandDetector:
    """Finds command phrases in final transcripts, one command per utterance."""

    def __init__(self, commands=(START_RECORDING, STOP_RECORDING),
                 cooldown_ms: int = config.VOICE_COMMAND_COOLDOWN_MS):
        self.commands = [c.lower().strip() for c in commands]
        self.cooldown_ms = cooldown_ms
        self.enabled = True
        self._last_ms: int | None = None

    def detect(self, text: str, is_final: bool, timestamp_ms: int | None = None) -> str | None:
        if not is_final or not self.enabled or not text:
            return None
        now = timestamp_ms if timestamp_ms is not None else now_ms()
        if self._last_ms is not None and now - self._last_ms < self.cooldown_ms:
            return None

        lowered = text.lower().strip()
        for command in self.commands:
            if command in lowered:
                self._last_ms = now
                logger.info("Voice command detected: %s", command)
                return command
        return None
