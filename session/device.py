from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol


@dataclass
class AudioChunk:
    data: bytes
    sample_rate: int | None = None
    timestamp: float | None = None


@dataclass
class TranscriptionData:
    text: str
    is_final: bool
    start_time: int | None = None
    end_time: int | None = None
    language: str | None = None


AudioHandler = Callable[[AudioChunk], Awaitable[None]]
TranscriptionHandler = Callable[[TranscriptionData], Awaitable[None]]


class DeviceSession(Protocol):
    """What the glasses SDK session adapter must provide."""

    def on_audio_chunk(self, handler: AudioHandler) -> Any: ...

    def on_transcription_for_language(self, locale: str, handler: TranscriptionHandler) -> Any: ...

    def show_reference_card(self, title: str, body: str, duration_ms: int | None = None) -> Any: ...
