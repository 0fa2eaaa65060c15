from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from pydantic.alias_generators import to_camel

from db.models import RecordingStatus


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    def payload_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude={"event"}, exclude_none=True)


class RecordingStatusEvent(_Event):
    event: Literal["recording-status"] = "recording-status"
    id: str
    status: RecordingStatus
    duration: int = 0
    file_url: str | None = None
    title: str | None = None


class TranscriptEvent(_Event):
    event: Literal["transcript"] = "transcript"
    recording_id: str
    text: str
    is_interim: bool | None = None
    timestamp: int | None = None


class RecordingErrorEvent(_Event):
    event: Literal["recording-error"] = "recording-error"
    id: str
    error: str


class RecordingsRefreshEvent(_Event):
    event: Literal["recordings-refresh"] = "recordings-refresh"
    timestamp: int


class RecordingDeletedEvent(_Event):
    event: Literal["recording-deleted"] = "recording-deleted"
    id: str


class VoiceCommandEvent(_Event):
    event: Literal["voice-command"] = "voice-command"
    command: Literal["start-recording", "stop-recording"]
    timestamp: int


class ConnectedEvent(_Event):
    event: Literal["connected"] = "connected"
    client_id: str
    timestamp: int


RealtimeEvent = Annotated[
    Union[
        RecordingStatusEvent,
        TranscriptEvent,
        RecordingErrorEvent,
        RecordingsRefreshEvent,
        RecordingDeletedEvent,
        VoiceCommandEvent,
        ConnectedEvent,
    ],
    Field(discriminator="event"),
]

_adapter = TypeAdapter(RealtimeEvent)

EVENT_NAMES = frozenset(
    m.model_fields["event"].default
    for m in (RecordingStatusEvent, TranscriptEvent, RecordingErrorEvent,
              RecordingsRefreshEvent, RecordingDeletedEvent, VoiceCommandEvent,
              ConnectedEvent)
)


def parse_event(name: str, payload: dict) -> _Event:
    """Validate a named payload against the event union. Raises ValueError."""
    if name not in EVENT_NAMES:
        raise ValueError(f"Unknown realtime event: {name!r}")
    return _adapter.validate_python({**payload, "event": name})


def format_sse(event: _Event) -> str:
    return f"event: {event.event}\ndata: {event.payload_json()}\n\n"


KEEPALIVE_FRAME = ": ping\n\n"
