from enum import Enum


class RecordingStatus(str, Enum):
    INITIALIZING = "initializing"
    RECORDING = "recording"
    STOPPING = "stopping"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = (
    RecordingStatus.INITIALIZING,
    RecordingStatus.RECORDING,
    RecordingStatus.STOPPING,
)
TERMINAL_STATUSES = (RecordingStatus.COMPLETED, RecordingStatus.ERROR)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS recordings (
    id                  TEXT PRIMARY KEY,
    user_id             TEXT NOT NULL,
    title               TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'initializing',
    transcript          TEXT NOT NULL DEFAULT '',
    transcript_chunks   TEXT NOT NULL DEFAULT '[]',
    current_interim     TEXT,
    duration            INTEGER NOT NULL DEFAULT 0,
    storage_initialized INTEGER NOT NULL DEFAULT 0,
    file_url            TEXT,
    size                INTEGER,
    error               TEXT,
    renamed_after_end   INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS ix_recordings_user_created
    ON recordings (user_id, created_at);

-- One active recording per user
CREATE UNIQUE INDEX IF NOT EXISTS ux_recordings_user_active
    ON recordings (user_id)
    WHERE status IN ('initializing', 'recording', 'stopping');
"""
