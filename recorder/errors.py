class RecorderError(Exception):
    """Base exception for recording errors."""


class AlreadyActiveError(RecorderError):
    """Raised when a user already has a recording in progress."""

    def __init__(self, user_id: str):
        super().__init__(f"User {user_id} already has an active recording")
        self.user_id = user_id


class RecordingNotFoundError(RecorderError):
    def __init__(self, recording_id: str):
        super().__init__(f"Recording {recording_id} not found")
        self.recording_id = recording_id


class ForbiddenError(RecorderError):
    def __init__(self, recording_id: str):
        super().__init__(f"Recording {recording_id} belongs to another user")
        self.recording_id = recording_id


class SessionUnavailableError(RecorderError):
    """Raised when a start is requested but no device session is attached."""

    def __init__(self, user_id: str):
        super().__init__(f"No device session connected for user {user_id}")
        self.user_id = user_id


class RenameNotAllowedError(RecorderError):
    """Raised when a finished recording has already used its one rename."""

    def __init__(self, recording_id: str):
        super().__init__(f"Recording {recording_id} has already been renamed since it finished")
        self.recording_id = recording_id


class StorageError(RecorderError):
    """A storage sink operation failed."""


class NoActiveUploadError(StorageError):
    """The sink has no upload state for this recording (e.g. lost on restart)."""

    def __init__(self, recording_id: str):
        super().__init__(f"No active upload for {recording_id}")
        self.recording_id = recording_id


class WavStateError(RecorderError):
    """WavAssembler used out of order (not begun, or already finalized)."""
