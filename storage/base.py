from abc import ABC, abstractmethod


def object_name(recording_id: str) -> str:
    return f"{recording_id}.wav"


class StorageSink(ABC):
    """Byte sink for one WAV file per recording, keyed by (namespace, recording id).

    An upload is begun once, appended to, optionally has its header region
    overwritten in place, and is finalized into a retrievable reference.
    Operations on an id with no upload state raise ``NoActiveUploadError``.
    """

    @abstractmethod
    async def begin_upload(self, namespace: str, recording_id: str) -> None:
        """Prepare a writable destination. Re-beginning never discards written bytes."""

    @abstractmethod
    async def append(self, recording_id: str, data: bytes) -> None: ...

    @abstractmethod
    async def size(self, recording_id: str) -> int:
        """Bytes written so far for an active upload."""

    @abstractmethod
    async def write_header(self, recording_id: str, header: bytes) -> None:
        """Overwrite the first ``len(header)`` bytes in place."""

    @abstractmethod
    async def finalize(self, recording_id: str) -> str:
        """Complete the upload and return a reference to the stored object."""

    @abstractmethod
    async def read(self, namespace: str, recording_id: str) -> bytes: ...

    @abstractmethod
    async def delete(self, namespace: str, recording_id: str) -> None:
        """Best-effort remove; absent objects are not an error."""

    @abstractmethod
    def has_active_upload(self, recording_id: str) -> bool: ...
