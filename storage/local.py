import asyncio
import logging
from pathlib import Path

from recorder.errors import NoActiveUploadError, StorageError
from storage.base import StorageSink, object_name

logger = logging.getLogger(__name__)


def _touch(path: Path):
    path.parent.mkdir(parents=True, exist_ok=True)
    # "ab" creates the file without truncating bytes from an earlier attempt
    with open(path, "ab"):
        pass


def _append(path: Path, data: bytes):
    with open(path, "ab") as f:
        f.write(data)


def _overwrite_head(path: Path, header: bytes):
    with open(path, "r+b") as f:
        f.seek(0)
        f.write(header)


class LocalDiskSink(StorageSink):
    """Stores recordings as ``root/{namespace}/{recordingId}.wav``."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self._uploads: dict[str, Path] = {}

    def path_for(self, namespace: str, recording_id: str) -> Path:
        for part in (namespace, recording_id):
            if not part or part in (".", "..") or "/" in part or "\\" in part:
                raise StorageError(f"Invalid storage key component: {part!r}")
        return self.root / namespace / object_name(recording_id)

    def _active(self, recording_id: str) -> Path:
        path = self._uploads.get(recording_id)
        if path is None:
            raise NoActiveUploadError(recording_id)
        return path

    def has_active_upload(self, recording_id: str) -> bool:
        return recording_id in self._uploads

    async def begin_upload(self, namespace: str, recording_id: str) -> None:
        path = self.path_for(namespace, recording_id)
        if recording_id in self._uploads:
            logger.info("Upload for %s already open, reusing it", recording_id)
        try:
            await asyncio.to_thread(_touch, path)
        except OSError as e:
            raise StorageError(f"Could not open {path}: {e}") from e
        self._uploads[recording_id] = path

    async def append(self, recording_id: str, data: bytes) -> None:
        path = self._active(recording_id)
        try:
            await asyncio.to_thread(_append, path, data)
        except OSError as e:
            raise StorageError(f"Could not append to {path}: {e}") from e

    async def size(self, recording_id: str) -> int:
        path = self._active(recording_id)
        try:
            return (await asyncio.to_thread(path.stat)).st_size
        except OSError as e:
            raise StorageError(f"Could not stat {path}: {e}") from e

    async def write_header(self, recording_id: str, header: bytes) -> None:
        path = self._active(recording_id)
        try:
            await asyncio.to_thread(_overwrite_head, path, header)
        except OSError as e:
            raise StorageError(f"Could not patch header of {path}: {e}") from e

    async def finalize(self, recording_id: str) -> str:
        path = self._active(recording_id)
        if not await asyncio.to_thread(path.exists):
            self._uploads.pop(recording_id, None)
            raise StorageError(f"Upload file {path} disappeared before finalize")
        self._uploads.pop(recording_id, None)
        logger.info("Finalized %s", path)
        return path.resolve().as_uri()

    async def read(self, namespace: str, recording_id: str) -> bytes:
        path = self.path_for(namespace, recording_id)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise StorageError(f"Could not read {path}: {e}") from e

    async def delete(self, namespace: str, recording_id: str) -> None:
        path = self.path_for(namespace, recording_id)
        self._uploads.pop(recording_id, None)
        try:
            await asyncio.to_thread(path.unlink, True)
        except OSError as e:
            raise StorageError(f"Could not delete {path}: {e}") from e
