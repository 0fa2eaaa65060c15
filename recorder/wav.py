import asyncio
import logging
import struct

import config
from recorder.errors import WavStateError
from storage.base import StorageSink

logger = logging.getLogger(__name__)

HEADER_SIZE = 44
CHANNELS = 1
SAMPLE_WIDTH = 2

_NEW = "new"
_OPEN = "open"
_FINALIZED = "finalized"


def build_header(data_len: int, sample_rate: int = config.SAMPLE_RATE) -> bytes:
    """44-byte RIFF/WAVE header for 16-bit mono PCM with ``data_len`` bytes of samples."""
    byte_rate = sample_rate * CHANNELS * SAMPLE_WIDTH
    return struct.pack(
        "<4sI4s4sIHHIIHH4sI",
        b"RIFF",
        36 + data_len,
        b"WAVE",
        b"fmt ",
        16,
        1,
        CHANNELS,
        sample_rate,
        byte_rate,
        CHANNELS * SAMPLE_WIDTH,
        SAMPLE_WIDTH * 8,
        b"data",
        data_len,
    )


class WavAssembler:
    """Streams raw little-endian 16-bit mono PCM into a WAV object on a sink.

    Chunks are buffered in memory and flushed once more than ``flush_bytes``
    are pending or ``max_pending_chunks`` chunks have queued up. The first flush writes a
    provisional header sized for the bytes known at that point; ``finalize``
    patches the header with the real data length.
    """

    def __init__(self, sink: StorageSink, namespace: str, recording_id: str,
                 sample_rate: int = config.SAMPLE_RATE,
                 flush_bytes: int = config.WAV_FLUSH_BYTES,
                 max_pending_chunks: int = config.WAV_MAX_PENDING_CHUNKS):
        self.sink = sink
        self.namespace = namespace
        self.recording_id = recording_id
        self.sample_rate = sample_rate
        self.flush_bytes = flush_bytes
        self.max_pending_chunks = max_pending_chunks
        self.flush_count = 0
        self._pending: list[bytes] = []
        self._data_bytes = 0
        self._header_written = False
        self._state = _NEW
        self._lock = asyncio.Lock()

    @property
    def pending_bytes(self) -> int:
        return sum(len(c) for c in self._pending)

    @property
    def data_bytes(self) -> int:
        """Audio bytes already written to the sink (header excluded)."""
        return self._data_bytes

    @property
    def total_bytes(self) -> int:
        return self._data_bytes + self.pending_bytes

    @property
    def is_open(self) -> bool:
        return self._state == _OPEN

    @property
    def is_finalized(self) -> bool:
        return self._state == _FINALIZED

    async def begin(self):
        if self._state != _NEW:
            raise WavStateError(f"WAV for {self.recording_id} already begun")
        await self._open()

    async def reopen(self):
        """Re-begin the sink upload after its state was lost, keeping pending chunks."""
        if self._state == _FINALIZED:
            raise WavStateError(f"WAV for {self.recording_id} already finalized")
        await self._open()

    def resume(self):
        """Treat the upload as already begun (state rebuilt from a persisted record)."""
        if self._state == _NEW:
            self._state = _OPEN

    async def _open(self):
        await self.sink.begin_upload(self.namespace, self.recording_id)
        existing = await self.sink.size(self.recording_id)
        self._header_written = existing > 0
        self._data_bytes = max(existing - HEADER_SIZE, 0)
        self._state = _OPEN
        if existing:
            logger.info("Resumed %s with %d bytes already stored", self.recording_id, existing)

    def _require_open(self):
        if self._state == _NEW:
            raise WavStateError(f"WAV for {self.recording_id} was never begun")
        if self._state == _FINALIZED:
            raise WavStateError(f"WAV for {self.recording_id} already finalized")

    async def add_chunk(self, data: bytes, sample_rate: int | None = None) -> bool:
        """Buffer a PCM chunk. Returns True if this call flushed to the sink."""
        self._require_open()
        if sample_rate and sample_rate != self.sample_rate and not self._header_written:
            logger.info("Using %d Hz for %s", sample_rate, self.recording_id)
            self.sample_rate = sample_rate
        if data:
            self._pending.append(bytes(data))

        if (self.pending_bytes > self.flush_bytes
                or len(self._pending) >= self.max_pending_chunks):
            return await self.flush()
        return False

    async def flush(self) -> bool:
        async with self._lock:
            if not self._pending:
                return False
            data = b"".join(self._pending)
            self._pending = []
            try:
                if self._header_written:
                    await self.sink.append(self.recording_id, data)
                else:
                    header = build_header(len(data), self.sample_rate)
                    await self.sink.append(self.recording_id, header + data)
                    self._header_written = True
            except Exception:
                # Put the bytes back in front of anything queued meanwhile
                self._pending.insert(0, data)
                raise
            self._data_bytes += len(data)
            self.flush_count += 1
            logger.debug("Flushed %d bytes for %s (total %d)",
                         len(data), self.recording_id, self._data_bytes)
            return True

    async def finalize(self) -> str:
        self._require_open()
        await self.flush()
        async with self._lock:
            self._require_open()
            if self._header_written:
                size = await self.sink.size(self.recording_id)
                data_len = max(size - HEADER_SIZE, 0)
                await self.sink.write_header(
                    self.recording_id, build_header(data_len, self.sample_rate)
                )
            else:
                data_len = 0
                await self.sink.append(self.recording_id, build_header(0, self.sample_rate))
                self._header_written = True
            url = await self.sink.finalize(self.recording_id)
            self._data_bytes = data_len
            self._state = _FINALIZED
            logger.info("Finalized WAV %s: %d data bytes", self.recording_id, data_len)
            return url
